from __future__ import annotations

import copy
import json
import os
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from carbot.ai.matcher import Match, empty_search_suggestions
from carbot.ai.preferences import (
    extract_name,
    extract_preferences,
    is_profile_ready,
    merge_preferences,
    missing_fields,
)
from carbot.conversation.formatter import (
    format_empty_search,
    format_price,
    format_recommendation_list,
    format_vehicle_details,
)
from carbot.leads.detector import detect_interest
from carbot.leads.forwarding import format_customer_confirmation
from carbot.utils.helpers import env_int, norm
from carbot.utils.trace import log_event


# =========================================================
# Conversation state machine
# greeting -> collect_info -> search -> recommend -> followup
# Un paso por mensaje entrante. search/recommend se resuelven
# en el mismo turno y el estado queda en followup o collect_info.
# =========================================================

STATE_PREFIX = "car_state:"
NODES = ("greeting", "collect_info", "search", "recommend", "followup")
MAX_RECOMMENDATIONS = 5

MAX_COLLECT_MESSAGES = env_int("MAX_COLLECT_MESSAGES", 4)
MAX_MESSAGES_BEFORE_SEARCH = env_int("MAX_MESSAGES_BEFORE_SEARCH", 8)
DEALERSHIP_NAME = os.getenv("DEALERSHIP_NAME", "CarBot").strip() or "CarBot"

SearchFn = Callable[[dict], Awaitable[list[Match]]]

_GREETING_WORDS = {"oi", "ola", "bom dia", "boa tarde", "boa noite", "hey", "hello", "hi", "eai", "e ai", "opa"}
_EXIT_WORDS = {"sair", "encerrar", "tchau", "bye", "adeus"}
_RESTART_RE = re.compile(r"\b(reiniciar|recomecar|reset|nova busca|comecar de novo)\b")
_RESTART_EXACT = {"voltar", "cancelar"}
_HANDOFF_RE = re.compile(r"\b(vendedor|vendedora|agendar|visita|visitar|humano|atendente)\b")
_NUMBER_RE = re.compile(r"\b([1-5])\b")
_NUMBER_EMOJI = {"1️⃣": 1, "2️⃣": 2, "3️⃣": 3, "4️⃣": 4, "5️⃣": 5}

APOLOGY = "Desculpe, tive um problema. Pode tentar novamente?"
SEARCH_ERROR = "Desculpe, tive um problema na busca. Pode repetir o que você procura?"


@dataclass
class FlowResult:
    reply: str
    state: dict
    events: list[dict] = field(default_factory=list)


# -------------------------
# State helpers
# -------------------------

def default_state() -> dict:
    return {
        "node": "greeting",
        "customer_name": None,
        "profile": {},
        "recommendations": [],
        "message_count": 0,
        "collect_count": 0,
        "flags": {"lead_pending": False, "lead_captured": False},
        "interest": None,
    }


def _normalize_state(raw: Any) -> dict:
    st = default_state()
    if not isinstance(raw, dict):
        return st

    for k in st:
        if k in raw and raw[k] is not None:
            st[k] = raw[k]

    if st["node"] not in NODES:
        st["node"] = "greeting"
    if not isinstance(st["profile"], dict):
        st["profile"] = {}
    if not isinstance(st["recommendations"], list):
        st["recommendations"] = []
    st["recommendations"] = [r for r in st["recommendations"] if isinstance(r, dict)][:MAX_RECOMMENDATIONS]
    if not isinstance(st["flags"], dict):
        st["flags"] = {}
    st["flags"] = {"lead_pending": False, "lead_captured": False, **st["flags"]}
    for k in ("message_count", "collect_count"):
        try:
            st[k] = max(0, int(st[k]))
        except (TypeError, ValueError):
            st[k] = 0
    return st


def pack_state(state: dict) -> str:
    return STATE_PREFIX + json.dumps(_normalize_state(state), ensure_ascii=False, default=str)


def unpack_state(raw: Optional[str]) -> dict:
    if not raw or not isinstance(raw, str) or not raw.startswith(STATE_PREFIX):
        return default_state()
    try:
        data = json.loads(raw[len(STATE_PREFIX):])
    except ValueError:
        return default_state()
    return _normalize_state(data)


# -------------------------
# Texts
# -------------------------

def _welcome_text() -> str:
    return (
        f"Olá! 👋 Bem-vindo à *{DEALERSHIP_NAME}*!\n\n"
        "Sou seu assistente virtual e estou aqui para ajudar você a encontrar o carro usado perfeito! 🚗\n\n"
        "Para começar, qual é o seu nome?"
    )


def _ask_what_text(name: Optional[str], again: bool = False) -> str:
    if again:
        head = f"Olá novamente, *{name}*! 👋" if name else "Olá novamente! 👋"
    else:
        head = f"Prazer em conhecer você, *{name}*! 🤝"
    return (
        f"{head}\n\n"
        "Me conta: o que você está procurando?\n\n"
        "_Pode me dizer o tipo de carro, para que vai usar, e seu orçamento aproximado._"
    )


def _ask_missing_text(profile: dict) -> str:
    missing = missing_fields(profile)
    if missing == ["usage"]:
        return (
            f"Anotado! Orçamento de {format_price(profile.get('budget'))}.\n\n"
            "E qual vai ser o uso principal?\n"
            "• Cidade/trabalho\n"
            "• Viagens\n"
            "• Aplicativo (Uber/99)\n"
            "• Família"
        )
    if missing == ["budget"]:
        return "Entendi! E qual seu orçamento aproximado?\n\n_Exemplo: 50 mil, 60k, R$ 70.000_"
    return (
        "Me conta mais sobre o que você busca:\n"
        "• Qual o uso principal? (cidade, viagem, Uber, família)\n"
        "• Qual seu orçamento aproximado?"
    )


def _help_text() -> str:
    return (
        "Como posso ajudar mais?\n\n"
        "• Digite o *número* do veículo para mais detalhes\n"
        '• Digite *"vendedor"* para falar com nossa equipe\n'
        '• Digite *"reiniciar"* para nova busca'
    )


def _handoff_text() -> str:
    return (
        "Perfeito! 👨‍💼\n\n"
        "Nossa equipe de vendas foi notificada e entrará em contato com você em breve pelo WhatsApp.\n\n"
        f"Obrigado por falar com a {DEALERSHIP_NAME}! 🚗"
    )


def _goodbye_text(name: Optional[str]) -> str:
    who = f", {name}" if name else ""
    return f"Até logo{who}! 👋\n\nQuando quiser procurar um carro é só mandar uma mensagem. 🚗"


def _vehicle_label(rec: dict) -> str:
    return f"{rec.get('brand') or ''} {rec.get('model') or ''} {rec.get('year') or ''}".strip()


# -------------------------
# Commands
# -------------------------

def detect_command(text: str) -> Optional[str]:
    t = norm(text).strip(" .,!?")
    if not t:
        return None
    first = t.split()[0]
    if t in _EXIT_WORDS or first in _EXIT_WORDS:
        return "exit"
    if t in _RESTART_EXACT or _RESTART_RE.search(t):
        return "restart"
    if t in _GREETING_WORDS:
        return "greeting"
    return None


def _selected_number(text: str) -> Optional[int]:
    for emoji, n in _NUMBER_EMOJI.items():
        if emoji in (text or ""):
            return n
    t = norm(text).strip(" .,!?")
    # "2", "o 2", "quero ver o 3"; frases largas con números son otra cosa
    if len(t.split()) > 4:
        return None
    m = _NUMBER_RE.search(t)
    return int(m.group(1)) if m else None


# -------------------------
# Nodes
# -------------------------

async def _run_search(st: dict, search_fn: SearchFn, prefix: str, events: list, forced: bool = False) -> str:
    st["node"] = "search"
    profile = dict(st.get("profile") or {})

    try:
        matches = await search_fn(profile)
    except Exception as e:
        log_event("FLOW", "-", "search_failed", error=str(e)[:300])
        st["node"] = "collect_info"
        events.append({"type": "search_failed", "error": str(e)[:300]})
        return SEARCH_ERROR

    matches = list(matches or [])[:MAX_RECOMMENDATIONS]
    events.append({"type": "search", "results": len(matches), "forced": forced})

    if not matches:
        st["recommendations"] = []
        st["node"] = "collect_info"
        st["collect_count"] = 0
        return format_empty_search(empty_search_suggestions(profile))

    st["recommendations"] = [m.to_state() for m in matches]
    st["node"] = "recommend"
    return _recommend(st, prefix, events)


def _recommend(st: dict, prefix: str, events: list) -> str:
    recs = st.get("recommendations") or []
    st["node"] = "followup"
    st["interest"] = None
    events.append({
        "type": "recommendations_shown",
        "vehicles": [{"id": r.get("id"), "position": i, "score": r.get("score"), "reasoning": r.get("reasoning")}
                     for i, r in enumerate(recs, start=1)],
    })
    body = format_recommendation_list(recs, customer_name=st.get("customer_name"))
    return f"{prefix}\n\n{body}" if prefix else body


async def _greeting(st: dict, text: str, search_fn: SearchFn, events: list) -> str:
    if st["message_count"] <= 1:
        st["profile"] = merge_preferences(st["profile"], extract_preferences(text))
        return _welcome_text()

    name = extract_name(text)
    prefs = extract_preferences(text)
    st["profile"] = merge_preferences(st["profile"], prefs)

    if name:
        st["customer_name"] = name
        st["node"] = "collect_info"
        if is_profile_ready(st["profile"]):
            return await _run_search(st, search_fn, f"Prazer em conhecer você, *{name}*! 🤝 Vou buscar as melhores opções para você... 🔍", events)
        if prefs:
            return f"Prazer em conhecer você, *{name}*! 🤝\n\n" + _ask_missing_text(st["profile"])
        return _ask_what_text(name)

    if prefs:
        # já falou do carro sem dizer o nome: segue sem nome
        st["node"] = "collect_info"
        return await _collect_after_merge(st, search_fn, events)

    return "Desculpe, não entendi seu nome. Pode me dizer de novo? 😊"


async def _collect_after_merge(st: dict, search_fn: SearchFn, events: list) -> str:
    st["collect_count"] += 1
    profile = st["profile"]

    if is_profile_ready(profile):
        return await _run_search(st, search_fn, "Perfeito! Vou buscar as melhores opções para você... 🔍", events)

    if st["collect_count"] >= MAX_COLLECT_MESSAGES or st["message_count"] >= MAX_MESSAGES_BEFORE_SEARCH:
        events.append({"type": "safety_valve", "collect_count": st["collect_count"], "message_count": st["message_count"]})
        return await _run_search(
            st, search_fn, "Vou buscar com o que você me contou até agora... 🔍", events, forced=True,
        )

    return _ask_missing_text(profile)


async def _collect_info(st: dict, text: str, search_fn: SearchFn, events: list) -> str:
    st["profile"] = merge_preferences(st["profile"], extract_preferences(text))
    return await _collect_after_merge(st, search_fn, events)


def _mark_lead_pending(st: dict, vehicle_index: int, intent: str, confidence: float, events: list) -> dict:
    recs = st.get("recommendations") or []
    idx = vehicle_index if 1 <= vehicle_index <= len(recs) else 1
    rec = recs[idx - 1] if recs else {}
    st["interest"] = {"vehicle_index": idx, "intent": intent, "confidence": confidence, "vehicle_id": rec.get("id")}
    st["flags"]["lead_pending"] = True
    events.append({"type": "lead_pending", **st["interest"]})
    return rec


async def _followup(st: dict, text: str, search_fn: SearchFn, events: list) -> str:
    recs = st.get("recommendations") or []
    t = norm(text)

    interest = detect_interest(text, recs)
    if interest.detected and recs:
        rec = _mark_lead_pending(st, interest.vehicle_index or 1, interest.intent or "info", interest.confidence, events)
        return format_customer_confirmation(st.get("customer_name"), _vehicle_label(rec))

    if _HANDOFF_RE.search(t):
        viewed = (st.get("interest") or {}).get("vehicle_index") or 1
        intent = "visit" if re.search(r"\b(agendar|visita|visitar)\b", t) else "contact"
        _mark_lead_pending(st, viewed, intent, 0.9, events)
        return _handoff_text()

    # criterio nuevo (presupuesto/uso/tipo) => nueva búsqueda
    prefs = extract_preferences(text)
    if any(k in prefs for k in ("budget", "usage", "body_type")):
        st["profile"] = merge_preferences(st["profile"], prefs)
        if is_profile_ready(st["profile"]):
            return await _run_search(st, search_fn, "Certo! Vou refazer a busca com essas informações... 🔍", events)
        st["node"] = "collect_info"
        st["collect_count"] = 0
        return _ask_missing_text(st["profile"])

    n = _selected_number(text)
    if n and n <= len(recs):
        st["interest"] = {"vehicle_index": n, "intent": "view", "confidence": 0.0, "vehicle_id": recs[n - 1].get("id")}
        return format_vehicle_details(recs[n - 1])

    return _help_text()


_NODE_HANDLERS = {
    "greeting": _greeting,
    "collect_info": _collect_info,
    "followup": _followup,
}


# -------------------------
# Public API
# -------------------------

async def handle_message(state: Optional[dict], text: str, search_fn: SearchFn) -> FlowResult:
    prev = _normalize_state(copy.deepcopy(state) if state else None)
    st = copy.deepcopy(prev)
    st["message_count"] += 1
    events: list[dict] = []

    try:
        cmd = detect_command(text)
        name = st.get("customer_name")

        if cmd == "exit":
            events.append({"type": "conversation_ended"})
            fresh = default_state()
            fresh["customer_name"] = name
            return FlowResult(_goodbye_text(name), fresh, events)

        if cmd == "restart":
            events.append({"type": "restart"})
            fresh = default_state()
            fresh["message_count"] = 1
            if name:
                fresh["customer_name"] = name
                fresh["node"] = "collect_info"
                return FlowResult("Claro! Vamos começar uma nova busca. 🔄\n\n" + _ask_what_text(name, again=True), fresh, events)
            return FlowResult(_welcome_text(), fresh, events)

        if cmd == "greeting" and st["node"] != "greeting":
            events.append({"type": "restart", "reason": "greeting"})
            fresh = default_state()
            fresh["message_count"] = 1
            if name:
                fresh["customer_name"] = name
                fresh["node"] = "collect_info"
                return FlowResult(_ask_what_text(name, again=True), fresh, events)
            return FlowResult(_welcome_text(), fresh, events)

        node = st["node"]
        if node in ("search", "recommend"):
            # estado intermedio persistido por una versión anterior: vuelve a collect_info
            st["node"] = "collect_info"
            reply = await _collect_info(st, text, search_fn, events)
        else:
            reply = await _NODE_HANDLERS[node](st, text, search_fn, events)

        return FlowResult(reply, st, events)

    except Exception as e:
        log_event("FLOW", "-", "node_failed", node=prev.get("node"), error=str(e)[:300])
        return FlowResult(APOLOGY, prev, [{"type": "error", "error": str(e)[:300]}])
