from __future__ import annotations

import os
import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import text

from carbot.db import engine
from carbot.ai.engine import complete
from carbot.conversation.formatter import SEPARATOR, describe_profile, format_price
from carbot.leads import repo
from carbot.utils.helpers import as_datetime
from carbot.utils.phone import mask_for_log, wa_me_link
from carbot.utils.trace import log_event


# =========================================================
# Lead forwarding (cliente interesado -> vendedor por WhatsApp)
# =========================================================

SELLER_WHATSAPP_NUMBER = os.getenv("SELLER_WHATSAPP_NUMBER", "").strip()
LEAD_TIMEZONE = os.getenv("LEAD_TIMEZONE", "America/Sao_Paulo").strip() or "America/Sao_Paulo"

MAX_SEND_ATTEMPTS = 3
INITIAL_BACKOFF_SEC = 1.0
SUMMARY_MESSAGES = 10

SendFn = Callable[[str, str], Awaitable[dict]]


def _local_timestamp(dt: Optional[datetime]) -> str:
    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(ZoneInfo(LEAD_TIMEZONE)).strftime("%d/%m/%Y %H:%M")


# -------------------------
# Messages
# -------------------------

def format_customer_confirmation(customer_name: Optional[str], vehicle_label: str) -> str:
    name = customer_name or "Cliente"
    return (
        f"✅ *Perfeito, {name}!*\n\n"
        f"Registrei seu interesse no *{vehicle_label or 'veículo'}*.\n\n"
        "📞 Um de nossos vendedores entrará em contato com você em breve para dar continuidade ao atendimento.\n\n"
        "Enquanto isso, você pode continuar explorando outros veículos ou tirar dúvidas comigo! 😊"
    )


def format_lead_message(lead: Dict[str, Any], vehicle: Optional[Dict[str, Any]] = None) -> str:
    vehicle = vehicle or {}
    lines = ["🔔 *NOVO LEAD*", SEPARATOR, ""]

    lines.append("👤 *Cliente:*")
    lines.append(f"   Nome: {lead.get('customer_name') or 'Cliente'}")
    lines.append(f"   📱 WhatsApp: {wa_me_link(lead.get('phone') or '')}")
    lines.append("")

    lines.append("🚗 *Veículo de Interesse:*")
    lines.append(f"   {lead.get('vehicle_label') or 'Não informado'}")
    if vehicle.get("price"):
        lines.append(f"   💰 {format_price(vehicle['price'])}")
    if vehicle.get("url"):
        lines.append(f"   🔗 {vehicle['url']}")
    lines.append("")

    prefs = describe_profile(lead.get("preferences") or {})
    if prefs:
        lines.append("📋 *Preferências do Cliente:*")
        lines.extend(f"   • {p}" for p in prefs.splitlines())
        lines.append("")

    if lead.get("summary"):
        lines.append("💬 *Resumo da Conversa:*")
        lines.append(f"   {lead['summary']}")
        lines.append("")

    lines.append(SEPARATOR)
    lines.append(f"📅 Capturado em: {_local_timestamp(as_datetime(lead.get('created_at')))}")
    lines.append("")
    lines.append("⚡ _Entre em contato o mais rápido possível!_")
    return "\n".join(lines)


# -------------------------
# Summary (LLM con fallback)
# -------------------------

def _recent_messages(phone: str, limit: int = SUMMARY_MESSAGES) -> List[Dict[str, Any]]:
    with engine.begin() as conn:
        rows = conn.execute(text("""
            SELECT direction, text
            FROM messages
            WHERE phone = :phone AND msg_type = 'text'
            ORDER BY created_at DESC
            LIMIT :limit
        """), {"phone": phone, "limit": limit}).mappings().all()
    return [dict(r) for r in reversed(rows)]


def fallback_summary(profile: Optional[dict]) -> str:
    desc = describe_profile(profile or {})
    if not desc:
        return "Cliente interessado em veículo."
    return ". ".join(desc.splitlines()) + "."


async def summarize_conversation(phone: str, profile: Optional[dict]) -> str:
    history = _recent_messages(phone)
    if not history:
        return fallback_summary(profile)

    convo = "\n".join(
        f"{'Cliente' if m['direction'] == 'in' else 'Bot'}: {m['text']}" for m in history if m.get("text")
    )
    res = await complete(
        [
            {"role": "system", "content": "Você resume conversas de forma concisa. Responda apenas com o resumo, sem introduções."},
            {"role": "user", "content": "Resuma em 2-3 frases a conversa abaixo, focando nas preferências e necessidades do cliente:\n\n" + convo},
        ],
        max_tokens=150,
        temperature=0.3,
    )
    summary = (res.get("reply_text") or "").strip()
    if not summary:
        log_event("LEAD", "-", "summary_fallback", error=res.get("error"))
        return fallback_summary(profile)
    return summary[:900]


# -------------------------
# Send
# -------------------------

async def send_to_seller(message: str, send_fn: SendFn, seller_phone: Optional[str] = None) -> Dict[str, Any]:
    """
    3 intentos con backoff 1s, 2s. send_fn devuelve el dict de send_whatsapp_text.
    """
    seller = (seller_phone if seller_phone is not None else SELLER_WHATSAPP_NUMBER).strip()
    if not seller:
        return {"success": False, "attempts": 0, "error": "SELLER_WHATSAPP_NUMBER not configured"}

    last_err = ""
    for attempt in range(1, MAX_SEND_ATTEMPTS + 1):
        try:
            res = await send_fn(seller, message)
            if res.get("sent"):
                return {"success": True, "attempts": attempt, "wa_message_id": res.get("wa_message_id")}
            last_err = str(res.get("reason") or res.get("whatsapp_body") or "not sent")
        except Exception as e:
            last_err = str(e) or e.__class__.__name__

        if attempt < MAX_SEND_ATTEMPTS:
            await asyncio.sleep(INITIAL_BACKOFF_SEC * (2 ** (attempt - 1)))

    return {"success": False, "attempts": MAX_SEND_ATTEMPTS, "error": last_err[:900]}


async def capture_and_forward_lead(
    phone: str,
    state: dict,
    send_fn: SendFn,
    trace_id: str = "-",
) -> Optional[Dict[str, Any]]:
    """
    Persiste el lead (pending) -> envía al vendedor -> marca sent.
    Si el envío falla el lead queda pending con last_error.
    """
    interest = state.get("interest") or {}
    recs = state.get("recommendations") or []
    idx = int(interest.get("vehicle_index") or 1)
    vehicle = recs[idx - 1] if 1 <= idx <= len(recs) else {}
    label = f"{vehicle.get('brand') or ''} {vehicle.get('model') or ''} {vehicle.get('year') or ''}".strip()
    profile = state.get("profile") or {}

    summary = await summarize_conversation(phone, profile)

    lead = repo.create_lead(
        phone,
        customer_name=state.get("customer_name"),
        vehicle_id=vehicle.get("id"),
        vehicle_label=label,
        intent=interest.get("intent") or "info",
        confidence=float(interest.get("confidence") or 0.0),
        preferences=profile,
        summary=summary,
    )
    log_event("LEAD", trace_id, "lead_saved", lead_id=lead["id"], phone=mask_for_log(phone), vehicle=label)

    res = await send_to_seller(format_lead_message(lead, vehicle), send_fn)
    repo.record_send_attempt(lead["id"], res.get("attempts") or 0, "" if res["success"] else res.get("error", ""))

    if res["success"]:
        if lead["status"] == "pending":
            lead = repo.update_lead_status(lead["id"], "sent") or lead
        log_event("LEAD", trace_id, "lead_sent", lead_id=lead["id"], attempts=res["attempts"])
    else:
        log_event("LEAD", trace_id, "lead_send_failed", lead_id=lead["id"], error=res.get("error"))

    return lead
