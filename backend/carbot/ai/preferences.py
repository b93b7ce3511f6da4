from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Optional

from carbot.utils.helpers import clean_text, norm, safe_int


# ============================================================
# Preference extractor (regex + keywords)
# Función pura: mismo texto => mismo dict, sin DB ni estado.
# ============================================================

MIN_BUDGET = 5000

USAGE_LABELS = {
    "uber": "Aplicativo (Uber/99)",
    "familia": "Família",
    "trabalho": "Cidade/trabalho",
    "viagem": "Viagens",
}

BODY_TYPES = ("hatch", "sedan", "suv", "pickup")

BRAND_ALIASES = {
    "fiat": "fiat",
    "volkswagen": "volkswagen",
    "volks": "volkswagen",
    "vw": "volkswagen",
    "chevrolet": "chevrolet",
    "chevy": "chevrolet",
    "gm": "chevrolet",
    "ford": "ford",
    "toyota": "toyota",
    "honda": "honda",
    "hyundai": "hyundai",
    "renault": "renault",
    "nissan": "nissan",
    "jeep": "jeep",
    "peugeot": "peugeot",
    "citroen": "citroen",
    "kia": "kia",
    "mitsubishi": "mitsubishi",
}

_NUMBER_WORDS = {
    "duas": 2, "dois": 2, "tres": 3, "quatro": 4, "cinco": 5,
    "seis": 6, "sete": 7, "oito": 8,
}

_GREETINGS = {"oi", "ola", "bom dia", "boa tarde", "boa noite", "hey", "hello", "hi", "eai", "e ai"}

_NOT_NAMES = {
    "quero", "preciso", "busco", "procuro", "carro", "veiculo", "sim", "nao",
    "ok", "obrigado", "obrigada", "valeu", "suv", "sedan", "hatch", "pickup",
    "picape", "uber", "familia", "trabalho", "viagem", "manual", "automatico",
    "de", "da", "do", "eu", "um", "uma", "cliente", "motorista",
}

_KM_RE = re.compile(
    r"(?P<cap>ate|maximo|max|no maximo|menos de|abaixo de)?\s*"
    r"(?P<num>\d{1,3}(?:\.\d{3})+|\d+)\s*(?P<mil>mil)?\s*(?:km|quilometros|kms)\b"
)

_YEAR_MIN_RE = re.compile(
    r"(?:a partir de|acima de|depois de|minimo|no minimo|ano)\s*(?P<y>19[89]\d|20\d\d)\b"
    r"|(?P<y2>19[89]\d|20\d\d)\s*(?:ou|pra|para)\s*(?:mais novo|cima|acima)"
)

_DEAL_BREAKER_RE = re.compile(
    r"\b(?:sem|nao quero|nada de|odeio|evitar|menos|nunca)\s+(?:carro\s+|cambio\s+)?(?:(?:um|uma|o|a)\s+)?(?P<w>[a-z]+)"
)

_DEAL_BREAKER_WORDS = {
    "manual": "manual",
    "automatico": "automatico",
    "automatica": "automatico",
    "diesel": "diesel",
    "hatch": "hatch",
    "sedan": "sedan",
    "seda": "sedan",
    "suv": "suv",
    "pickup": "pickup",
    "picape": "pickup",
}


def _current_year() -> int:
    return datetime.now().year


def _is_year(val: int) -> bool:
    return 1980 <= val <= _current_year() + 1


def _strip_spans(t: str, pattern: re.Pattern) -> str:
    return pattern.sub(" ", t)


# -------------------------
# Budget
# -------------------------

def extract_budget(text: str) -> Optional[int]:
    """
    "50 mil" / "60k" / "R$ 70.000" / "70000" / "orçamento de 80" -> reais.
    Km y años no cuentan como presupuesto.
    """
    t = norm(text)
    if not t:
        return None

    t = _strip_spans(t, _KM_RE)

    m = re.search(r"\b(\d{1,3}(?:[.,]\d{1,3})?)\s*mil\b", t)
    if m:
        raw = m.group(1).replace(",", ".")
        try:
            val = int(round(float(raw) * 1000))
        except ValueError:
            val = 0
        if val >= MIN_BUDGET:
            return val

    m = re.search(r"\b(\d{1,3})\s*k\b", t)
    if m:
        val = safe_int(m.group(1)) * 1000
        if val >= MIN_BUDGET:
            return val

    m = re.search(r"(?:r\$|\$)?\s*\b(\d{1,3})\.(\d{3})(?:,\d{2})?\b", t)
    if m:
        val = safe_int(m.group(1) + m.group(2))
        if val >= MIN_BUDGET:
            return val

    m = re.search(r"(?:orcamento|ate|budget|r\$|gastar|pagar)\s*(?:de\s*|uns\s*|ate\s*)?(\d{2,3})\b(?![.,]\d)", t)
    if m:
        val = safe_int(m.group(1)) * 1000
        if val >= MIN_BUDGET:
            return val

    for m in re.finditer(r"\b(\d{4,6})\b", t):
        val = safe_int(m.group(1))
        if _is_year(val):
            continue
        if val >= MIN_BUDGET:
            return val

    return None


# -------------------------
# Deal-breakers / limits
# -------------------------

def extract_deal_breakers(text: str) -> list[str]:
    t = norm(text)
    out: list[str] = []
    for m in _DEAL_BREAKER_RE.finditer(t):
        w = m.group("w")
        item = _DEAL_BREAKER_WORDS.get(w) or BRAND_ALIASES.get(w)
        if item and item not in out:
            out.append(item)
    return out


def extract_max_km(text: str) -> Optional[int]:
    t = norm(text)
    for m in _KM_RE.finditer(t):
        if not m.group("cap"):
            continue
        num = safe_int(m.group("num").replace(".", ""))
        if m.group("mil"):
            num *= 1000
        if num > 0:
            return num
    return None


def extract_min_year(text: str) -> Optional[int]:
    t = norm(text)
    m = _YEAR_MIN_RE.search(t)
    if not m:
        return None
    y = safe_int(m.group("y") or m.group("y2"))
    return y if _is_year(y) else None


def extract_people(text: str) -> Optional[int]:
    t = norm(text)

    m = re.search(r"\b(\d{1,2}|" + "|".join(_NUMBER_WORDS) + r")\s*(?:pessoas|passageiros|lugares)\b", t)
    if not m:
        m = re.search(r"\b(?:familia de|somos|somos em)\s*(\d{1,2}|" + "|".join(_NUMBER_WORDS) + r")\b", t)
    if m:
        raw = m.group(1)
        n = _NUMBER_WORDS.get(raw) or safe_int(raw)
        return n if 1 <= n <= 15 else None

    m = re.search(r"\b(\d|" + "|".join(_NUMBER_WORDS) + r")\s*filhos\b", t)
    if m:
        raw = m.group(1)
        n = _NUMBER_WORDS.get(raw) or safe_int(raw)
        return n + 2 if 1 <= n <= 10 else None

    return None


# -------------------------
# Main extractor
# -------------------------

def extract_preferences(text: str) -> dict[str, Any]:
    """
    Texto libre -> campos estructurados. Solo devuelve las claves encontradas.
    """
    t = norm(text)
    result: dict[str, Any] = {}
    if not t:
        return result

    deal_breakers = extract_deal_breakers(text)
    if deal_breakers:
        result["deal_breakers"] = deal_breakers

    # lo negado no cuenta como preferencia positiva
    positive = _strip_spans(t, _DEAL_BREAKER_RE)

    budget = extract_budget(text)
    if budget:
        result["budget"] = budget

    # uso (prioridad: app > família > trabalho > viagem)
    if re.search(r"\b(uber|aplicativo|app|99pop|indriver)\b", positive) or re.search(r"\b99\b(?!\s*(?:mil|k|\.\d))", positive):
        result["usage"] = "uber"
        result["wants_uber"] = True
        if "black" in positive:
            result["uber_category"] = "black"
        elif "comfort" in positive:
            result["uber_category"] = "comfort"
        else:
            result["uber_category"] = "x"
    elif re.search(r"famil|filho|crianca|cadeirinha|bebe\b", positive):
        result["usage"] = "familia"
        result["wants_family"] = True
        if "cadeirinha" in positive or re.search(r"\bbebe\b", positive):
            result["has_child_seat"] = True
    elif re.search(r"\b(trabalho|trabalhar|cidade|dia a dia)\b", positive):
        result["usage"] = "trabalho"
    elif re.search(r"\b(viagem|viagens|viajar|estrada|rodovia)\b", positive):
        result["usage"] = "viagem"

    # carroceria
    if re.search(r"\b(pickup|picape|pick up|caminhonete)\b", positive):
        result["body_type"] = "pickup"
        result["wants_pickup"] = True
    elif re.search(r"\bsuv\b", positive):
        result["body_type"] = "suv"
    elif re.search(r"\b(sedan|seda)\b", positive):
        result["body_type"] = "sedan"
    elif re.search(r"\bhatch\b", positive):
        result["body_type"] = "hatch"

    # câmbio
    if re.search(r"\b(automatico|automatica|cvt)\b", positive):
        result["transmission"] = "automatico"
    elif re.search(r"\bmanual\b", positive):
        result["transmission"] = "manual"

    people = extract_people(text)
    if people:
        result["people"] = people

    for word in re.findall(r"[a-z]+", positive):
        brand = BRAND_ALIASES.get(word)
        if brand and brand not in deal_breakers:
            result["brand"] = brand
            break

    max_km = extract_max_km(text)
    if max_km:
        result["max_km"] = max_km

    min_year = extract_min_year(text)
    if min_year:
        result["min_year"] = min_year

    return result


def extract_name(text: str) -> Optional[str]:
    raw = clean_text(text)
    t = norm(raw).strip(" .,!?")
    if not t or t in _GREETINGS:
        return None

    patterns = [
        r"(?:meu nome e|me chamo|pode me chamar de|sou o|sou a|sou)\s+([a-z]{2,20})",
        r"^([a-z]{2,20})$",
    ]
    for p in patterns:
        m = re.search(p, t)
        if not m:
            continue
        name = m.group(1)
        if name in _NOT_NAMES or name in _GREETINGS:
            continue

        # conserva acentos del original si la palabra aparece tal cual
        for w in re.findall(r"[^\W\d_]+", raw):
            if norm(w) == name:
                name = w
                break
        return name[:1].upper() + name[1:].lower()

    return None


def merge_preferences(prev: dict[str, Any] | None, new: dict[str, Any] | None) -> dict[str, Any]:
    out = dict(prev or {})
    new = new or {}

    # cambio de uso => flags del uso anterior no aplican
    if new.get("usage"):
        for k in ("wants_uber", "uber_category", "wants_family", "has_child_seat"):
            out.pop(k, None)
    if new.get("body_type"):
        out.pop("wants_pickup", None)

    for k, v in new.items():
        if k == "deal_breakers":
            merged = list(out.get("deal_breakers") or [])
            for x in v or []:
                if x not in merged:
                    merged.append(x)
            out["deal_breakers"] = merged
            continue
        if v is None or v == "" or v == []:
            continue
        out[k] = v

    return out


def is_profile_ready(profile: dict[str, Any] | None) -> bool:
    p = profile or {}
    budget = safe_int(p.get("budget"), 0)
    return budget >= MIN_BUDGET and bool(p.get("usage") or p.get("body_type"))


def missing_fields(profile: dict[str, Any] | None) -> list[str]:
    p = profile or {}
    out = []
    if safe_int(p.get("budget"), 0) < MIN_BUDGET:
        out.append("budget")
    if not (p.get("usage") or p.get("body_type")):
        out.append("usage")
    return out
