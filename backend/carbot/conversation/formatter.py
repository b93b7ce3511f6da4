from __future__ import annotations

from typing import Any, Iterable, Optional

from carbot.ai.preferences import USAGE_LABELS
from carbot.utils.helpers import safe_float, safe_int


# =========================================================
# WhatsApp message formatting (markdown *negrita* / _itálica_)
# =========================================================

WHATSAPP_MAX_MESSAGE_LENGTH = 4096
SEPARATOR = "━━━━━━━━━━━━━━━━━━━━━"
NUMBER_EMOJIS = ("1️⃣", "2️⃣", "3️⃣", "4️⃣", "5️⃣")
DESCRIPTION_MAX = 100

BODY_LABELS = {"hatch": "Hatch", "sedan": "Sedan", "suv": "SUV", "pickup": "Picape"}


def number_emoji(position: int) -> str:
    if 1 <= position <= len(NUMBER_EMOJIS):
        return NUMBER_EMOJIS[position - 1]
    return f"{position}."


def _thousands(n: int) -> str:
    return f"{n:,}".replace(",", ".")


def format_price(price: Any) -> str:
    """45000 -> "R$ 45.000,00" """
    val = safe_float(price, 0.0)
    s = f"{val:,.2f}"  # 45,000.00
    s = s.replace(",", "X").replace(".", ",").replace("X", ".")
    return f"R$ {s}"


def format_km(km: Any) -> str:
    return f"{_thousands(safe_int(km))} km"


def truncate(text: str, max_len: int) -> str:
    text = text or ""
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."


def body_label(body_type: Optional[str]) -> str:
    b = (body_type or "").strip().lower()
    return BODY_LABELS.get(b, body_type or "N/A")


def vehicle_title(v: dict) -> str:
    name = f"{v.get('brand') or ''} {v.get('model') or ''}".strip()
    version = (v.get("version") or "").strip()
    return f"*{name}* {version}".strip()


def format_vehicle_card(v: dict, position: int, best: bool = False) -> str:
    lines = [f"{number_emoji(position)} {'🏆 ' if best else ''}{vehicle_title(v)}", ""]

    lines.append(f"📅 Ano: {safe_int(v.get('year'))} | 🛣️ {format_km(v.get('km'))}")
    lines.append(f"💰 *{format_price(v.get('price'))}*")
    lines.append(f"🚗 {body_label(v.get('body_type'))}" + (f" | 🔧 {v['transmission']}" if v.get("transmission") else ""))
    if v.get("color"):
        lines.append(f"🎨 Cor: {v['color']}")

    desc = (v.get("description") or "").strip()
    if desc:
        lines.append("")
        lines.append(f"_{truncate(desc, DESCRIPTION_MAX)}_")

    if v.get("url"):
        lines.append("")
        lines.append(f"🔗 *Ver detalhes:* {v['url']}")

    return "\n".join(lines)


def format_recommendation_list(recommendations: Iterable[dict], customer_name: Optional[str] = None) -> str:
    """
    recommendations: dicts de estado (Match.to_state()).
    """
    recs = list(recommendations or [])
    if not recs:
        return 'Desculpe, não encontrei veículos disponíveis no momento.\n\nDigite "vendedor" para falar com nossa equipe.'

    n = len(recs)
    plural = "s" if n > 1 else ""
    who = f", *{customer_name}*" if customer_name else ""
    lines = [f"🎯 Encontrei {n} veículo{plural} perfeito{plural} para você{who}!", ""]

    for i, rec in enumerate(recs, start=1):
        lines.append(SEPARATOR)
        lines.append(format_vehicle_card(rec, i, best=(i == 1)))
        if rec.get("reasoning"):
            lines.append("")
            lines.append(f"💡 {rec['reasoning']}")
        lines.append("")

    lines.append(SEPARATOR)
    lines.append("")
    lines.append("Qual te interessou mais? Posso dar mais detalhes! 😊")
    lines.append("")
    lines.append("• Digite o *número* do carro para ver mais detalhes")
    lines.append('• Digite *"agendar"* para marcar uma visita 📅')
    lines.append('• Digite *"vendedor"* para falar com nossa equipe')
    lines.append('• Digite *"reiniciar"* para uma nova busca')
    return "\n".join(lines)


def format_vehicle_details(v: dict) -> str:
    lines = ["📋 *Detalhes completos:*", ""]
    lines.append(f"🚗 {vehicle_title(v)}")
    lines.append(f"📅 Ano: {safe_int(v.get('year'))}")
    lines.append(f"🛣️ Quilometragem: {format_km(v.get('km'))}")
    lines.append(f"💰 *Preço: {format_price(v.get('price'))}*")
    lines.append(f"🚙 Carroceria: {body_label(v.get('body_type'))}")
    lines.append(f"⚙️ Câmbio: {v.get('transmission') or 'N/A'}")
    lines.append(f"⛽ Combustível: {v.get('fuel') or 'Flex'}")
    lines.append(f"🎨 Cor: {v.get('color') or 'N/A'}")

    if v.get("description"):
        lines.append("")
        lines.append(f"📝 {v['description']}")

    if v.get("reasoning"):
        lines.append("")
        lines.append(f"💡 {v['reasoning']}")

    if v.get("url"):
        lines.append("")
        lines.append("🔗 *Veja mais fotos e detalhes:*")
        lines.append(v["url"])

    lines.append("")
    lines.append(SEPARATOR)
    lines.append("")
    lines.append("Quer agendar uma visita ou falar com um vendedor?")
    lines.append('• "agendar" para visitar 📅')
    lines.append('• "vendedor" para tirar dúvidas')
    return "\n".join(lines)


def format_empty_search(suggestions: Iterable[str]) -> str:
    items = [f"• {s}?" for s in suggestions or []]
    body = "\n".join(items) if items else "• Ajustar os critérios?"
    return (
        "Hmm, não encontrei veículos com esses critérios exatos. 🤔\n\n"
        "Posso ajustar a busca:\n"
        f"{body}\n\n"
        "O que prefere?"
    )


def describe_profile(profile: dict) -> str:
    """
    Resumen corto del perfil (para leads y logs legibles).
    """
    p = profile or {}
    parts = []
    if p.get("budget"):
        parts.append(f"Orçamento: {format_price(p['budget'])}")
    if p.get("usage"):
        label = USAGE_LABELS.get(p["usage"], p["usage"])
        if p.get("usage") == "uber" and p.get("uber_category"):
            label += f" ({str(p['uber_category']).upper()})"
        parts.append(f"Uso: {label}")
    if p.get("body_type"):
        parts.append(f"Tipo: {body_label(p['body_type'])}")
    if p.get("people"):
        parts.append(f"Pessoas: {p['people']}")
    if p.get("brand"):
        parts.append(f"Marca: {str(p['brand']).title()}")
    if p.get("transmission"):
        parts.append(f"Câmbio: {p['transmission']}")
    if p.get("min_year"):
        parts.append(f"Ano mínimo: {p['min_year']}")
    if p.get("max_km"):
        parts.append(f"KM máximo: {format_km(p['max_km'])}")
    if p.get("has_child_seat"):
        parts.append("Precisa de espaço para cadeirinha")
    if p.get("deal_breakers"):
        parts.append("Evitar: " + ", ".join(p["deal_breakers"]))
    return "\n".join(parts)


# =========================================================
# Split
# =========================================================

def _best_split_point(text: str, max_len: int) -> int:
    half = max_len * 0.5

    i = text.rfind("\n\n", 0, max_len)
    if i > half:
        return i + 2

    i = text.rfind("━━━", 0, max_len)
    if i > half:
        return i

    i = text.rfind("\n", 0, max_len)
    if i > half:
        return i + 1

    i = text.rfind(" ", 0, max_len)
    if i > half:
        return i + 1

    return max_len


def split_long_message(text: str, max_len: int = WHATSAPP_MAX_MESSAGE_LENGTH) -> list[str]:
    text = text or ""
    if len(text) <= max_len:
        return [text]

    parts: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= max_len:
            parts.append(remaining)
            break
        cut = _best_split_point(remaining, max_len)
        part = remaining[:cut].strip()
        if part:
            parts.append(part)
        remaining = remaining[cut:].strip()
    return parts
