from __future__ import annotations

import re
from dataclasses import dataclass, asdict
from typing import Optional

from carbot.utils.helpers import norm


# =========================================================
# Interest detection (frases de compra / visita / contacto)
# =========================================================

INTEREST_THRESHOLD = 0.7

# orden importa: la primera frase que aparece define el intent
INTEREST_PHRASES = (
    "quero esse",
    "quero este",
    "tenho interesse",
    "me interessei",
    "gostei desse",
    "gostei deste",
    "gostei do",
    "quero agendar",
    "quero visitar",
    "quero ver esse",
    "quero ver este",
    "pode me passar",
    "quero mais informacoes",
    "quero falar com vendedor",
    "quero comprar",
    "vou querer",
    "vou levar",
    "fechado",
    "fechar negocio",
    "quero conhecer",
    "quero saber mais",
    "me interessa",
    "interessado",
    "interessada",
)

_VEHICLE_REFS = (
    (1, re.compile(r"\b(primeiro|primeira|1)\b"), "1️⃣"),
    (2, re.compile(r"\b(segundo|segunda|2|dois|duas)\b"), "2️⃣"),
    (3, re.compile(r"\b(terceiro|terceira|3|tres)\b"), "3️⃣"),
    (4, re.compile(r"\b(quarto|quarta|4|quatro)\b"), "4️⃣"),
    (5, re.compile(r"\b(quinto|quinta|5|cinco)\b"), "5️⃣"),
)

_DEMONSTRATIVE_RE = re.compile(r"\b(esse|este|essa|esta|desse|deste|dessa|desta)\b")

# negación hasta dos palabras antes de la frase: "nao tenho interesse", "nao estou interessado"
_NEGATION_BEFORE_RE = re.compile(r"\b(nao|nem|nenhum|nenhuma|sem)(\s+[a-z]+){0,2}\s*$")


@dataclass
class InterestResult:
    detected: bool
    intent: Optional[str] = None  # purchase | visit | contact | info
    vehicle_index: Optional[int] = None  # 1..5
    confidence: float = 0.0
    matched: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def _intent_for(phrase: str) -> tuple[str, float]:
    if any(k in phrase for k in ("comprar", "levar", "fechado", "fechar")):
        return "purchase", 0.95
    if any(k in phrase for k in ("agendar", "visitar", "conhecer")):
        return "visit", 0.9
    if any(k in phrase for k in ("vendedor", "passar")):
        return "contact", 0.85
    if any(k in phrase for k in ("informacoes", "saber mais")):
        return "info", 0.75
    return "info", 0.8


def _affirmed(t: str, phrase: str) -> bool:
    """True si alguna aparición de la frase no está negada."""
    for m in re.finditer(re.escape(phrase), t):
        if not _NEGATION_BEFORE_RE.search(t[: m.start()]):
            return True
    return False


def _vehicle_reference(raw: str, t: str) -> Optional[int]:
    for idx, pattern, emoji in _VEHICLE_REFS:
        if emoji in raw or pattern.search(t):
            return idx
    return None


def detect_interest(text: str, recommendations: Optional[list] = None) -> InterestResult:
    raw = text or ""
    t = norm(raw)
    if not t:
        return InterestResult(detected=False)

    matched = next((p for p in INTEREST_PHRASES if _affirmed(t, p)), None)
    if not matched:
        return InterestResult(detected=False)

    intent, confidence = _intent_for(matched)

    vehicle_index = _vehicle_reference(raw, t)
    if vehicle_index is None and recommendations and _DEMONSTRATIVE_RE.search(t):
        # "quero esse" sin número => el primero (el destacado)
        vehicle_index = 1
        confidence = max(round(confidence - 0.1, 2), INTEREST_THRESHOLD)

    if recommendations is not None and vehicle_index and vehicle_index > len(recommendations):
        vehicle_index = None

    return InterestResult(
        detected=confidence >= INTEREST_THRESHOLD,
        intent=intent,
        vehicle_index=vehicle_index,
        confidence=confidence,
        matched=matched,
    )
