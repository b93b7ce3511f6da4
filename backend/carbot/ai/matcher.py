from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from carbot.ai.embeddings import cosine_similarity
from carbot.utils.helpers import norm, safe_float, safe_int


# ============================================================
# Vehicle matcher
# filtro duro (presupuesto ±20%, restricciones) -> score ponderado
# -> mezcla semántica opcional -> orden desc -> top 5
# ============================================================

MAX_RESULTS = 5
BUDGET_LOW = 0.8
BUDGET_HIGH = 1.2
SEMANTIC_WEIGHT = 0.3

# pesos (suman 100)
W_PRICE = 30
W_YEAR = 20
W_KM = 20
W_BODY = 15
W_USAGE = 10
W_EXTRA = 5

# carros pequeños donde no entra cadeirinha cómoda
CHILD_SEAT_NEVER = ("mobi", "kwid", "up", "uno", "ka", "march", "sandero")
CHILD_SEAT_HATCH_OK = ("fit", "golf", "polo")

_BODY_FIT_BY_USAGE = {
    "trabalho": {"hatch": 15, "sedan": 15, "suv": 10, "pickup": 5},
    "viagem": {"sedan": 15, "suv": 15, "pickup": 10, "hatch": 8},
    "familia": {"suv": 15, "sedan": 15, "pickup": 8, "hatch": 6},
    "uber": {"sedan": 15, "hatch": 12, "suv": 10, "pickup": 0},
}


@dataclass
class Match:
    vehicle: dict
    score: int
    reasoning: str = ""
    highlights: list[str] = field(default_factory=list)

    def to_state(self) -> dict:
        v = self.vehicle
        return {
            "id": v.get("id"),
            "brand": v.get("brand") or "",
            "model": v.get("model") or "",
            "version": v.get("version") or "",
            "year": safe_int(v.get("year")),
            "km": safe_int(v.get("km")),
            "price": safe_float(v.get("price")),
            "body_type": v.get("body_type") or "",
            "fuel": v.get("fuel") or "",
            "transmission": v.get("transmission") or "",
            "color": v.get("color") or "",
            "url": v.get("url") or "",
            "score": int(self.score),
            "reasoning": self.reasoning,
            "highlights": list(self.highlights),
        }


def _current_year() -> int:
    return datetime.now().year


def budget_window(budget: Any) -> Optional[tuple[float, float]]:
    b = safe_float(budget, 0.0)
    if b <= 0:
        return None
    return (b * BUDGET_LOW, b * BUDGET_HIGH)


def _model_text(v: dict) -> str:
    return norm(f"{v.get('model') or ''} {v.get('version') or ''}")


def _body(v: dict) -> str:
    return norm(v.get("body_type") or "")


def _has_word(text: str, word: str) -> bool:
    return word in text.split()


def fits_child_seat(v: dict) -> bool:
    model = _model_text(v)
    if any(_has_word(model, n) for n in CHILD_SEAT_NEVER):
        return False
    if _body(v) == "hatch":
        return any(_has_word(model, h) for h in CHILD_SEAT_HATCH_OK)
    return True


def _violates_deal_breakers(v: dict, deal_breakers: Iterable[str]) -> bool:
    brand = norm(v.get("brand") or "")
    body = _body(v)
    trans = norm(v.get("transmission") or "")
    fuel = norm(v.get("fuel") or "")
    for d in deal_breakers or []:
        d = norm(d)
        if not d:
            continue
        if d == brand or d == body:
            return True
        if d == "manual" and trans.startswith("manual"):
            return True
        if d == "automatico" and trans.startswith("autom"):
            return True
        if d == "diesel" and fuel == "diesel":
            return True
    return False


def passes_filters(v: dict, profile: dict) -> bool:
    if v.get("available") is False:
        return False

    price = safe_float(v.get("price"), 0.0)
    if price <= 0:
        return False

    win = budget_window(profile.get("budget"))
    if win and not (win[0] <= price <= win[1]):
        return False

    if _violates_deal_breakers(v, profile.get("deal_breakers") or []):
        return False

    min_year = safe_int(profile.get("min_year"), 0)
    if min_year and safe_int(v.get("year")) < min_year:
        return False

    max_km = safe_int(profile.get("max_km"), 0)
    if max_km and safe_int(v.get("km")) > max_km:
        return False

    wanted_body = norm(profile.get("body_type") or "")
    if wanted_body and _body(v) != wanted_body:
        return False

    if profile.get("wants_uber"):
        if profile.get("uber_category") == "black":
            if not v.get("apt_uber_black"):
                return False
        elif not v.get("apt_uber"):
            return False

    if profile.get("wants_family") and not profile.get("wants_pickup"):
        if not v.get("apt_family"):
            return False
        if profile.get("has_child_seat") and not fits_child_seat(v):
            return False

    return True


# -------------------------
# Scoring
# -------------------------

def _price_points(price: float, budget: float) -> float:
    if budget <= 0:
        return W_PRICE * 0.66
    if price <= budget:
        # muy por debajo del presupuesto = probablemente menos carro del que puede pagar
        if price >= 0.9 * budget:
            return W_PRICE
        gap = (0.9 * budget - price) / (0.1 * budget)
        return max(W_PRICE - 10, W_PRICE - 10 * gap)
    over = (price - budget) / (0.2 * budget)
    return max(0.0, W_PRICE - 15 * over)


def _year_points(year: int, min_year: int) -> float:
    age = max(0, _current_year() - year)
    pts = max(0.0, W_YEAR - 2 * age)
    if min_year and year >= min_year + 2:
        pts += 3
    return min(W_YEAR, pts)


def _km_points(km: int, max_km: int) -> float:
    if km <= 20000:
        pts = float(W_KM)
    elif km >= 150000:
        pts = 0.0
    else:
        pts = W_KM * (1 - (km - 20000) / 130000)
    if max_km and km < 0.5 * max_km:
        pts += 3
    return min(W_KM, pts)


def _body_points(v: dict, profile: dict) -> float:
    body = _body(v)
    if profile.get("body_type"):
        return W_BODY if body == norm(profile["body_type"]) else 0
    usage = profile.get("usage")
    if usage in _BODY_FIT_BY_USAGE:
        return _BODY_FIT_BY_USAGE[usage].get(body, 5)
    return W_BODY * 0.66


def _usage_points(v: dict, profile: dict) -> float:
    usage = profile.get("usage")
    fuel = norm(v.get("fuel") or "")
    if usage == "uber":
        return W_USAGE if (v.get("apt_uber") or v.get("apt_uber_black")) else 0
    if usage == "familia":
        return W_USAGE if v.get("apt_family") else 3
    if usage == "trabalho":
        pts = 5 if v.get("apt_work") else 0
        if fuel == "flex":
            pts += 5
        return min(W_USAGE, pts)
    if usage == "viagem":
        return W_USAGE if _body(v) in ("sedan", "suv") else 5
    return W_USAGE * 0.5


def _extra_points(v: dict, profile: dict) -> float:
    pts = 0.0
    brand = profile.get("brand")
    if not brand or norm(brand) == norm(v.get("brand") or ""):
        pts += 3
    trans = profile.get("transmission")
    if not trans or norm(v.get("transmission") or "").startswith(norm(trans)[:5]):
        pts += 2
    return pts


def score_vehicle(v: dict, profile: dict) -> int:
    price = safe_float(v.get("price"), 0.0)
    budget = safe_float(profile.get("budget"), 0.0)
    year = safe_int(v.get("year"))
    km = safe_int(v.get("km"))

    score = (
        _price_points(price, budget)
        + _year_points(year, safe_int(profile.get("min_year"), 0))
        + _km_points(km, safe_int(profile.get("max_km"), 0))
        + _body_points(v, profile)
        + _usage_points(v, profile)
        + _extra_points(v, profile)
    )

    people = safe_int(profile.get("people"), 0)
    if people >= 5 and _body(v) == "hatch":
        score -= 5

    return int(round(max(0.0, min(100.0, score))))


def blend_semantic(score: int, similarity: Optional[float], weight: float = SEMANTIC_WEIGHT) -> int:
    if similarity is None:
        return score
    w = max(0.0, min(1.0, weight))
    sim = max(0.0, min(1.0, similarity))
    return int(round((1 - w) * score + w * 100 * sim))


# -------------------------
# Explanations
# -------------------------

def vehicle_highlights(v: dict) -> list[str]:
    out = []
    km = safe_int(v.get("km"))
    year = safe_int(v.get("year"))
    if 0 < km < 50000:
        out.append("Baixa quilometragem")
    if year >= _current_year() - 3:
        out.append("Seminovo recente")
    if norm(v.get("transmission") or "").startswith("autom"):
        out.append("Câmbio automático")
    return out


def build_reasoning(v: dict, profile: dict) -> str:
    parts = []
    price = safe_float(v.get("price"), 0.0)
    budget = safe_float(profile.get("budget"), 0.0)
    year = safe_int(v.get("year"))
    km = safe_int(v.get("km"))
    max_km = safe_int(profile.get("max_km"), 0)

    if budget and price <= budget:
        parts.append("Dentro do seu orçamento")
    if year >= _current_year() - 3:
        parts.append("Ano recente")
    if km < 50000:
        parts.append("Quilometragem baixa")
    elif max_km and km < 0.7 * max_km:
        parts.append("Quilometragem aceitável")
    if profile.get("body_type") and _body(v) == norm(profile["body_type"]):
        parts.append(f"Exatamente o tipo que você procura ({(v.get('body_type') or '').upper()})")

    usage = profile.get("usage")
    if usage == "trabalho" and norm(v.get("fuel") or "") == "flex":
        parts.append("Econômico para o dia a dia")
    if usage == "uber" and v.get("apt_uber_black") and profile.get("uber_category") == "black":
        parts.append("Aceito no Uber Black")
    elif usage == "uber" and v.get("apt_uber"):
        parts.append("Aceito em aplicativos")
    if usage == "familia" and v.get("apt_family"):
        parts.append("Espaço para a família")

    if not parts:
        return "Boa opção custo-benefício"
    return ", ".join(parts)


def empty_search_suggestions(profile: dict) -> list[str]:
    out = []
    budget = safe_float(profile.get("budget"), 0.0)
    if budget and budget < 80000:
        out.append("Aumentar um pouco o orçamento")
    if profile.get("body_type"):
        out.append(f"Considerar outros tipos além de {str(profile['body_type']).upper()}")
    if safe_int(profile.get("min_year"), 0) > 2018:
        out.append("Aceitar carros um pouco mais antigos")
    if 0 < safe_int(profile.get("max_km"), 0) < 80000:
        out.append("Aceitar uma quilometragem maior")
    if profile.get("deal_breakers"):
        out.append("Rever algumas restrições (" + ", ".join(profile["deal_breakers"]) + ")")
    if not out:
        out.append("Considerar outras marcas ou modelos")
    return out


# -------------------------
# Ranking
# -------------------------

def rank_vehicles(
    vehicles: Iterable[dict],
    profile: dict,
    query_embedding: Optional[list[float]] = None,
    limit: int = MAX_RESULTS,
    semantic_weight: float = SEMANTIC_WEIGHT,
) -> list[Match]:
    profile = profile or {}
    limit = max(0, min(int(limit), MAX_RESULTS))

    scored: list[Match] = []
    for v in vehicles or []:
        if not isinstance(v, dict) or not passes_filters(v, profile):
            continue

        s = score_vehicle(v, profile)

        emb = v.get("embedding")
        if query_embedding and isinstance(emb, list) and emb:
            s = blend_semantic(s, cosine_similarity(query_embedding, emb), semantic_weight)

        scored.append(Match(
            vehicle=v,
            score=s,
            reasoning=build_reasoning(v, profile),
            highlights=vehicle_highlights(v),
        ))

    scored.sort(key=lambda m: (
        -m.score,
        safe_float(m.vehicle.get("price"), 0.0),
        safe_int(m.vehicle.get("km")),
        -safe_int(m.vehicle.get("year")),
    ))
    return scored[:limit]
