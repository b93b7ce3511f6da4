from __future__ import annotations

import asyncio
import json
import math
import os
from typing import Any, Optional

import requests

from carbot.utils.helpers import safe_int
from carbot.utils.trace import log_event


# =========================================================
# Embeddings (endpoint compatible con OpenAI /embeddings)
# Sin EMBEDDINGS_API_KEY => desactivado, el matcher usa solo criterios
# =========================================================

EMBEDDINGS_API_KEY = os.getenv("EMBEDDINGS_API_KEY", "").strip()
EMBEDDINGS_API_URL = os.getenv("EMBEDDINGS_API_URL", "https://api.openai.com/v1/embeddings").strip()
EMBEDDINGS_MODEL = os.getenv("EMBEDDINGS_MODEL", "text-embedding-3-small").strip()
EMBEDDINGS_TIMEOUT_SEC = int(os.getenv("EMBEDDINGS_TIMEOUT_SEC", "20") or "20")

_USAGE_TEXT = {
    "uber": "carro para trabalhar com aplicativo Uber 99, econômico e confiável",
    "familia": "carro espaçoso e seguro para família com crianças",
    "trabalho": "carro econômico para cidade e trabalho no dia a dia",
    "viagem": "carro confortável para viagens e estrada",
}


def embeddings_enabled() -> bool:
    return bool(EMBEDDINGS_API_KEY)


def vehicle_embedding_text(vehicle: dict) -> str:
    brand = (vehicle.get("brand") or "").strip()
    model = (vehicle.get("model") or "").strip()
    if not brand or not model:
        raise ValueError("vehicle needs brand and model to build embedding text")

    parts = [f"{brand} {model} {vehicle.get('version') or ''}".strip()]
    year = safe_int(vehicle.get("year"))
    if year:
        parts.append(f"ano {year}")
    km = safe_int(vehicle.get("km"))
    if km:
        parts.append(f"{km} km rodados")
    for key, label in (("body_type", "carroceria"), ("fuel", "combustível"), ("transmission", "câmbio"), ("color", "cor")):
        val = (vehicle.get(key) or "").strip()
        if val:
            parts.append(f"{label} {val}")

    aptitudes = []
    if vehicle.get("apt_uber"):
        aptitudes.append("aceito em aplicativos")
    if vehicle.get("apt_uber_black"):
        aptitudes.append("aceito no Uber Black")
    if vehicle.get("apt_family"):
        aptitudes.append("bom para família")
    if vehicle.get("apt_work"):
        aptitudes.append("bom para trabalho")
    if aptitudes:
        parts.append(", ".join(aptitudes))

    desc = (vehicle.get("description") or "").strip()
    if desc:
        parts.append(desc[:500])

    return ". ".join(parts)


def profile_embedding_text(profile: dict) -> str:
    p = profile or {}
    parts = []
    usage = p.get("usage")
    if usage in _USAGE_TEXT:
        parts.append(_USAGE_TEXT[usage])
    if p.get("body_type"):
        parts.append(f"carroceria {p['body_type']}")
    if p.get("brand"):
        parts.append(f"marca {p['brand']}")
    if p.get("transmission"):
        parts.append(f"câmbio {p['transmission']}")
    if p.get("people"):
        parts.append(f"para {p['people']} pessoas")
    if p.get("has_child_seat"):
        parts.append("espaço para cadeirinha de bebê")
    if p.get("deal_breakers"):
        parts.append("evitar " + ", ".join(p["deal_breakers"]))
    return ". ".join(parts)


def cosine_similarity(a: Optional[list[float]], b: Optional[list[float]]) -> Optional[float]:
    if not a or not b or len(a) != len(b):
        return None
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return None
    return dot / (na * nb)


def serialize_embedding(vec: Optional[list[float]]) -> Optional[str]:
    if not vec:
        return None
    return json.dumps([float(x) for x in vec])


def deserialize_embedding(raw: Any) -> Optional[list[float]]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, list):
        return [float(x) for x in raw]
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, list) or not data:
        return None
    try:
        return [float(x) for x in data]
    except (TypeError, ValueError):
        return None


async def embed_text(text: str) -> Optional[list[float]]:
    text = (text or "").strip()
    if not text or not embeddings_enabled():
        return None

    payload = {"model": EMBEDDINGS_MODEL, "input": text[:8000]}
    headers = {
        "Authorization": f"Bearer {EMBEDDINGS_API_KEY}",
        "Content-Type": "application/json",
    }

    def _do() -> list[float]:
        r = requests.post(EMBEDDINGS_API_URL, headers=headers, json=payload, timeout=EMBEDDINGS_TIMEOUT_SEC)
        if r.status_code >= 400:
            raise RuntimeError(f"embeddings error {r.status_code}: {r.text[:300]}")
        data = (r.json() or {}).get("data") or []
        if not data:
            return []
        return [float(x) for x in (data[0] or {}).get("embedding") or []]

    try:
        vec = await asyncio.wait_for(asyncio.to_thread(_do), timeout=EMBEDDINGS_TIMEOUT_SEC + 5)
    except Exception as e:
        log_event("EMBED", "-", "embed_failed", error=str(e)[:300])
        return None
    return vec or None
