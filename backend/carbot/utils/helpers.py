# carbot/utils/helpers.py

from __future__ import annotations

import os
import re
import uuid
import unicodedata
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    # naive UTC: columnas TIMESTAMP sin zona (Postgres y SQLite)
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


def as_datetime(value: Any) -> Optional[datetime]:
    """
    SQLite devuelve TIMESTAMP como texto en consultas text(); Postgres como datetime.
    """
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", ""))
        except ValueError:
            return None
    return None


def safe_int(x: Any, default: int = 0) -> int:
    try:
        return int(x)
    except Exception:
        return default


def safe_float(x: Any, default: float = 0.0) -> float:
    try:
        return float(x)
    except Exception:
        return default


def clean_text(s: str) -> str:
    s = (s or "").strip()
    s = re.sub(r"\s+", " ", s)
    return s


def strip_accents(s: str) -> str:
    nfkd = unicodedata.normalize("NFKD", s or "")
    return "".join(c for c in nfkd if not unicodedata.combining(c))


def norm(s: str) -> str:
    """
    lower + sin acentos + sin signos. "Família, SUV!" -> "familia, suv"
    """
    s = strip_accents(clean_text(s).lower())
    s = re.sub(r"[^a-z0-9$\s\.,]+", " ", s)
    s = re.sub(r"\s+", " ", s).strip()
    return s


def env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, "").strip() or default)
    except Exception:
        return default

