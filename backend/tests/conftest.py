"""Shared test configuration.

The engine reads DATABASE_URL at import time, so the SQLite file and the
rest of the environment are set here before any carbot module is imported.
"""

import os
import tempfile

_TMP_DIR = tempfile.mkdtemp(prefix="carbot-tests-")

os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'carbot.db')}"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["SELLER_WHATSAPP_NUMBER"] = "5511988887777"
os.environ["DEALERSHIP_NAME"] = "Renatinhus Cars"
os.environ.setdefault("WHATSAPP_VERIFY_TOKEN", "verify-me")
os.environ.pop("WHATSAPP_APP_SECRET", None)
os.environ.pop("WHATSAPP_TOKEN", None)
os.environ.pop("EMBEDDINGS_API_KEY", None)
os.environ.pop("INVENTORY_URL", None)

import pytest
from sqlalchemy import text

from carbot.db import engine
from carbot.schema import ensure_schema
from carbot.pipeline.guardrails import rate_limiter

ensure_schema()

_TABLES = ("messages", "conversations", "vehicles", "inventory_sync_state", "recommendations", "leads")


@pytest.fixture(autouse=True)
def clean_db():
    with engine.begin() as conn:
        for t in _TABLES:
            conn.execute(text(f"DELETE FROM {t}"))
        conn.execute(text("""
            UPDATE ai_settings
            SET is_enabled = TRUE, provider = 'groq', model = 'llama-3.1-8b-instant',
                temperature = 0.3, reply_delay_ms = 0, reply_chunk_chars = 4096
        """))
    rate_limiter.reset()
    yield


@pytest.fixture
def no_sleep(monkeypatch):
    """Backoffs and polite delays become instant."""
    import asyncio

    calls = []

    async def _fake_sleep(sec, *args, **kwargs):
        calls.append(sec)

    monkeypatch.setattr(asyncio, "sleep", _fake_sleep)
    return calls


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from carbot.main import app

    return TestClient(app)


@pytest.fixture
def wa_outbox(monkeypatch):
    """Every WhatsApp send succeeds and is recorded as (to, body)."""
    from carbot.pipeline import ingest_core, reply_sender

    sent = []

    async def _send(to_phone, text_msg):
        sent.append((to_phone, text_msg))
        return {"sent": True, "wa_message_id": f"wamid.out.{len(sent)}"}

    monkeypatch.setattr(reply_sender, "send_whatsapp_text", _send)
    monkeypatch.setattr(ingest_core, "send_whatsapp_text", _send)
    return sent


@pytest.fixture
def fake_llm(monkeypatch):
    from carbot.leads import forwarding

    calls = []

    async def _complete(messages, max_tokens=None, temperature=None):
        calls.append(messages)
        return {"reply_text": "Cliente motorista de aplicativo procurando sedan econômico."}

    monkeypatch.setattr(forwarding, "complete", _complete)
    return calls


def make_vehicle(**overrides) -> dict:
    v = {
        "id": None,
        "brand": "Chevrolet",
        "model": "Onix",
        "version": "LT 1.0",
        "year": 2020,
        "km": 45000,
        "price": 65000.0,
        "body_type": "hatch",
        "fuel": "Flex",
        "transmission": "Manual",
        "color": "Prata",
        "description": "Único dono, revisado",
        "url": "https://loja.example.com/veiculo/onix-2020",
        "photos": [],
        "available": True,
        "apt_uber": True,
        "apt_uber_black": False,
        "apt_family": False,
        "apt_work": True,
    }
    v.update(overrides)
    return v


@pytest.fixture
def vehicle_factory():
    return make_vehicle
