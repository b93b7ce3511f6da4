# carbot/schema.py

from sqlalchemy import text

from carbot.db import engine


# =========================================================
# Schema (idempotente; Postgres en prod, SQLite en tests)
# =========================================================

_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS conversations (
        phone TEXT PRIMARY KEY,
        takeover BOOLEAN NOT NULL DEFAULT FALSE,
        customer_name TEXT,
        ai_state TEXT,
        tags TEXT,
        notes TEXT,
        lead_captured BOOLEAN NOT NULL DEFAULT FALSE,
        last_read_at TIMESTAMP,
        created_at TIMESTAMP,
        updated_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        phone TEXT NOT NULL,
        direction TEXT NOT NULL,
        msg_type TEXT NOT NULL DEFAULT 'text',
        text TEXT NOT NULL DEFAULT '',
        wa_message_id TEXT,
        wa_status TEXT,
        wa_error TEXT,
        wa_ts_sent TIMESTAMP,
        wa_ts_delivered TIMESTAMP,
        wa_ts_read TIMESTAMP,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vehicles (
        id TEXT PRIMARY KEY,
        vehicle_key TEXT NOT NULL UNIQUE,
        brand TEXT NOT NULL,
        model TEXT NOT NULL,
        version TEXT,
        year INTEGER NOT NULL,
        km INTEGER NOT NULL DEFAULT 0,
        price DOUBLE PRECISION NOT NULL,
        body_type TEXT,
        fuel TEXT,
        transmission TEXT,
        color TEXT,
        description TEXT,
        photos TEXT,
        url TEXT,
        available BOOLEAN NOT NULL DEFAULT TRUE,
        apt_uber BOOLEAN NOT NULL DEFAULT FALSE,
        apt_uber_black BOOLEAN NOT NULL DEFAULT FALSE,
        apt_family BOOLEAN NOT NULL DEFAULT FALSE,
        apt_work BOOLEAN NOT NULL DEFAULT FALSE,
        embedding TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        last_seen_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory_sync_state (
        id INTEGER PRIMARY KEY,
        last_sync_at TIMESTAMP,
        last_result TEXT,
        updated_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS recommendations (
        id TEXT PRIMARY KEY,
        phone TEXT NOT NULL,
        vehicle_id TEXT NOT NULL,
        position INTEGER NOT NULL,
        match_score INTEGER NOT NULL,
        reasoning TEXT,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS leads (
        id TEXT PRIMARY KEY,
        phone TEXT NOT NULL,
        customer_name TEXT,
        vehicle_id TEXT,
        vehicle_label TEXT,
        intent TEXT,
        confidence DOUBLE PRECISION,
        preferences TEXT,
        summary TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        sent_at TIMESTAMP,
        contacted_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_settings (
        id INTEGER PRIMARY KEY,
        is_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        provider TEXT NOT NULL DEFAULT 'groq',
        model TEXT NOT NULL DEFAULT 'llama-3.1-8b-instant',
        system_prompt TEXT NOT NULL DEFAULT '',
        max_tokens INTEGER NOT NULL DEFAULT 400,
        temperature DOUBLE PRECISION NOT NULL DEFAULT 0.3,
        fallback_provider TEXT NOT NULL DEFAULT 'openrouter',
        fallback_model TEXT NOT NULL DEFAULT 'google/gemma-2-9b-it',
        timeout_sec INTEGER NOT NULL DEFAULT 25,
        max_retries INTEGER NOT NULL DEFAULT 1,
        reply_chunk_chars INTEGER NOT NULL DEFAULT 4096,
        reply_delay_ms INTEGER NOT NULL DEFAULT 600
    )
    """,
]

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_messages_phone_created_at ON messages (phone, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_messages_wa_message_id ON messages (wa_message_id)",
    "CREATE INDEX IF NOT EXISTS idx_vehicles_available_price ON vehicles (available, price)",
    "CREATE INDEX IF NOT EXISTS idx_recommendations_phone ON recommendations (phone, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_leads_phone_status ON leads (phone, status)",
    "CREATE INDEX IF NOT EXISTS idx_conversations_updated_at ON conversations (updated_at)",
]


def ensure_schema() -> None:
    with engine.begin() as conn:
        for ddl in _TABLES:
            conn.execute(text(ddl))
        for ddl in _INDEXES:
            conn.execute(text(ddl))

        # 1 fila default de settings si la tabla está vacía
        conn.execute(text("""
            INSERT INTO ai_settings (id, is_enabled)
            SELECT 1, TRUE
            WHERE NOT EXISTS (SELECT 1 FROM ai_settings)
        """))
