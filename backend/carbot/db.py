# carbot/db.py

import os
from sqlalchemy import create_engine


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, "").strip() or default)
    except Exception:
        return default


DATABASE_URL = os.getenv("DATABASE_URL", "").strip()

# Sin DB no hay bot: falla al importar para detectarlo en el deploy
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set")

IS_SQLITE = DATABASE_URL.startswith("sqlite")

# Pool settings (ajustables por env)
DB_POOL_SIZE = _env_int("DB_POOL_SIZE", 10)
DB_MAX_OVERFLOW = _env_int("DB_MAX_OVERFLOW", 20)
DB_POOL_TIMEOUT = _env_int("DB_POOL_TIMEOUT", 30)
DB_POOL_RECYCLE = _env_int("DB_POOL_RECYCLE", 1800)


def _engine_kwargs() -> dict:
    # SQLite (tests / dev local) no acepta pool ni keepalives
    if IS_SQLITE:
        return {"connect_args": {"check_same_thread": False}}

    return {
        "pool_pre_ping": True,
        "pool_size": DB_POOL_SIZE,
        "max_overflow": DB_MAX_OVERFLOW,
        "pool_timeout": DB_POOL_TIMEOUT,
        "pool_recycle": DB_POOL_RECYCLE,
        "connect_args": {
            "connect_timeout": _env_int("DB_CONNECT_TIMEOUT", 10),
            "keepalives": 1,
            "keepalives_idle": _env_int("DB_KEEPALIVES_IDLE", 30),
            "keepalives_interval": _env_int("DB_KEEPALIVES_INTERVAL", 10),
            "keepalives_count": _env_int("DB_KEEPALIVES_COUNT", 5),
        },
    }


engine = create_engine(DATABASE_URL, **_engine_kwargs())
