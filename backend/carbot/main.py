import os
import asyncio
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from starlette.requests import Request as StarletteRequest

from carbot.db import engine
from carbot.schema import ensure_schema
from carbot.routes.whatsapp import router as whatsapp_router
from carbot.routes.admin import router as admin_router
from carbot.pipeline.ingest_core import IngestMessage, run_ingest
from carbot.inventory.scraper import INVENTORY_URL
from carbot.inventory.sync_service import start_periodic_sync
from carbot.utils.helpers import env_int, utcnow


INVENTORY_SYNC_INTERVAL_SEC = env_int("INVENTORY_SYNC_INTERVAL_SEC", 3600)
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]


# =========================================================
# APP
# =========================================================

app = FastAPI(title="carbot")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS or ["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: StarletteRequest, exc: Exception):
    return JSONResponse(
        status_code=500,
        content={
            "ok": False,
            "error": str(exc),
            "path": str(request.url.path),
        },
    )


app.include_router(whatsapp_router)
app.include_router(admin_router)

ensure_schema()

_background_tasks: set = set()


@app.on_event("startup")
async def _start_inventory_sync():
    if INVENTORY_URL and INVENTORY_SYNC_INTERVAL_SEC > 0:
        task = asyncio.create_task(start_periodic_sync(INVENTORY_SYNC_INTERVAL_SEC))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)


# =========================================================
# MODELS
# =========================================================

class TakeoverPayload(BaseModel):
    phone: str
    takeover: bool


# =========================================================
# ROUTES
# =========================================================

@app.get("/api/health")
def health():
    return {"ok": True, "service": "carbot"}


@app.get("/api/conversations")
def get_conversations(
    search: str = Query("", description="Buscar por phone, nombre o texto preview"),
    takeover: str = Query("all", description="all|on|off"),
    limit: int = Query(200, ge=1, le=1000),
):
    takeover = (takeover or "all").strip().lower()
    term = (search or "").strip().lower()

    where = []
    params: dict = {"limit": limit}

    if takeover == "on":
        where.append("c.takeover = TRUE")
    elif takeover == "off":
        where.append("c.takeover = FALSE")

    last_text = """
        (SELECT m.text FROM messages m WHERE m.phone = c.phone ORDER BY m.created_at DESC LIMIT 1)
    """

    if term:
        params["term"] = f"%{term}%"
        where.append(f"""
            (
              LOWER(c.phone) LIKE :term
              OR LOWER(COALESCE(c.customer_name, '')) LIKE :term
              OR LOWER(COALESCE({last_text}, '')) LIKE :term
            )
        """)

    where_sql = ("WHERE " + " AND ".join(where)) if where else ""

    with engine.begin() as conn:
        rows = conn.execute(text(f"""
            SELECT
                c.phone,
                c.takeover,
                c.customer_name,
                c.lead_captured,
                c.tags,
                c.notes,
                c.updated_at,
                c.last_read_at,
                {last_text} AS last_text,
                (
                    SELECT COUNT(*)
                    FROM messages mi
                    WHERE mi.phone = c.phone
                      AND mi.direction = 'in'
                      AND (c.last_read_at IS NULL OR mi.created_at > c.last_read_at)
                ) AS unread_count
            FROM conversations c
            {where_sql}
            ORDER BY c.updated_at DESC
            LIMIT :limit
        """), params).mappings().all()

    out = []
    for r in rows:
        d = dict(r)
        d["text"] = d.pop("last_text") or ""
        d["takeover"] = bool(d.get("takeover"))
        d["lead_captured"] = bool(d.get("lead_captured"))
        d["unread_count"] = int(d.get("unread_count") or 0)
        d["has_unread"] = d["unread_count"] > 0
        out.append(d)

    return {"conversations": out}


@app.get("/api/conversations/{phone}/messages")
def get_messages(phone: str, limit: int = Query(500, ge=1, le=2000)):
    with engine.begin() as conn:
        rows = conn.execute(text("""
            SELECT
                id, phone, direction, msg_type, text, created_at,
                wa_message_id, wa_status, wa_error, wa_ts_sent, wa_ts_delivered, wa_ts_read
            FROM messages
            WHERE phone = :phone
            ORDER BY created_at ASC
            LIMIT :limit
        """), {"phone": phone, "limit": limit}).mappings().all()
    return {"messages": [dict(r) for r in rows]}


@app.post("/api/conversations/{phone}/read")
def mark_conversation_read(phone: str):
    phone = (phone or "").strip()
    if not phone:
        raise HTTPException(status_code=400, detail="phone required")

    with engine.begin() as conn:
        conn.execute(text("""
            INSERT INTO conversations (phone, last_read_at, created_at, updated_at)
            VALUES (:phone, :ts, :ts, :ts)
            ON CONFLICT (phone)
            DO UPDATE SET last_read_at = EXCLUDED.last_read_at
        """), {"phone": phone, "ts": utcnow()})

    return {"ok": True}


@app.post("/api/conversations/takeover")
def set_takeover(payload: TakeoverPayload):
    now = utcnow()
    with engine.begin() as conn:
        conn.execute(text("""
            INSERT INTO conversations (phone, takeover, created_at, updated_at)
            VALUES (:phone, :takeover, :now, :now)
            ON CONFLICT (phone)
            DO UPDATE SET takeover = EXCLUDED.takeover,
                          updated_at = EXCLUDED.updated_at
        """), {"phone": payload.phone, "takeover": payload.takeover, "now": now})
    return {"ok": True}


@app.post("/api/messages/ingest")
async def ingest(msg: IngestMessage):
    return await run_ingest(msg)
