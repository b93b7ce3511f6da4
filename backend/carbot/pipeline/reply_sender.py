# carbot/pipeline/reply_sender.py

from __future__ import annotations

import asyncio
from typing import List, Optional

from sqlalchemy import text

from carbot.db import engine
from carbot.ai.engine import get_settings
from carbot.conversation.formatter import WHATSAPP_MAX_MESSAGE_LENGTH, split_long_message
from carbot.routes.whatsapp import send_whatsapp_text
from carbot.utils.helpers import new_id, utcnow


# -------------------------
# DB helpers
# -------------------------

def save_message(
    conn,
    phone: str,
    direction: str,
    text_msg: str = "",
    msg_type: str = "text",
    wa_message_id: Optional[str] = None,
) -> str:
    """
    Guarda un mensaje (IN/OUT) y SIEMPRE hace bump de conversations.updated_at.
    OUT queda como wa_status='queued' hasta confirmar WhatsApp.
    """
    direction = (direction or "in").strip().lower()
    if direction not in ("in", "out"):
        direction = "in"

    msg_type = (msg_type or "text").strip().lower()
    now = utcnow()
    message_id = new_id()

    conn.execute(
        text("""
            INSERT INTO messages (
                id, phone, direction, msg_type, text, wa_message_id, wa_status, created_at
            )
            VALUES (
                :id, :phone, :direction, :msg_type, :text, :wa_message_id, :wa_status, :created_at
            )
        """),
        {
            "id": message_id,
            "phone": phone,
            "direction": direction,
            "msg_type": msg_type,
            "text": text_msg or "",
            "wa_message_id": wa_message_id,
            "wa_status": "queued" if direction == "out" else None,
            "created_at": now,
        },
    )

    conn.execute(
        text("""
            INSERT INTO conversations (phone, created_at, updated_at)
            VALUES (:phone, :now, :now)
            ON CONFLICT (phone) DO UPDATE SET updated_at = EXCLUDED.updated_at
        """),
        {"phone": phone, "now": now},
    )

    return message_id


def inbound_already_seen(conn, wa_message_id: Optional[str]) -> bool:
    if not wa_message_id:
        return False
    r = conn.execute(text("""
        SELECT 1 FROM messages
        WHERE wa_message_id = :wa_id AND direction = 'in'
        LIMIT 1
    """), {"wa_id": wa_message_id}).first()
    return r is not None


def set_wa_send_result(
    conn,
    local_message_id: str,
    wa_message_id: Optional[str],
    sent_ok: bool,
    wa_error: str = "",
) -> None:
    if not sent_ok or not wa_message_id:
        conn.execute(
            text("""
                UPDATE messages
                SET wa_status = 'failed',
                    wa_error  = :wa_error
                WHERE id = :id
            """),
            {"id": local_message_id, "wa_error": (wa_error or "WhatsApp send failed")[:900]},
        )
        return

    conn.execute(
        text("""
            UPDATE messages
            SET wa_message_id = :wa_message_id,
                wa_status     = 'sent',
                wa_error      = NULL,
                wa_ts_sent    = COALESCE(wa_ts_sent, :now)
            WHERE id = :id
        """),
        {"id": local_message_id, "wa_message_id": str(wa_message_id), "now": utcnow()},
    )


# -------------------------
# Send in chunks
# -------------------------

def _send_settings() -> dict:
    s = get_settings()
    return {
        "reply_chunk_chars": int(max(200, min(int(s.get("reply_chunk_chars") or WHATSAPP_MAX_MESSAGE_LENGTH), WHATSAPP_MAX_MESSAGE_LENGTH))),
        "reply_delay_ms": int(max(0, min(int(s.get("reply_delay_ms") or 0), 15000))),
    }


async def send_reply_in_chunks(phone: str, full_text: str) -> dict:
    s = _send_settings()
    max_chars = s["reply_chunk_chars"]
    reply_delay = s["reply_delay_ms"] / 1000.0

    chunks = [c for c in split_long_message(full_text or "", max_chars) if c.strip()]

    sent_any = False
    wa_ids: List[str] = []
    local_ids: List[str] = []
    last_wa_resp: dict = {"sent": False, "reason": "no chunks"}

    for idx, chunk in enumerate(chunks):
        with engine.begin() as conn:
            local_out_id = save_message(conn, phone=phone, direction="out", msg_type="text", text_msg=chunk)
        local_ids.append(local_out_id)

        try:
            wa_resp = await send_whatsapp_text(phone, chunk)
        except Exception as e:
            wa_resp = {"sent": False, "reason": f"send_exception: {str(e)[:300]}"}

        last_wa_resp = wa_resp if isinstance(wa_resp, dict) else {"sent": False, "reason": "invalid wa_resp"}
        wa_message_id = last_wa_resp.get("wa_message_id") if last_wa_resp.get("sent") is True else None

        with engine.begin() as conn:
            if wa_message_id:
                sent_any = True
                wa_ids.append(str(wa_message_id))
                set_wa_send_result(conn, local_out_id, wa_message_id, True)
            else:
                err = last_wa_resp.get("whatsapp_body") or last_wa_resp.get("reason") or "WhatsApp send failed"
                set_wa_send_result(conn, local_out_id, None, False, str(err))

        if idx < len(chunks) - 1 and reply_delay > 0:
            await asyncio.sleep(reply_delay)

    return {
        "sent": sent_any,
        "chunks_sent": len(chunks),
        "local_message_ids": local_ids,
        "wa_message_ids": wa_ids,
        "last_wa": last_wa_resp,
    }
