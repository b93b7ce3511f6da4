# carbot/pipeline/ingest_core.py

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import text

from carbot.db import engine

from carbot.ai.embeddings import embed_text, embeddings_enabled, profile_embedding_text
from carbot.ai.engine import get_settings
from carbot.ai.matcher import Match, rank_vehicles
from carbot.conversation.flow import handle_message, pack_state, unpack_state
from carbot.inventory.repo import list_available_vehicles
from carbot.leads.forwarding import capture_and_forward_lead
from carbot.pipeline.guardrails import validate_input, validate_output
from carbot.pipeline.reply_sender import (
    inbound_already_seen,
    save_message,
    send_reply_in_chunks,
    set_wa_send_result,
)
from carbot.routes.whatsapp import MEDIA_TYPES, send_whatsapp_text
from carbot.utils.helpers import new_id, utcnow
from carbot.utils.phone import mask_for_log
from carbot.utils.trace import log_event, new_trace_id


MEDIA_REPLY = (
    "Recebi seu arquivo, mas por enquanto só consigo entender mensagens de texto. 😊\n\n"
    "Pode me escrever o que você procura?"
)


# =========================================================
# Models
# =========================================================

class IngestMessage(BaseModel):
    model_config = {"extra": "allow"}

    phone: str
    direction: str = "in"
    msg_type: str = "text"
    text: str = ""
    wa_message_id: Optional[str] = None


def _log(trace_id: str, event: str, **kv):
    log_event("INGEST", trace_id, event, **kv)


# =========================================================
# Conversation state (conversations.ai_state)
# =========================================================

def _get_conversation(phone: str) -> Dict[str, Any]:
    with engine.begin() as conn:
        r = conn.execute(text("""
            SELECT takeover, ai_state, customer_name
            FROM conversations
            WHERE phone = :phone
            LIMIT 1
        """), {"phone": phone}).mappings().first()
    return dict(r) if r else {}


def _save_state(phone: str, state: dict) -> None:
    with engine.begin() as conn:
        conn.execute(text("""
            INSERT INTO conversations (phone, ai_state, customer_name, created_at, updated_at)
            VALUES (:phone, :ai_state, :customer_name, :now, :now)
            ON CONFLICT (phone) DO UPDATE SET
                ai_state = EXCLUDED.ai_state,
                customer_name = COALESCE(EXCLUDED.customer_name, conversations.customer_name),
                updated_at = EXCLUDED.updated_at
        """), {
            "phone": phone,
            "ai_state": pack_state(state),
            "customer_name": state.get("customer_name"),
            "now": utcnow(),
        })


def _save_recommendations(phone: str, vehicles: List[dict]) -> None:
    now = utcnow()
    with engine.begin() as conn:
        for v in vehicles:
            if not v.get("id"):
                continue
            conn.execute(text("""
                INSERT INTO recommendations (id, phone, vehicle_id, position, match_score, reasoning, created_at)
                VALUES (:id, :phone, :vehicle_id, :position, :score, :reasoning, :now)
            """), {
                "id": new_id(),
                "phone": phone,
                "vehicle_id": v["id"],
                "position": int(v.get("position") or 0),
                "score": int(v.get("score") or 0),
                "reasoning": v.get("reasoning") or "",
                "now": now,
            })


# =========================================================
# Inventory search (lo que usa el flujo)
# =========================================================

async def search_inventory(profile: dict) -> List[Match]:
    vehicles = list_available_vehicles()
    if not vehicles:
        return []

    query_embedding = None
    if embeddings_enabled():
        query_embedding = await embed_text(profile_embedding_text(profile))

    return rank_vehicles(vehicles, profile, query_embedding)


# =========================================================
# Pipeline
# =========================================================

async def _send_outbound(phone: str, local_id: str, body: str) -> dict:
    wa_resp = await send_whatsapp_text(phone, body)
    wa_message_id = wa_resp.get("wa_message_id") if wa_resp.get("sent") is True else None

    with engine.begin() as conn:
        if wa_message_id:
            set_wa_send_result(conn, local_id, wa_message_id, True)
        else:
            err = wa_resp.get("whatsapp_body") or wa_resp.get("reason") or "WhatsApp send failed"
            set_wa_send_result(conn, local_id, None, False, str(err))

    return {"saved": True, "sent": bool(wa_resp.get("sent")), "wa": wa_resp}


def _send_summary(send_result: dict) -> dict:
    return {
        "count": int(send_result.get("chunks_sent") or 0),
        "local_message_ids": send_result.get("local_message_ids") or [],
        "wa_message_ids": send_result.get("wa_message_ids") or [],
    }


async def run_ingest(msg: IngestMessage) -> dict:
    trace_id = new_trace_id()

    direction = msg.direction if msg.direction in ("in", "out") else "in"
    msg_type = (msg.msg_type or "text").strip().lower()
    user_text = (msg.text or "").strip()

    _log(
        trace_id,
        "ENTER_INGEST",
        phone=mask_for_log(msg.phone),
        direction=direction,
        msg_type=msg_type,
        text_len=len(user_text),
    )

    # 1) Idempotencia + guardar
    try:
        with engine.begin() as conn:
            if direction == "in" and inbound_already_seen(conn, msg.wa_message_id):
                _log(trace_id, "IDEMPOTENCY_SKIP", wa_message_id=msg.wa_message_id)
                return {"saved": False, "sent": False, "reason": "duplicate"}

            local_id = save_message(
                conn,
                phone=msg.phone,
                direction=direction,
                msg_type=msg_type,
                text_msg=msg.text or "",
                wa_message_id=msg.wa_message_id if direction == "in" else None,
            )
    except Exception as e:
        _log(trace_id, "DB_SAVE_FAIL", error=str(e)[:300])
        return {"saved": False, "sent": False, "stage": "db", "error": str(e)[:300]}

    # 2) OUT: solo enviar
    if direction == "out":
        try:
            return await _send_outbound(msg.phone, local_id, msg.text or "")
        except Exception as e:
            with engine.begin() as conn:
                set_wa_send_result(conn, local_id, None, False, str(e)[:900])
            return {"saved": True, "sent": False, "stage": "whatsapp", "error": str(e)[:300]}

    # 3) IN: bot
    try:
        conv = _get_conversation(msg.phone)
        takeover_on = bool(conv.get("takeover"))
        ai_enabled = bool(get_settings().get("is_enabled"))

        if (not ai_enabled) or takeover_on:
            _log(trace_id, "AI_SKIPPED", reason="ai_disabled_or_takeover_on", takeover=takeover_on, enabled=ai_enabled)
            return {"saved": True, "sent": False, "ai": False, "reason": "ai_disabled_or_takeover_on"}

        if msg_type in MEDIA_TYPES and not user_text:
            _log(trace_id, "MEDIA_UNSUPPORTED", msg_type=msg_type)
            send_result = await send_reply_in_chunks(msg.phone, MEDIA_REPLY)
            return {"saved": True, "sent": bool(send_result.get("sent")), "ai": False, "reply": MEDIA_REPLY}

        guard = validate_input(msg.phone, user_text)
        if not guard.allowed:
            _log(trace_id, "GUARD_BLOCKED", reason=guard.reason)
            reply = guard.reply or ""
            if guard.reason == "rate_limited":
                # no respondemos cada mensaje del spam
                return {"saved": True, "sent": False, "ai": False, "reason": guard.reason}
            send_result = await send_reply_in_chunks(msg.phone, reply)
            return {"saved": True, "sent": bool(send_result.get("sent")), "ai": False, "reason": guard.reason, "reply": reply}

        state = unpack_state(conv.get("ai_state"))
        prev_node = state.get("node")

        result = await handle_message(state, guard.text, search_inventory)
        state = result.state
        reply_text = validate_output(result.reply)

        _log(
            trace_id,
            "FLOW",
            node_from=prev_node,
            node_to=state.get("node"),
            events=[e.get("type") for e in result.events],
        )

        for ev in result.events:
            if ev.get("type") == "recommendations_shown":
                _save_recommendations(msg.phone, ev.get("vehicles") or [])

        lead = None
        if state["flags"].get("lead_pending"):
            try:
                lead = await capture_and_forward_lead(msg.phone, state, send_whatsapp_text, trace_id)
                state["flags"]["lead_pending"] = False
                state["flags"]["lead_captured"] = True
            except Exception as e:
                # el cliente ya recibió la confirmación; se reintenta en el próximo mensaje
                _log(trace_id, "LEAD_EXCEPTION", error=str(e)[:300])

        _save_state(msg.phone, state)

        send_result = await send_reply_in_chunks(msg.phone, reply_text)

        return {
            "saved": True,
            "sent": bool(send_result.get("sent")),
            "ai": True,
            "reply": reply_text,
            "node": state.get("node"),
            "lead_id": (lead or {}).get("id"),
            "chunks": _send_summary(send_result),
            "wa_last": send_result.get("last_wa") or {},
        }

    except Exception as e:
        _log(trace_id, "INGEST_EXCEPTION", error=str(e)[:300])
        return {"saved": True, "sent": False, "ai": False, "ai_error": str(e)[:900]}
