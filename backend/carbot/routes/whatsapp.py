import os
import hmac
import json
import hashlib
from datetime import datetime, timezone
from typing import Optional, Tuple

import httpx
from fastapi import APIRouter, Request, Response, HTTPException
from sqlalchemy import text

from carbot.db import engine
from carbot.utils.helpers import utcnow
from carbot.utils.phone import mask_for_log

router = APIRouter()

VERIFY_TOKEN = os.getenv("WHATSAPP_VERIFY_TOKEN", "")
WHATSAPP_APP_SECRET = os.getenv("WHATSAPP_APP_SECRET", "").strip()

WHATSAPP_TOKEN = os.getenv("WHATSAPP_TOKEN", "")
WHATSAPP_PHONE_NUMBER_ID = os.getenv("WHATSAPP_PHONE_NUMBER_ID", "")
WHATSAPP_GRAPH_VERSION = os.getenv("WHATSAPP_GRAPH_VERSION", "v20.0")
WHATSAPP_SEND_TIMEOUT = float(os.getenv("WHATSAPP_SEND_TIMEOUT", "15"))

WA_DEBUG_RAW = os.getenv("WA_DEBUG_RAW", "false").lower() == "true"

MEDIA_TYPES = ("image", "video", "audio", "document", "sticker")


# =========================================================
# WhatsApp send (Graph API)
# =========================================================

def _extract_wa_message_id(resp_json: dict) -> Optional[str]:
    msgs = (resp_json or {}).get("messages") or []
    if msgs and isinstance(msgs, list):
        return (msgs[0] or {}).get("id")
    return None


async def send_whatsapp_text(to_phone: str, text_msg: str) -> dict:
    """
    Nunca lanza: el resultado dice si salió y con qué wa_message_id.
    """
    if not (WHATSAPP_TOKEN and WHATSAPP_PHONE_NUMBER_ID):
        return {"sent": False, "reason": "WHATSAPP_TOKEN / WHATSAPP_PHONE_NUMBER_ID not set"}

    url = f"https://graph.facebook.com/{WHATSAPP_GRAPH_VERSION}/{WHATSAPP_PHONE_NUMBER_ID}/messages"
    payload = {
        "messaging_product": "whatsapp",
        "to": to_phone,
        "type": "text",
        "text": {"body": text_msg, "preview_url": False},
    }
    headers = {"Authorization": f"Bearer {WHATSAPP_TOKEN}", "Content-Type": "application/json"}

    try:
        async with httpx.AsyncClient(timeout=WHATSAPP_SEND_TIMEOUT) as client:
            r = await client.post(url, json=payload, headers=headers)
    except httpx.HTTPError as e:
        return {"sent": False, "reason": f"http error: {str(e)[:300]}"}

    if r.status_code >= 400:
        return {"sent": False, "whatsapp_status": r.status_code, "whatsapp_body": r.text[:900]}

    try:
        j = r.json()
    except ValueError:
        j = {}
    return {"sent": True, "wa_message_id": _extract_wa_message_id(j), "whatsapp": j}


# =========================================================
# Signature (X-Hub-Signature-256)
# =========================================================

def verify_signature(raw_body: bytes, header_value: Optional[str], app_secret: str) -> bool:
    if not app_secret:
        return True
    if not header_value or not header_value.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, header_value[len("sha256="):].strip().lower())


# =========================================================
# Webhook verify (Meta)
# =========================================================

@router.get("/api/whatsapp/webhook")
async def whatsapp_verify(request: Request):
    qp = request.query_params
    mode = qp.get("hub.mode")
    token = qp.get("hub.verify_token")
    challenge = qp.get("hub.challenge") or ""

    if mode == "subscribe" and VERIFY_TOKEN and token == VERIFY_TOKEN:
        return Response(content=challenge, media_type="text/plain")

    raise HTTPException(status_code=403, detail="Verification failed")


# =========================================================
# Delivery statuses
# =========================================================

_STATUS_TS_COLUMN = {
    "sent": "wa_ts_sent",
    "delivered": "wa_ts_delivered",
    "read": "wa_ts_read",
}


def _update_status_in_db(status_obj: dict) -> None:
    wa_id = status_obj.get("id")
    st = (status_obj.get("status") or "").lower().strip()
    ts = status_obj.get("timestamp")

    if not wa_id or not st:
        return

    dt = None
    try:
        if ts:
            dt = datetime.fromtimestamp(int(ts), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError):
        dt = None

    with engine.begin() as conn:
        if st in _STATUS_TS_COLUMN:
            col = _STATUS_TS_COLUMN[st]
            conn.execute(text(f"""
                UPDATE messages
                SET wa_status = :st,
                    {col} = COALESCE({col}, :dt)
                WHERE wa_message_id = :wa_id
            """), {"wa_id": wa_id, "st": st, "dt": dt or utcnow()})

        elif st == "failed":
            errs = status_obj.get("errors") or []
            wa_error = json.dumps(errs[0], ensure_ascii=False)[:900] if errs and isinstance(errs, list) else "failed"
            conn.execute(text("""
                UPDATE messages
                SET wa_status = 'failed',
                    wa_error = :wa_error
                WHERE wa_message_id = :wa_id
            """), {"wa_id": wa_id, "wa_error": wa_error})


# =========================================================
# Incoming parsing
# =========================================================

def _extract_incoming(m: dict) -> Tuple[str, str]:
    """
    Returns (msg_type, text_msg).
    interactive/button se vuelven texto; media conserva su tipo (+caption).
    """
    msg_type = (m.get("type") or "text").strip().lower()
    text_msg = ""

    if msg_type == "text":
        text_msg = (m.get("text") or {}).get("body", "") or ""

    elif msg_type == "interactive":
        inter = m.get("interactive") or {}
        lr = inter.get("list_reply") or {}
        br = inter.get("button_reply") or {}
        text_msg = (
            lr.get("title") or lr.get("id") or
            br.get("title") or br.get("id") or ""
        )
        msg_type = "text"

    elif msg_type == "button":
        btn = m.get("button") or {}
        text_msg = btn.get("text") or btn.get("payload") or ""
        msg_type = "text"

    elif msg_type in MEDIA_TYPES:
        text_msg = (m.get(msg_type) or {}).get("caption") or ""

    return msg_type, (text_msg or "").strip()


def _iter_values(data: dict):
    for entry in data.get("entry") or []:
        for change in (entry or {}).get("changes") or []:
            value = (change or {}).get("value") or {}
            if isinstance(value, dict):
                yield value


async def _ingest_internal(phone: str, msg_type: str, text_msg: str, wa_message_id: Optional[str]) -> None:
    """
    Mismo pipeline que /api/messages/ingest, dentro del proceso.
    """
    from carbot.pipeline.ingest_core import IngestMessage, run_ingest

    try:
        await run_ingest(IngestMessage(
            phone=phone,
            direction="in",
            msg_type=msg_type or "text",
            text=text_msg or "",
            wa_message_id=wa_message_id,
        ))
    except Exception as e:
        print("INGEST_INTERNAL_ERROR:", str(e)[:300], "| phone:", mask_for_log(phone), "| type:", msg_type)


# =========================================================
# Webhook receiver
# =========================================================

@router.post("/api/whatsapp/webhook")
async def whatsapp_receive(request: Request):
    raw = await request.body()

    if not verify_signature(raw, request.headers.get("X-Hub-Signature-256"), WHATSAPP_APP_SECRET):
        print("WA_WEBHOOK: invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    if WA_DEBUG_RAW:
        print("WA_WEBHOOK_RAW:", raw.decode("utf-8", errors="ignore")[:8000])

    try:
        data = json.loads(raw.decode("utf-8", errors="ignore") or "{}")
    except ValueError:
        return {"ok": True}
    if not isinstance(data, dict):
        return {"ok": True}

    # después de la firma, siempre 200 (Meta reintenta si no)
    try:
        for value in _iter_values(data):
            statuses = value.get("statuses") or []
            messages = value.get("messages") or []
            print(f"WA_WEBHOOK: messages={len(messages)} statuses={len(statuses)}")

            for s in statuses:
                _update_status_in_db(s)

            for m in messages:
                phone = (m.get("from") or "").strip()
                if not phone:
                    continue
                msg_type, text_msg = _extract_incoming(m)
                await _ingest_internal(phone, msg_type, text_msg, m.get("id"))

    except Exception as e:
        print("WEBHOOK_ERROR:", str(e)[:900])

    return {"ok": True}
