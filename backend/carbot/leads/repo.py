# carbot/leads/repo.py

from __future__ import annotations

import csv
import io
import json
from typing import Any, Dict, Optional

from sqlalchemy import text

from carbot.db import engine
from carbot.utils.helpers import new_id, utcnow
from carbot.utils.phone import mask_phone


LEAD_STATUSES = ("pending", "sent", "contacted", "converted", "lost")

_LEAD_COLUMNS = """
    id, phone, customer_name, vehicle_id, vehicle_label, intent, confidence,
    preferences, summary, status, attempts, last_error,
    created_at, updated_at, sent_at, contacted_at
"""


class InvalidLeadStatus(ValueError):
    pass


def _row_to_lead(row: Any) -> Dict[str, Any]:
    d = dict(row)
    raw = d.get("preferences")
    try:
        d["preferences"] = json.loads(raw) if raw else {}
    except (TypeError, ValueError):
        d["preferences"] = {}
    return d


def find_open_lead(phone: str) -> Optional[Dict[str, Any]]:
    with engine.begin() as conn:
        r = conn.execute(text(f"""
            SELECT {_LEAD_COLUMNS}
            FROM leads
            WHERE phone = :phone AND status IN ('pending', 'sent', 'contacted')
            ORDER BY created_at DESC
            LIMIT 1
        """), {"phone": phone}).mappings().first()
    return _row_to_lead(r) if r else None


def create_lead(
    phone: str,
    *,
    customer_name: Optional[str] = None,
    vehicle_id: Optional[str] = None,
    vehicle_label: str = "",
    intent: str = "info",
    confidence: float = 0.0,
    preferences: Optional[dict] = None,
    summary: str = "",
) -> Dict[str, Any]:
    """
    Un lead abierto por teléfono: si ya existe, se actualiza con el último interés.
    """
    phone = (phone or "").strip()
    if not phone:
        raise ValueError("phone is required")

    now = utcnow()
    prefs_json = json.dumps(preferences or {}, ensure_ascii=False)
    existing = find_open_lead(phone)

    with engine.begin() as conn:
        if existing:
            conn.execute(text("""
                UPDATE leads
                SET customer_name = COALESCE(:customer_name, customer_name),
                    vehicle_id = :vehicle_id,
                    vehicle_label = :vehicle_label,
                    intent = :intent,
                    confidence = :confidence,
                    preferences = :preferences,
                    summary = :summary,
                    updated_at = :now
                WHERE id = :id
            """), {
                "id": existing["id"],
                "customer_name": customer_name,
                "vehicle_id": vehicle_id,
                "vehicle_label": vehicle_label,
                "intent": intent,
                "confidence": float(confidence or 0.0),
                "preferences": prefs_json,
                "summary": summary,
                "now": now,
            })
            lead_id = existing["id"]
        else:
            lead_id = new_id()
            conn.execute(text("""
                INSERT INTO leads (
                    id, phone, customer_name, vehicle_id, vehicle_label, intent, confidence,
                    preferences, summary, status, attempts, created_at, updated_at
                )
                VALUES (
                    :id, :phone, :customer_name, :vehicle_id, :vehicle_label, :intent, :confidence,
                    :preferences, :summary, 'pending', 0, :now, :now
                )
            """), {
                "id": lead_id,
                "phone": phone,
                "customer_name": customer_name,
                "vehicle_id": vehicle_id,
                "vehicle_label": vehicle_label,
                "intent": intent,
                "confidence": float(confidence or 0.0),
                "preferences": prefs_json,
                "summary": summary,
                "now": now,
            })

        conn.execute(text("""
            UPDATE conversations SET lead_captured = TRUE, updated_at = :now WHERE phone = :phone
        """), {"phone": phone, "now": now})

    return get_lead(lead_id)


def get_lead(lead_id: str) -> Optional[Dict[str, Any]]:
    with engine.begin() as conn:
        r = conn.execute(text(f"""
            SELECT {_LEAD_COLUMNS}
            FROM leads
            WHERE id = :id
            LIMIT 1
        """), {"id": lead_id}).mappings().first()
    return _row_to_lead(r) if r else None


def list_leads(
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    search: Optional[str] = None,
) -> Dict[str, Any]:
    page = max(1, int(page or 1))
    limit = max(1, min(int(limit or 20), 200))

    where = ["1=1"]
    params: Dict[str, Any] = {}
    if status:
        if status not in LEAD_STATUSES:
            raise InvalidLeadStatus(status)
        where.append("status = :status")
        params["status"] = status
    if search and search.strip():
        where.append("(LOWER(COALESCE(customer_name,'')) LIKE :q OR phone LIKE :q OR LOWER(COALESCE(vehicle_label,'')) LIKE :q)")
        params["q"] = f"%{search.strip().lower()}%"

    where_sql = " AND ".join(where)

    with engine.begin() as conn:
        total = conn.execute(text(f"SELECT COUNT(*) FROM leads WHERE {where_sql}"), params).scalar() or 0
        rows = conn.execute(text(f"""
            SELECT {_LEAD_COLUMNS}
            FROM leads
            WHERE {where_sql}
            ORDER BY created_at DESC
            LIMIT :limit OFFSET :offset
        """), {**params, "limit": limit, "offset": (page - 1) * limit}).mappings().all()

    return {
        "leads": [_row_to_lead(r) for r in rows],
        "page": page,
        "limit": limit,
        "total": int(total),
    }


def update_lead_status(lead_id: str, status: str) -> Optional[Dict[str, Any]]:
    if status not in LEAD_STATUSES:
        raise InvalidLeadStatus(status)

    now = utcnow()
    sets = ["status = :status", "updated_at = :now"]
    if status == "sent":
        sets.append("sent_at = COALESCE(sent_at, :now)")
    elif status == "contacted":
        sets.append("contacted_at = COALESCE(contacted_at, :now)")

    with engine.begin() as conn:
        res = conn.execute(text(f"UPDATE leads SET {', '.join(sets)} WHERE id = :id"), {
            "id": lead_id,
            "status": status,
            "now": now,
        })
        if not res.rowcount:
            return None

    return get_lead(lead_id)


def record_send_attempt(lead_id: str, attempts: int, error: str = "") -> None:
    with engine.begin() as conn:
        conn.execute(text("""
            UPDATE leads
            SET attempts = attempts + :attempts,
                last_error = :error,
                updated_at = :now
            WHERE id = :id
        """), {"id": lead_id, "attempts": int(attempts), "error": (error or "")[:900] or None, "now": utcnow()})


def public_lead(lead: Dict[str, Any]) -> Dict[str, Any]:
    """
    Lead para respuestas de API: teléfono enmascarado.
    """
    out = dict(lead)
    out["phone"] = mask_phone(out.get("phone") or "")
    return out


def export_leads_csv(status: Optional[str] = None) -> str:
    where_sql = "1=1"
    params: Dict[str, Any] = {}
    if status:
        if status not in LEAD_STATUSES:
            raise InvalidLeadStatus(status)
        where_sql = "status = :status"
        params["status"] = status

    with engine.begin() as conn:
        rows = conn.execute(text(f"""
            SELECT {_LEAD_COLUMNS}
            FROM leads
            WHERE {where_sql}
            ORDER BY created_at DESC
        """), params).mappings().all()

    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(["id", "created_at", "customer_name", "phone", "vehicle", "intent", "confidence", "status", "sent_at", "contacted_at"])
    for r in rows:
        w.writerow([
            r["id"],
            r["created_at"],
            r["customer_name"] or "",
            mask_phone(r["phone"] or ""),
            r["vehicle_label"] or "",
            r["intent"] or "",
            r["confidence"] if r["confidence"] is not None else "",
            r["status"],
            r["sent_at"] or "",
            r["contacted_at"] or "",
        ])
    return buf.getvalue()
