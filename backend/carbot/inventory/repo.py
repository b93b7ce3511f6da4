# carbot/inventory/repo.py

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import text

from carbot.db import engine
from carbot.ai.embeddings import deserialize_embedding, serialize_embedding
from carbot.utils.helpers import new_id, utcnow


_VEHICLE_COLUMNS = """
    id, vehicle_key, brand, model, version, year, km, price, body_type, fuel,
    transmission, color, description, photos, url, available,
    apt_uber, apt_uber_black, apt_family, apt_work, embedding,
    created_at, updated_at, last_seen_at
"""

_BOOL_FIELDS = ("available", "apt_uber", "apt_uber_black", "apt_family", "apt_work")


def _row_to_vehicle(row: Any) -> Dict[str, Any]:
    d = dict(row)
    for k in _BOOL_FIELDS:
        d[k] = bool(d.get(k))
    try:
        d["photos"] = json.loads(d["photos"]) if d.get("photos") else []
    except (TypeError, ValueError):
        d["photos"] = []
    d["embedding"] = deserialize_embedding(d.get("embedding"))
    d["price"] = float(d["price"]) if d.get("price") is not None else 0.0
    return d


def _params(v: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "vehicle_key": v["vehicle_key"],
        "brand": v.get("brand") or "",
        "model": v.get("model") or "",
        "version": v.get("version"),
        "year": int(v.get("year") or 0),
        "km": int(v.get("km") or 0),
        "price": float(v.get("price") or 0),
        "body_type": v.get("body_type"),
        "fuel": v.get("fuel"),
        "transmission": v.get("transmission"),
        "color": v.get("color"),
        "description": v.get("description"),
        "photos": json.dumps(v.get("photos") or [], ensure_ascii=False),
        "url": v.get("url"),
        "apt_uber": bool(v.get("apt_uber")),
        "apt_uber_black": bool(v.get("apt_uber_black")),
        "apt_family": bool(v.get("apt_family")),
        "apt_work": bool(v.get("apt_work")),
    }


def upsert_vehicle(v: Dict[str, Any]) -> str:
    """
    Inserta o actualiza por vehicle_key. Siempre deja available = TRUE.
    Devuelve el id.
    """
    now = utcnow()
    p = {**_params(v), "id": new_id(), "now": now}

    with engine.begin() as conn:
        r = conn.execute(text("""
            INSERT INTO vehicles (
                id, vehicle_key, brand, model, version, year, km, price, body_type, fuel,
                transmission, color, description, photos, url, available,
                apt_uber, apt_uber_black, apt_family, apt_work,
                created_at, updated_at, last_seen_at
            )
            VALUES (
                :id, :vehicle_key, :brand, :model, :version, :year, :km, :price, :body_type, :fuel,
                :transmission, :color, :description, :photos, :url, TRUE,
                :apt_uber, :apt_uber_black, :apt_family, :apt_work,
                :now, :now, :now
            )
            ON CONFLICT (vehicle_key) DO UPDATE SET
                brand = EXCLUDED.brand,
                model = EXCLUDED.model,
                version = EXCLUDED.version,
                year = EXCLUDED.year,
                km = EXCLUDED.km,
                price = EXCLUDED.price,
                body_type = EXCLUDED.body_type,
                fuel = EXCLUDED.fuel,
                transmission = EXCLUDED.transmission,
                color = EXCLUDED.color,
                description = EXCLUDED.description,
                photos = EXCLUDED.photos,
                url = EXCLUDED.url,
                available = TRUE,
                apt_uber = EXCLUDED.apt_uber,
                apt_uber_black = EXCLUDED.apt_uber_black,
                apt_family = EXCLUDED.apt_family,
                apt_work = EXCLUDED.apt_work,
                updated_at = EXCLUDED.updated_at,
                last_seen_at = EXCLUDED.last_seen_at
            RETURNING id
        """), p)
        return str(r.scalar())


def touch_vehicle(vehicle_key: str) -> None:
    """
    Visto en el scrape sin cambios: solo last_seen_at (y vuelve a available si había salido).
    """
    with engine.begin() as conn:
        conn.execute(text("""
            UPDATE vehicles
            SET last_seen_at = :now,
                available = TRUE
            WHERE vehicle_key = :key
        """), {"key": vehicle_key, "now": utcnow()})


def get_vehicle(vehicle_id: str) -> Optional[Dict[str, Any]]:
    with engine.begin() as conn:
        r = conn.execute(text(f"SELECT {_VEHICLE_COLUMNS} FROM vehicles WHERE id = :id LIMIT 1"), {"id": vehicle_id}).mappings().first()
    return _row_to_vehicle(r) if r else None


def get_vehicles_by_keys(keys: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    keys = [k for k in keys if k]
    if not keys:
        return {}
    placeholders = ", ".join(f":k{i}" for i in range(len(keys)))
    params = {f"k{i}": k for i, k in enumerate(keys)}
    with engine.begin() as conn:
        rows = conn.execute(text(f"""
            SELECT {_VEHICLE_COLUMNS} FROM vehicles WHERE vehicle_key IN ({placeholders})
        """), params).mappings().all()
    return {r["vehicle_key"]: _row_to_vehicle(r) for r in rows}


def list_available_keys() -> List[str]:
    with engine.begin() as conn:
        rows = conn.execute(text("SELECT vehicle_key FROM vehicles WHERE available = TRUE")).all()
    return [r[0] for r in rows]


def list_available_vehicles(filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    """
    filters: min_price, max_price, body_type, brand, limit.
    El filtrado fino (presupuesto ±20%, restricciones) lo hace el matcher.
    """
    f = filters or {}
    where = ["available = TRUE"]
    params: Dict[str, Any] = {}

    if f.get("min_price") is not None:
        where.append("price >= :min_price")
        params["min_price"] = float(f["min_price"])
    if f.get("max_price") is not None:
        where.append("price <= :max_price")
        params["max_price"] = float(f["max_price"])
    if f.get("body_type"):
        where.append("LOWER(body_type) = :body_type")
        params["body_type"] = str(f["body_type"]).lower()
    if f.get("brand"):
        where.append("LOWER(brand) = :brand")
        params["brand"] = str(f["brand"]).lower()

    params["limit"] = max(1, min(int(f.get("limit") or 500), 2000))

    with engine.begin() as conn:
        rows = conn.execute(text(f"""
            SELECT {_VEHICLE_COLUMNS}
            FROM vehicles
            WHERE {' AND '.join(where)}
            ORDER BY price ASC
            LIMIT :limit
        """), params).mappings().all()
    return [_row_to_vehicle(r) for r in rows]


def list_vehicles(available: Optional[bool] = None, page: int = 1, limit: int = 50) -> Dict[str, Any]:
    page = max(1, int(page or 1))
    limit = max(1, min(int(limit or 50), 500))
    where = "1=1"
    params: Dict[str, Any] = {"limit": limit, "offset": (page - 1) * limit}
    if available is not None:
        where = "available = :available"
        params["available"] = bool(available)

    with engine.begin() as conn:
        total = conn.execute(text(f"SELECT COUNT(*) FROM vehicles WHERE {where}"), params).scalar() or 0
        rows = conn.execute(text(f"""
            SELECT {_VEHICLE_COLUMNS}
            FROM vehicles
            WHERE {where}
            ORDER BY updated_at DESC
            LIMIT :limit OFFSET :offset
        """), params).mappings().all()

    vehicles = []
    for r in rows:
        v = _row_to_vehicle(r)
        v["has_embedding"] = bool(v.pop("embedding"))
        vehicles.append(v)
    return {"vehicles": vehicles, "page": page, "limit": limit, "total": int(total)}


def mark_unavailable(vehicle_keys: Iterable[str]) -> int:
    keys = [k for k in vehicle_keys if k]
    if not keys:
        return 0
    placeholders = ", ".join(f":k{i}" for i in range(len(keys)))
    params: Dict[str, Any] = {f"k{i}": k for i, k in enumerate(keys)}
    params["now"] = utcnow()
    with engine.begin() as conn:
        res = conn.execute(text(f"""
            UPDATE vehicles
            SET available = FALSE, updated_at = :now
            WHERE available = TRUE AND vehicle_key IN ({placeholders})
        """), params)
    return int(res.rowcount or 0)


def set_vehicle_embedding(vehicle_id: str, vec: Optional[List[float]]) -> None:
    with engine.begin() as conn:
        conn.execute(text("UPDATE vehicles SET embedding = :e WHERE id = :id"), {
            "id": vehicle_id,
            "e": serialize_embedding(vec),
        })


def inventory_stats() -> Dict[str, Any]:
    with engine.begin() as conn:
        r = conn.execute(text("""
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN available = TRUE THEN 1 ELSE 0 END) AS available,
                SUM(CASE WHEN embedding IS NOT NULL THEN 1 ELSE 0 END) AS with_embedding,
                MIN(CASE WHEN available = TRUE THEN price END) AS min_price,
                MAX(CASE WHEN available = TRUE THEN price END) AS max_price
            FROM vehicles
        """)).mappings().first()
        by_body = conn.execute(text("""
            SELECT COALESCE(body_type, 'N/A') AS body_type, COUNT(*) AS n
            FROM vehicles
            WHERE available = TRUE
            GROUP BY COALESCE(body_type, 'N/A')
        """)).mappings().all()

    total = int(r["total"] or 0)
    available = int(r["available"] or 0)
    return {
        "total": total,
        "available": available,
        "unavailable": total - available,
        "with_embedding": int(r["with_embedding"] or 0),
        "min_price": float(r["min_price"]) if r["min_price"] is not None else None,
        "max_price": float(r["max_price"]) if r["max_price"] is not None else None,
        "by_body_type": {b["body_type"]: int(b["n"]) for b in by_body},
        "last_sync": get_sync_state(),
    }


# -------------------------
# Sync state (1 fila)
# -------------------------

def get_sync_state() -> Dict[str, Any]:
    with engine.begin() as conn:
        r = conn.execute(text("""
            SELECT last_sync_at, last_result FROM inventory_sync_state WHERE id = 1
        """)).mappings().first()
    if not r:
        return {"last_sync_at": None, "last_result": None}
    try:
        result = json.loads(r["last_result"]) if r["last_result"] else None
    except (TypeError, ValueError):
        result = None
    return {"last_sync_at": r["last_sync_at"], "last_result": result}


def set_sync_state(result: Dict[str, Any]) -> None:
    now = utcnow()
    with engine.begin() as conn:
        conn.execute(text("""
            INSERT INTO inventory_sync_state (id, last_sync_at, last_result, updated_at)
            VALUES (1, :now, :result, :now)
            ON CONFLICT (id) DO UPDATE SET
                last_sync_at = EXCLUDED.last_sync_at,
                last_result = EXCLUDED.last_result,
                updated_at = EXCLUDED.updated_at
        """), {"now": now, "result": json.dumps(result, ensure_ascii=False, default=str)})
