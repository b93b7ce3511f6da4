# carbot/inventory/sync_service.py

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional

from carbot.ai.embeddings import embed_text, embeddings_enabled, vehicle_embedding_text
from carbot.ai.matcher import CHILD_SEAT_HATCH_OK, fits_child_seat
from carbot.inventory import repo
from carbot.inventory.scraper import ScrapeError, scrape_inventory
from carbot.utils.helpers import norm
from carbot.utils.trace import log_event


# =========================================================
# Aptitudes (Uber / família / trabalho)
# =========================================================

UBER_X_MIN_YEAR = 2012
UBER_BLACK_MIN_YEAR = 2018

UBER_X_MODELS = {
    "honda": ("civic", "city", "fit"),
    "toyota": ("corolla", "etios", "yaris"),
    "chevrolet": ("onix", "prisma", "cruze", "cobalt"),
    "volkswagen": ("gol", "voyage", "polo", "virtus", "jetta", "fox"),
    "fiat": ("argo", "cronos", "siena", "grand siena", "palio", "uno", "mobi"),
    "ford": ("ka", "fiesta"),
    "hyundai": ("hb20", "hb20s", "accent", "elantra"),
    "nissan": ("march", "versa", "sentra"),
    "renault": ("logan", "sandero", "kwid"),
    "peugeot": ("208", "2008"),
    "citroen": ("c3", "c4"),
}

UBER_BLACK_MODELS = {
    "honda": ("civic",),
    "toyota": ("corolla",),
    "chevrolet": ("cruze",),
    "volkswagen": ("jetta", "passat"),
    "nissan": ("sentra",),
}

_BRAND_KEYS = {"vw": "volkswagen", "volks": "volkswagen", "gm": "chevrolet"}


def _in_whitelist(brand: str, model: str, whitelist: Dict[str, tuple]) -> bool:
    b = norm(brand)
    b = _BRAND_KEYS.get(b, b)
    m = norm(model)
    if not m or b not in whitelist:
        return False
    return any(m == allowed or m.startswith(allowed + " ") or allowed.startswith(m + " ") for allowed in whitelist[b])


def classify_aptitudes(v: Dict[str, Any]) -> Dict[str, bool]:
    body = norm(v.get("body_type") or "")
    year = int(v.get("year") or 0)
    km = int(v.get("km") or 0)
    model = norm(v.get("model") or "")
    never_app = body in ("suv", "pickup")

    apt_uber = (not never_app) and year >= UBER_X_MIN_YEAR and _in_whitelist(v.get("brand") or "", model, UBER_X_MODELS)
    apt_uber_black = (
        (not never_app)
        and body == "sedan"
        and year >= UBER_BLACK_MIN_YEAR
        and _in_whitelist(v.get("brand") or "", model, UBER_BLACK_MODELS)
    )

    family_body = body in ("suv", "sedan") or (body == "hatch" and model.split(" ")[0] in CHILD_SEAT_HATCH_OK)
    apt_family = family_body and fits_child_seat(v)

    low_economy = body == "suv" or km > 150000
    apt_work = not low_economy

    return {
        "apt_uber": bool(apt_uber),
        "apt_uber_black": bool(apt_uber_black),
        "apt_family": bool(apt_family),
        "apt_work": bool(apt_work),
    }


# =========================================================
# Sync
# =========================================================

_COMPARE_FIELDS = ("price", "km", "color", "fuel", "transmission", "body_type", "version", "description", "url")


def vehicle_key(v: Dict[str, Any]) -> str:
    url = (v.get("url") or "").strip().lower()
    if url:
        return url
    return "-".join(str(v.get(k) or "") for k in ("brand", "model", "year")).lower().replace(" ", "-")


def _same(a: Any, b: Any) -> bool:
    if isinstance(a, (int, float)) or isinstance(b, (int, float)):
        try:
            return float(a or 0) == float(b or 0)
        except (TypeError, ValueError):
            return False
    return (a or "") == (b or "")


def has_vehicle_changed(scraped: Dict[str, Any], existing: Dict[str, Any]) -> bool:
    if any(not _same(scraped.get(f), existing.get(f)) for f in _COMPARE_FIELDS):
        return True
    first_scraped = (scraped.get("photos") or [None])[0]
    first_existing = (existing.get("photos") or [None])[0]
    return first_scraped != first_existing


def sync_vehicles(scraped: List[Dict[str, Any]], mark_removed_unavailable: bool = True) -> Dict[str, Any]:
    """
    Idempotente: el mismo scrape dos veces no agrega nada.
    Los que faltan en el scrape quedan available = FALSE (nunca se borran).
    """
    result: Dict[str, Any] = {"added": 0, "updated": 0, "unchanged": 0, "removed": 0, "errors": 0, "changed_ids": []}

    prepared: Dict[str, Dict[str, Any]] = {}
    for v in scraped or []:
        key = vehicle_key(v)
        if key.strip("-"):
            prepared[key] = {**v, "vehicle_key": key}

    existing = repo.get_vehicles_by_keys(prepared.keys())

    for key, v in prepared.items():
        try:
            v.update(classify_aptitudes(v))
            old = existing.get(key)
            if old is None:
                result["changed_ids"].append(repo.upsert_vehicle(v))
                result["added"] += 1
            elif has_vehicle_changed(v, old) or not old.get("available"):
                result["changed_ids"].append(repo.upsert_vehicle(v))
                result["updated"] += 1
            else:
                repo.touch_vehicle(key)
                result["unchanged"] += 1
                if not old.get("embedding"):
                    result["changed_ids"].append(old["id"])
        except Exception as e:
            result["errors"] += 1
            log_event("SYNC", "-", "vehicle_error", vehicle_key=key, error=str(e)[:300])

    if mark_removed_unavailable:
        gone = [k for k in repo.list_available_keys() if k not in prepared]
        result["removed"] = repo.mark_unavailable(gone)

    return result


async def refresh_embeddings(vehicle_ids: List[str]) -> int:
    if not embeddings_enabled():
        return 0
    done = 0
    for vid in vehicle_ids:
        v = repo.get_vehicle(vid)
        if not v:
            continue
        try:
            vec = await embed_text(vehicle_embedding_text(v))
        except ValueError:
            continue
        if vec:
            repo.set_vehicle_embedding(vid, vec)
            done += 1
    return done


async def sync_inventory_once(base_url: Optional[str] = None) -> Dict[str, Any]:
    started = time.monotonic()
    try:
        scrape = await scrape_inventory(base_url)
    except ScrapeError as e:
        log_event("SYNC", "-", "scrape_failed", error=str(e)[:300])
        return {"ok": False, "reason": "scrape_failed", "error": str(e)[:300]}

    # listado vacío: no marcar todo el stock como vendido
    result = sync_vehicles(scrape.vehicles, mark_removed_unavailable=scrape.total_found > 0)
    changed_ids = result.pop("changed_ids")
    result["embedded"] = await refresh_embeddings(changed_ids)
    result["scrape"] = scrape.to_dict()
    result["duration_sec"] = round(time.monotonic() - started, 2)

    repo.set_sync_state(result)
    log_event("SYNC", "-", "done", **{k: v for k, v in result.items() if k != "scrape"})
    return {"ok": True, **result}


async def start_periodic_sync(interval_sec: int = 3600) -> None:
    """
    Loop infinito. Llamar en startup con create_task().
    """
    interval_sec = int(max(60, min(interval_sec, 86400)))
    while True:
        try:
            await sync_inventory_once()
        except Exception as e:
            log_event("SYNC", "-", "periodic_error", error=str(e)[:300])
        await asyncio.sleep(interval_sec)
