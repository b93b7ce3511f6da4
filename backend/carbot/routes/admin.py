from __future__ import annotations

import os
from typing import Literal, Optional

from fastapi import APIRouter, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from carbot.ai.engine import get_settings, update_settings
from carbot.inventory import repo as inventory_repo
from carbot.inventory.sync_service import sync_inventory_once
from carbot.leads import repo as leads_repo

router = APIRouter(prefix="/api/admin")

ADMIN_TOKEN = (os.getenv("ADMIN_TOKEN", "") or "").strip()

AIProvider = Literal["google", "groq", "mistral", "openrouter"]
LeadStatus = Literal["pending", "sent", "contacted", "converted", "lost"]


def _admin_guard(request: Request) -> None:
    if not ADMIN_TOKEN:
        raise HTTPException(status_code=403, detail="ADMIN_TOKEN not configured")

    tok = (request.headers.get("X-Admin-Token") or "").strip()
    if tok != ADMIN_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid admin token")


# =========================================================
# Schemas
# =========================================================

class LeadStatusUpdate(BaseModel):
    status: LeadStatus


class AISettingsUpdate(BaseModel):
    is_enabled: Optional[bool] = None
    provider: Optional[AIProvider] = None
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    max_tokens: Optional[int] = Field(default=None, ge=32, le=8192)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)

    fallback_provider: Optional[AIProvider] = None
    fallback_model: Optional[str] = None
    timeout_sec: Optional[int] = Field(default=None, ge=5, le=120)
    max_retries: Optional[int] = Field(default=None, ge=0, le=3)

    reply_chunk_chars: Optional[int] = Field(default=None, ge=200, le=4096)
    reply_delay_ms: Optional[int] = Field(default=None, ge=0, le=15000)


# =========================================================
# Inventory
# =========================================================

@router.post("/inventory/sync")
async def admin_inventory_sync(request: Request):
    _admin_guard(request)
    res = await sync_inventory_once()
    if not res.get("ok"):
        raise HTTPException(status_code=502, detail=res.get("error") or res.get("reason") or "sync failed")
    return res


@router.get("/inventory/stats")
def admin_inventory_stats(request: Request):
    _admin_guard(request)
    return inventory_repo.inventory_stats()


@router.get("/vehicles")
def admin_list_vehicles(
    request: Request,
    available: Optional[bool] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
):
    _admin_guard(request)
    return inventory_repo.list_vehicles(available=available, page=page, limit=limit)


# =========================================================
# Leads (teléfonos enmascarados)
# =========================================================

@router.get("/leads")
def admin_list_leads(
    request: Request,
    status: Optional[LeadStatus] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    search: Optional[str] = Query(default=None),
):
    _admin_guard(request)
    res = leads_repo.list_leads(status=status, page=page, limit=limit, search=search)
    res["leads"] = [leads_repo.public_lead(l) for l in res["leads"]]
    return res


@router.get("/leads/export.csv")
def admin_export_leads(request: Request, status: Optional[LeadStatus] = Query(default=None)):
    _admin_guard(request)
    csv_text = leads_repo.export_leads_csv(status=status)
    return Response(
        content=csv_text,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="leads.csv"'},
    )


@router.get("/leads/{lead_id}")
def admin_get_lead(lead_id: str, request: Request):
    _admin_guard(request)
    lead = leads_repo.get_lead(lead_id)
    if not lead:
        raise HTTPException(status_code=404, detail="Lead not found")
    return leads_repo.public_lead(lead)


@router.patch("/leads/{lead_id}/status")
def admin_update_lead_status(lead_id: str, payload: LeadStatusUpdate, request: Request):
    _admin_guard(request)
    lead = leads_repo.update_lead_status(lead_id, payload.status)
    if not lead:
        raise HTTPException(status_code=404, detail="Lead not found")
    return leads_repo.public_lead(lead)


# =========================================================
# AI settings
# =========================================================

@router.get("/ai/settings")
def admin_get_ai_settings(request: Request):
    _admin_guard(request)
    return get_settings()


@router.put("/ai/settings")
def admin_update_ai_settings(payload: AISettingsUpdate, request: Request):
    _admin_guard(request)
    patch = payload.model_dump(exclude_none=True)
    if "model" in patch and not patch["model"].strip():
        raise HTTPException(status_code=400, detail="model is required")
    return update_settings(patch)
