"""
Routes Leads
- POST /api/v1/leads                     soumission affilié (X-API-Key)
- GET  /api/v1/leads/{lead_number}       statut d'un lead de l'affilié
- PATCH /api/leads/{lead_number}/status  transition de statut (admin/moderator/finance)
- GET  /api/leads/duplicates/today       statistiques doublons du jour
"""

import logging
from typing import Dict, Any

from fastapi import APIRouter, BackgroundTasks, Body, Depends

from config import utc_now, local_day_bounds
from models.lead import LeadStatusUpdate
from models.product import ProductSummary
from routes.deps import (
    get_current_affiliate,
    require_status_manager,
    get_ingestion_service,
    get_status_service,
    get_postback_dispatcher,
    get_store,
)
from services.lead_ingestion import IngestError, LeadIngestionService, lead_summary
from services.lead_status import LeadStatusService
from services.postback_dispatcher import PostbackDispatcher

logger = logging.getLogger("leads")

router = APIRouter(tags=["Leads"])


@router.post("/v1/leads", status_code=201)
async def submit_lead_v1(
    background_tasks: BackgroundTasks,
    payload: Dict[str, Any] = Body(...),
    user: dict = Depends(get_current_affiliate),
    ingestion: LeadIngestionService = Depends(get_ingestion_service),
    dispatcher: PostbackDispatcher = Depends(get_postback_dispatcher),
):
    """
    Soumission d'un lead par un affilié.
    Le postback "hold" part en tâche de fond après la réponse.
    """
    result = await ingestion.ingest(payload, user)
    lead = result["lead"]
    background_tasks.add_task(dispatcher.dispatch, lead)

    return {
        "success": True,
        "message": "Lead created successfully",
        "data": {
            "lead": lead_summary(lead),
            "product": ProductSummary.model_validate(result["product"]).model_dump(),
        },
        "warnings": result["warnings"],
    }


@router.get("/v1/leads/{lead_number}")
async def get_lead_status_v1(
    lead_number: str,
    user: dict = Depends(get_current_affiliate),
    store=Depends(get_store),
):
    lead = await store.get_lead(lead_number)
    # Lead d'un autre affilié: même réponse qu'un lead inexistant
    if not lead or lead.get("user_id") != user["id"]:
        raise IngestError("LEAD_NOT_FOUND", f"Lead {lead_number} not found", 404)
    return {"success": True, "data": lead_summary(lead)}


@router.patch("/leads/{lead_number}/status")
async def update_lead_status(
    lead_number: str,
    data: LeadStatusUpdate,
    background_tasks: BackgroundTasks,
    user: dict = Depends(require_status_manager),
    status_service: LeadStatusService = Depends(get_status_service),
    dispatcher: PostbackDispatcher = Depends(get_postback_dispatcher),
):
    lead = await status_service.change_status(
        lead_number,
        data.status.value,
        changed_by=user.get("email") or str(user["id"]),
        note=data.note,
    )
    background_tasks.add_task(dispatcher.dispatch, lead)
    return {"success": True, "data": lead_summary(lead)}


@router.get("/leads/duplicates/today")
async def duplicate_stats_today(
    user: dict = Depends(require_status_manager),
    store=Depends(get_store),
):
    start_iso, end_iso = local_day_bounds(utc_now())
    trashed = await store.count_duplicate_trash(start_iso, end_iso)
    phones = await store.distinct_phones(start_iso, end_iso)
    return {
        "success": True,
        "data": {
            "duplicatesTrashedToday": trashed,
            "uniquePhonesToday": len(phones),
            "windowStart": start_iso,
            "windowEnd": end_iso,
        },
    }
