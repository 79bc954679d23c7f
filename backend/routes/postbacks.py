"""
Routes Postbacks (configuration affilié)
- GET  /api/postbacks/config
- PUT  /api/postbacks/config
- POST /api/postbacks/test           envoi avec valeurs factices
- GET  /api/postbacks/notifications  journal des envois
"""

from fastapi import APIRouter, Depends, Query

from config import now_iso
from models.postback import PostbackConfigUpdate, PostbackTestRequest
from routes.deps import get_current_affiliate, get_postback_dispatcher, get_store
from services.lead_ingestion import IngestError
from services.postback_dispatcher import PostbackDispatcher, is_valid_postback_url

router = APIRouter(prefix="/postbacks", tags=["Postbacks"])

URL_FIELDS = ("sale_url", "hold_url", "rejected_url", "trash_url")


@router.get("/config")
async def get_postback_config(user: dict = Depends(get_current_affiliate), store=Depends(get_store)):
    config = await store.get_postback_config(user["id"])
    if not config:
        config = {"user_id": user["id"], "enabled": False, **{f: None for f in URL_FIELDS}}
    return {"success": True, "data": config}


@router.put("/config")
async def update_postback_config(
    data: PostbackConfigUpdate,
    user: dict = Depends(get_current_affiliate),
    store=Depends(get_store),
):
    fields = data.model_dump()
    for name in URL_FIELDS:
        url = (fields.get(name) or "").strip()
        fields[name] = url or None
        # Le template doit rester une URL http(s) une fois les variables retirées
        if url and not is_valid_postback_url(url.replace("{", "").replace("}", "")):
            raise IngestError("VALIDATION_ERROR", f"Invalid URL format for {name}", 400, [{"field": name}])
    fields["updated_at"] = now_iso()
    config = await store.upsert_postback_config(user["id"], fields)
    return {"success": True, "data": config}


@router.post("/test")
async def test_postback(
    data: PostbackTestRequest,
    user: dict = Depends(get_current_affiliate),
    dispatcher: PostbackDispatcher = Depends(get_postback_dispatcher),
):
    result = await dispatcher.test_dispatch(data.url, user["id"])
    return result


@router.get("/notifications")
async def list_notifications(
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_affiliate),
    store=Depends(get_store),
):
    notifications = await store.list_postback_notifications(user["id"], limit)
    return {"success": True, "data": notifications, "count": len(notifications)}
