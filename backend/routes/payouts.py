"""
Routes Payout Overrides
- PUT    /api/payouts/overrides   créer / modifier un override (admin)
- DELETE /api/payouts/overrides   supprimer un override (admin)
- GET    /api/payouts/resolve     payout effectif pour l'affilié appelant
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from config import now_iso
from models.payout import PayoutOverrideKey, PayoutOverrideUpsert
from routes.deps import get_current_affiliate, get_payout_resolver, get_store
from services.lead_ingestion import IngestError
from services.payout_resolver import PayoutResolver

router = APIRouter(prefix="/payouts", tags=["Payouts"])


def _require_admin(user: dict):
    if user.get("role") != "admin":
        raise IngestError("FORBIDDEN", "Admin access required", 403)


@router.put("/overrides")
async def upsert_override(
    data: PayoutOverrideUpsert,
    user: dict = Depends(get_current_affiliate),
    store=Depends(get_store),
):
    _require_admin(user)
    if not await store.get_product(product_id=data.product_id):
        raise IngestError("PRODUCT_NOT_FOUND", f"Product {data.product_id} not found", 404)

    override = data.model_dump()
    override["publisher_id"] = (override.get("publisher_id") or "").strip() or None
    override["updated_at"] = now_iso()
    saved = await store.upsert_payout_override(override)
    return {"success": True, "data": saved}


@router.delete("/overrides")
async def delete_override(
    data: PayoutOverrideKey,
    user: dict = Depends(get_current_affiliate),
    store=Depends(get_store),
):
    _require_admin(user)
    publisher_id = (data.publisher_id or "").strip() or None
    if not await store.delete_payout_override(data.product_id, data.user_id, publisher_id):
        raise IngestError("NOT_FOUND", "Payout override not found", 404)
    return {"success": True}


@router.get("/resolve")
async def resolve_payout(
    product_id: int = Query(..., alias="productId"),
    publisher_id: Optional[str] = Query(None, alias="publisherId"),
    user: dict = Depends(get_current_affiliate),
    resolver: PayoutResolver = Depends(get_payout_resolver),
):
    amount, source = await resolver.explain(product_id, user["id"], publisher_id)
    return {
        "success": True,
        "data": {
            "productId": product_id,
            "publisherId": publisher_id,
            "payout": float(amount),
            "source": source,
        },
    }
