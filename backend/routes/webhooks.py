"""
Routes Webhooks Shopify
- POST /api/webhooks/shopify/orders/create
- POST /api/webhooks/shopify/orders/cancelled
- POST /api/webhooks/shopify/orders/updated       (acquitté, ignoré)
- POST /api/webhooks/shopify/fulfillment-orders

Headers: X-Shopify-Shop-Domain (boutique), X-Shopify-Hmac-Sha256 (signature)
"""

import json
import logging
from typing import Optional, Type

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from pydantic import BaseModel, ValidationError

from config import SHOPIFY_API_SECRET
from models.shopify import ShopifyOrder, FulfillmentOrderNotification
from routes.deps import get_shopify_import, get_postback_dispatcher
from services.lead_ingestion import IngestError, lead_summary, validation_details
from services.postback_dispatcher import PostbackDispatcher
from services.shopify_import import ShopifyImportService, verify_webhook_hmac

logger = logging.getLogger("webhooks")

router = APIRouter(prefix="/webhooks/shopify", tags=["Webhooks"])


def get_shopify_secret() -> str:
    return SHOPIFY_API_SECRET


async def _read_payload(request: Request, hmac_header: Optional[str], secret: str, model: Type[BaseModel]):
    body = await request.body()
    if not secret:
        logger.error(f"[WEBHOOK] SHOPIFY_API_SECRET not configured, refusing {request.url.path}")
        raise IngestError("INVALID_SIGNATURE", "Webhook signature cannot be verified", 401)
    if not verify_webhook_hmac(body, hmac_header, secret):
        logger.warning(f"[WEBHOOK] Invalid HMAC on {request.url.path}")
        raise IngestError("INVALID_SIGNATURE", "Invalid webhook signature", 401)
    try:
        return model.model_validate(json.loads(body))
    except ValueError as e:
        details = validation_details(e) if isinstance(e, ValidationError) else None
        raise IngestError("VALIDATION_ERROR", "Invalid webhook payload", 400, details)


def _require_shop(shop: Optional[str]) -> str:
    if not shop:
        raise IngestError("VALIDATION_ERROR", "Missing X-Shopify-Shop-Domain header", 400)
    return shop.strip().lower()


def _response(result: dict, background_tasks: BackgroundTasks, dispatcher: PostbackDispatcher) -> dict:
    lead = result.pop("lead", None)
    if lead and (result.get("created") or result.get("updated")):
        background_tasks.add_task(dispatcher.dispatch, lead)
    if lead:
        result["lead"] = lead_summary(lead)
    return result


@router.post("/orders/create")
async def shopify_order_created(
    request: Request,
    background_tasks: BackgroundTasks,
    x_shopify_shop_domain: Optional[str] = Header(None),
    x_shopify_hmac_sha256: Optional[str] = Header(None),
    secret: str = Depends(get_shopify_secret),
    importer: ShopifyImportService = Depends(get_shopify_import),
    dispatcher: PostbackDispatcher = Depends(get_postback_dispatcher),
):
    shop = _require_shop(x_shopify_shop_domain)
    order = await _read_payload(request, x_shopify_hmac_sha256, secret, ShopifyOrder)
    result = await importer.import_order(shop, order)
    return _response(result, background_tasks, dispatcher)


@router.post("/orders/cancelled")
async def shopify_order_cancelled(
    request: Request,
    background_tasks: BackgroundTasks,
    x_shopify_shop_domain: Optional[str] = Header(None),
    x_shopify_hmac_sha256: Optional[str] = Header(None),
    secret: str = Depends(get_shopify_secret),
    importer: ShopifyImportService = Depends(get_shopify_import),
    dispatcher: PostbackDispatcher = Depends(get_postback_dispatcher),
):
    shop = _require_shop(x_shopify_shop_domain)
    order = await _read_payload(request, x_shopify_hmac_sha256, secret, ShopifyOrder)
    result = await importer.handle_order_cancelled(shop, order)
    return _response(result, background_tasks, dispatcher)


@router.post("/orders/updated")
async def shopify_order_updated(
    request: Request,
    x_shopify_shop_domain: Optional[str] = Header(None),
    x_shopify_hmac_sha256: Optional[str] = Header(None),
    secret: str = Depends(get_shopify_secret),
):
    shop = _require_shop(x_shopify_shop_domain)
    order = await _read_payload(request, x_shopify_hmac_sha256, secret, ShopifyOrder)
    return ShopifyImportService.handle_order_updated(shop, order)


@router.post("/fulfillment-orders")
async def shopify_fulfillment_order(
    request: Request,
    background_tasks: BackgroundTasks,
    x_shopify_shop_domain: Optional[str] = Header(None),
    x_shopify_hmac_sha256: Optional[str] = Header(None),
    secret: str = Depends(get_shopify_secret),
    importer: ShopifyImportService = Depends(get_shopify_import),
    dispatcher: PostbackDispatcher = Depends(get_postback_dispatcher),
):
    shop = _require_shop(x_shopify_shop_domain)
    notification = await _read_payload(request, x_shopify_hmac_sha256, secret, FulfillmentOrderNotification)
    result = await importer.import_fulfillment_order(shop, notification)
    return _response(result, background_tasks, dispatcher)
