"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Lead Backoffice - Import des commandes Shopify                              ║
║                                                                              ║
║  orders/create          → import (si auto_import activé sur la boutique)     ║
║  fulfillment-orders     → import depuis le fulfillment order assigné         ║
║  orders/cancelled       → lead hold → rejected, sinon import en rejected     ║
║  orders/updated         → IGNORÉ: après import, l'affilié gère le lead       ║
║                                                                              ║
║  Lead number: SHOPIFY-{boutique sans .myshopify.com}-{order_number}          ║
║  Ré-livraison d'un webhook déjà importé → lead existant renvoyé              ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import base64
import hashlib
import hmac
import logging
from typing import Optional, Dict, Any, List

from config import to_money
from models.lead import LeadCandidate, LineItem, LeadStatus, IngestChannel
from models.shopify import ShopifyOrder, ShopifyAddress, FulfillmentOrderNotification
from services.lead_ingestion import IngestError, LeadIngestionService
from services.lead_status import LeadStatusService

logger = logging.getLogger("shopify_import")

SHOPIFY_DOMAIN_SUFFIX = ".myshopify.com"


def verify_webhook_hmac(body: bytes, hmac_header: Optional[str], secret: str) -> bool:
    """HMAC-SHA256 du corps brut, encodé base64 (header X-Shopify-Hmac-Sha256)"""
    if not hmac_header:
        return False
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, hmac_header)


def shopify_lead_number(shop: str, order_number) -> str:
    return f"SHOPIFY-{shop.replace(SHOPIFY_DOMAIN_SUFFIX, '')}-{order_number}"


def order_status(order: ShopifyOrder) -> str:
    if order.financial_status == "paid" and order.fulfillment_status == "fulfilled":
        return LeadStatus.SALE.value
    if order.financial_status in ("refunded", "voided"):
        return LeadStatus.REJECTED.value
    return LeadStatus.HOLD.value


FULFILLMENT_ORDER_STATUS = {
    "closed": LeadStatus.SALE.value,
    "cancelled": LeadStatus.REJECTED.value,
    "in_progress": LeadStatus.HOLD.value,
    "open": LeadStatus.HOLD.value,
}


def _join_name(first: Optional[str], last: Optional[str]) -> str:
    return f"{first or ''} {last or ''}".strip()


def order_to_candidate(
    order: ShopifyOrder,
    shop: str,
    destination: Optional[ShopifyAddress] = None,
    items: Optional[List[LineItem]] = None,
    extra_fields: Optional[Dict[str, Any]] = None,
) -> LeadCandidate:
    """Commande Shopify → représentation commune du pipeline"""
    address = destination or order.shipping_address or order.billing_address or ShopifyAddress()
    customer = order.customer

    name = ""
    if destination is not None:
        name = _join_name(destination.first_name, destination.last_name) or destination.company or ""
    if not name and customer:
        name = _join_name(customer.first_name, customer.last_name)
    if not name:
        name = address.name or _join_name(address.first_name, address.last_name)

    phone_sources = [
        destination.phone if destination is not None else None,
        customer.phone if customer else None,
        order.shipping_address.phone if order.shipping_address else None,
        order.billing_address.phone if order.billing_address else None,
    ]
    phone = next((p for p in phone_sources if p and p.strip()), "")

    email = (destination.email if destination is not None else None) or (customer.email if customer else None) or order.email

    if items is None:
        items = [
            LineItem(
                sku=(li.sku or "").strip(),
                product_name=li.title,
                quantity=li.quantity,
                unit_price=to_money(li.price),
            )
            for li in order.line_items
        ]

    custom_fields = {
        "shopifyOrderId": order.id,
        "shopifyOrderName": order.name,
        "shopifyOrderNumber": order.order_number,
        "shopifyFinancialStatus": order.financial_status,
        "shopifyFulfillmentStatus": order.fulfillment_status,
        "shopifyCurrency": order.currency,
        "shopifyTags": order.tags,
        "shopifyShop": shop,
    }
    custom_fields.update(extra_fields or {})

    return LeadCandidate(
        channel=IngestChannel.SHOPIFY,
        customer_name=name,
        customer_email=email,
        customer_phone=phone,
        customer_address=f"{address.address1 or ''} {address.address2 or ''}".strip(),
        customer_city=address.city or "",
        customer_postal_code=address.zip or "",
        customer_province=address.province or "",
        customer_country=address.country,
        items=items,
        click_id=str(order.id),
        subacc1=order.name or None,
        custom_fields=custom_fields,
        notes=order.note,
    )


class ShopifyImportService:

    def __init__(self, store, ingestion: LeadIngestionService, status_service: LeadStatusService):
        self.store = store
        self.ingestion = ingestion
        self.status_service = status_service

    async def _shop(self, shop: str) -> Dict[str, Any]:
        shop_doc = await self.store.get_shopify_store(shop)
        if not shop_doc:
            logger.error(f"[SHOPIFY] Shop not found: {shop}")
            raise IngestError("SHOP_NOT_FOUND", f"Shop {shop} is not connected", 404)
        return shop_doc

    async def _import(
        self,
        shop: str,
        shop_doc: Dict[str, Any],
        order: ShopifyOrder,
        candidate: LeadCandidate,
        status: str,
    ) -> Dict[str, Any]:
        lead_number = shopify_lead_number(shop, order.order_number)
        result = await self.ingestion.import_lead(
            candidate,
            owner_id=shop_doc["user_id"],
            lead_number=lead_number,
            status=status,
            value=to_money(order.total_price),
        )
        return {"success": True, "imported": True, **result}

    async def import_order(self, shop: str, order: ShopifyOrder) -> Dict[str, Any]:
        shop_doc = await self._shop(shop)
        if not shop_doc.get("auto_import"):
            logger.info(f"[SHOPIFY] Auto-import disabled for shop: {shop}")
            return {"success": True, "imported": False, "message": "Auto-import disabled"}

        logger.info(f"[SHOPIFY] Importing order {order.name} from {shop}")
        return await self._import(shop, shop_doc, order, order_to_candidate(order, shop), order_status(order))

    async def import_fulfillment_order(self, shop: str, notification: FulfillmentOrderNotification) -> Dict[str, Any]:
        shop_doc = await self._shop(shop)
        if not shop_doc.get("auto_import"):
            logger.info(f"[SHOPIFY] Auto-import disabled for shop: {shop}")
            return {"success": True, "imported": False, "message": "Auto-import disabled"}

        fo = notification.fulfillment_order
        order = notification.order
        by_id = {li.id: li for li in order.line_items if li.id is not None}

        # Uniquement les lignes assignées à ce fulfillment order
        items = []
        for fo_item in fo.line_items:
            li = by_id.get(fo_item.line_item_id)
            if li is None:
                continue
            items.append(LineItem(
                sku=(li.sku or "").strip(),
                product_name=li.title,
                quantity=fo_item.quantity,
                unit_price=to_money(li.price),
            ))

        candidate = order_to_candidate(
            order,
            shop,
            destination=fo.destination,
            items=items,
            extra_fields={
                "shopifyFulfillmentOrderId": fo.id,
                "shopifyFulfillmentOrderStatus": fo.status,
                "shopifyRequestStatus": fo.request_status,
                "shopifyAssignedLocationId": fo.assigned_location_id,
            },
        )
        status = FULFILLMENT_ORDER_STATUS.get(fo.status, LeadStatus.HOLD.value)
        logger.info(f"[SHOPIFY] Importing fulfillment order {fo.id} ({order.name}) from {shop}")
        return await self._import(shop, shop_doc, order, candidate, status)

    async def handle_order_cancelled(self, shop: str, order: ShopifyOrder) -> Dict[str, Any]:
        shop_doc = await self._shop(shop)
        lead_number = shopify_lead_number(shop, order.order_number)
        existing = await self.store.get_lead(lead_number)

        if existing:
            if existing["status"] != LeadStatus.HOLD.value:
                logger.info(f"[SHOPIFY] Cancel of {order.name} ignored, lead already {existing['status']}")
                return {"success": True, "updated": False, "lead": existing}
            updated = await self.status_service.change_status(
                lead_number, LeadStatus.REJECTED.value, changed_by="shopify"
            )
            return {"success": True, "updated": True, "lead": updated}

        if not shop_doc.get("auto_import"):
            return {"success": True, "imported": False, "message": "Auto-import disabled"}

        return await self._import(
            shop, shop_doc, order, order_to_candidate(order, shop), LeadStatus.REJECTED.value
        )

    @staticmethod
    def handle_order_updated(shop: str, order: ShopifyOrder) -> Dict[str, Any]:
        logger.info(f"[SHOPIFY] Order updated webhook for {order.name} ({shop}) - IGNORED by design")
        return {
            "success": True,
            "message": f"Order {order.name} update ignored - orders are managed in the back office",
        }
