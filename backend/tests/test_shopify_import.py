"""
Lead Backoffice — Shopify Import Tests
Tests: HMAC, order mapping, trash notes, idempotent redelivery, fulfillment orders, cancellations.
Run: cd backend && pytest tests/test_shopify_import.py -v
"""

import base64
import hashlib
import hmac

import pytest

from models.shopify import ShopifyOrder, FulfillmentOrderNotification
from services.lead_ingestion import IngestError
from services.shopify_import import (
    ShopifyImportService,
    verify_webhook_hmac,
    shopify_lead_number,
    order_status,
    order_to_candidate,
)

SHOP = "tienda-demo.myshopify.com"


def make_order(**overrides) -> dict:
    order = {
        "id": 820982911946154500,
        "name": "#1001",
        "order_number": 1001,
        "email": "juan@example.com",
        "total_price": "199.99",
        "currency": "ARS",
        "financial_status": "pending",
        "fulfillment_status": None,
        "customer": {"id": 1, "first_name": "Juan", "last_name": "Perez", "phone": None},
        "shipping_address": {
            "first_name": "Juan", "last_name": "Perez",
            "address1": "Av. Corrientes 1234", "address2": "Piso 4",
            "city": "Buenos Aires", "province": "CABA", "zip": "C1043",
            "country": "Argentina", "phone": "+54 9 11 2345-6789",
        },
        "line_items": [
            {"id": 111, "title": "Curso Marketing", "quantity": 1, "price": "199.99", "sku": "CURSO-MKT-001"},
        ],
        "note": "entregar por la tarde",
        "tags": "vip",
    }
    order.update(overrides)
    return order


@pytest.fixture
def shop(catalog):
    catalog.shopify_stores.append({"shop": SHOP, "user_id": 7, "auto_import": True})
    return catalog


# ═══════════════════════════════════════════════════════════════
# 1. UNIT: helpers
# ═══════════════════════════════════════════════════════════════

class TestHelpers:

    def test_hmac_roundtrip(self):
        body = b'{"id": 1}'
        header = base64.b64encode(hmac.new(b"s3cret", body, hashlib.sha256).digest()).decode()
        assert verify_webhook_hmac(body, header, "s3cret")
        assert not verify_webhook_hmac(body, header, "other")
        assert not verify_webhook_hmac(body, None, "s3cret")

    def test_lead_number(self):
        assert shopify_lead_number(SHOP, 1001) == "SHOPIFY-tienda-demo-1001"

    @pytest.mark.parametrize("financial,fulfillment,expected", [
        ("paid", "fulfilled", "sale"),
        ("refunded", None, "rejected"),
        ("voided", None, "rejected"),
        ("paid", None, "hold"),
        ("pending", None, "hold"),
    ])
    def test_order_status(self, financial, fulfillment, expected):
        order = ShopifyOrder.model_validate(make_order(financial_status=financial, fulfillment_status=fulfillment))
        assert order_status(order) == expected

    def test_candidate_mapping(self):
        order = ShopifyOrder.model_validate(make_order())
        candidate = order_to_candidate(order, SHOP)
        assert candidate.customer_name == "Juan Perez"
        assert candidate.customer_phone == "+54 9 11 2345-6789"
        assert candidate.customer_address == "Av. Corrientes 1234 Piso 4"
        assert candidate.customer_province == "CABA"
        assert candidate.click_id == "820982911946154500"
        assert candidate.subacc1 == "#1001"
        assert candidate.items[0].sku == "CURSO-MKT-001"
        assert candidate.custom_fields["shopifyShop"] == SHOP

    def test_customer_phone_preferred_over_address(self):
        data = make_order()
        data["customer"]["phone"] = "011 4444-5555"
        candidate = order_to_candidate(ShopifyOrder.model_validate(data), SHOP)
        assert candidate.customer_phone == "011 4444-5555"


# ═══════════════════════════════════════════════════════════════
# 2. ORDERS/CREATE
# ═══════════════════════════════════════════════════════════════

class TestOrderImport:

    @pytest.mark.asyncio
    async def test_valid_order_imported_as_hold(self, shop, shopify):
        result = await shopify.import_order(SHOP, ShopifyOrder.model_validate(make_order()))
        lead = result["lead"]
        assert result["created"] is True
        assert lead["lead_number"] == "SHOPIFY-tienda-demo-1001"
        assert lead["status"] == "hold"
        assert lead["source"] == "shopify"
        assert lead["user_id"] == 7
        assert lead["product_id"] == 1
        assert lead["payout"] == 30.0
        assert lead["notes"] == "entregar por la tarde"
        assert lead["customer_phone_formatted"] == "1123456789"
        assert shop.product(1)["stock"] == 998

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, shop, shopify):
        order = ShopifyOrder.model_validate(make_order())
        await shopify.import_order(SHOP, order)
        again = await shopify.import_order(SHOP, order)
        assert again["created"] is False
        assert len(shop.leads) == 1
        assert shop.product(1)["stock"] == 998

    @pytest.mark.asyncio
    async def test_invalid_order_trashed_with_note(self, shop, shopify):
        data = make_order()
        data["line_items"][0]["sku"] = "NOPE-1"
        data["shipping_address"]["zip"] = ""
        result = await shopify.import_order(SHOP, ShopifyOrder.model_validate(data))
        lead = result["lead"]
        assert lead["status"] == "trash"
        assert lead["notes"].startswith("⚠️ ORDER VALIDATION FAILED - AUTOMATIC TRASH")
        assert "INVALID_POSTAL_CODE" in lead["notes"]
        assert "SKU_NOT_FOUND" in lead["notes"]
        assert lead["notes"].endswith("Original Note: entregar por la tarde")

    @pytest.mark.asyncio
    async def test_trashed_order_keeps_stock(self, shop, shopify):
        data = make_order()
        data["line_items"][0]["price"] = "10.00"
        result = await shopify.import_order(SHOP, ShopifyOrder.model_validate(data))
        assert result["lead"]["status"] == "trash"
        assert "PRICE_MISMATCH" in result["lead"]["notes"]
        assert shop.product(1)["stock"] == 999

    @pytest.mark.asyncio
    async def test_duplicate_order_trashed(self, shop, shopify):
        shop.add_lead("LEAD-API-1", "+54 11 2345 6789", "1123456789", user_id=3)
        result = await shopify.import_order(SHOP, ShopifyOrder.model_validate(make_order()))
        lead = result["lead"]
        assert lead["status"] == "trash"
        assert lead["notes"].startswith("⚠️ LEAD DUPLICADO - AUTOMATIC TRASH")
        assert "Lead original: LEAD-API-1" in lead["notes"]
        assert shop.product(1)["stock"] == 999

    @pytest.mark.asyncio
    async def test_index_conflict_without_visible_original(self, shop, shopify):
        """Same-day index refuses the insert while the detector cannot name the earlier lead."""
        shop.add_lead("LEAD-API-1", "+54 11 2345 6789", "1123456789", user_id=3)
        shop.fail_on.add("find_same_day_lead")
        result = await shopify.import_order(SHOP, ShopifyOrder.model_validate(make_order()))
        lead = result["lead"]
        assert result["created"] is True
        assert lead["status"] == "trash"
        assert "Lead original: no identificado" in lead["notes"]
        assert "None" not in lead["notes"].split("---")[0]
        assert shop.product(1)["stock"] == 999

    @pytest.mark.asyncio
    async def test_paid_fulfilled_order_credits_wallet(self, shop, shopify):
        data = make_order(financial_status="paid", fulfillment_status="fulfilled")
        result = await shopify.import_order(SHOP, ShopifyOrder.model_validate(data))
        assert result["lead"]["status"] == "sale"
        assert shop.wallets[0]["user_id"] == 7
        assert shop.wallets[0]["balance"] == 30.0

    @pytest.mark.asyncio
    async def test_unknown_shop(self, catalog, shopify):
        with pytest.raises(IngestError) as exc:
            await shopify.import_order("ghost.myshopify.com", ShopifyOrder.model_validate(make_order()))
        assert exc.value.code == "SHOP_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_auto_import_disabled(self, shop, shopify):
        shop.shopify_stores[0]["auto_import"] = False
        result = await shopify.import_order(SHOP, ShopifyOrder.model_validate(make_order()))
        assert result["imported"] is False
        assert shop.leads == []


# ═══════════════════════════════════════════════════════════════
# 3. FULFILLMENT ORDERS
# ═══════════════════════════════════════════════════════════════

class TestFulfillmentOrders:

    @pytest.mark.asyncio
    async def test_only_assigned_lines_imported(self, shop, shopify):
        order = make_order(total_price="249.89")
        order["line_items"].append(
            {"id": 222, "title": "Producto Limitado", "quantity": 1, "price": "49.90", "sku": "LOW-STOCK-01"}
        )
        notification = FulfillmentOrderNotification.model_validate({
            "fulfillment_order": {
                "id": 5001,
                "order_id": order["id"],
                "status": "open",
                "assigned_location_id": 42,
                "destination": {
                    "first_name": "Maria", "last_name": "Gomez", "address1": "Calle 9 de Julio 55",
                    "city": "Rosario", "province": "Santa Fe", "zip": "S2000", "phone": "0341 123-4567",
                },
                "line_items": [{"id": 1, "line_item_id": 222, "quantity": 2}],
            },
            "order": order,
        })
        result = await shopify.import_fulfillment_order(SHOP, notification)
        lead = result["lead"]
        assert lead["status"] == "hold"
        assert lead["customer_name"] == "Maria Gomez"
        assert lead["customer_phone"] == "0341 123-4567"
        assert lead["custom_fields"]["shopifyFulfillmentOrderId"] == 5001
        items = await shop.get_lead_items(lead["id"])
        assert [(i["sku"], i["quantity"]) for i in items] == [("LOW-STOCK-01", 2)]
        assert shop.product(2)["stock"] == 145
        assert shop.product(1)["stock"] == 999

    @pytest.mark.asyncio
    async def test_closed_fulfillment_is_sale(self, shop, shopify):
        order = make_order()
        notification = FulfillmentOrderNotification.model_validate({
            "fulfillment_order": {"id": 5002, "status": "closed", "line_items": [{"line_item_id": 111, "quantity": 1}]},
            "order": order,
        })
        result = await shopify.import_fulfillment_order(SHOP, notification)
        assert result["lead"]["status"] == "sale"


# ═══════════════════════════════════════════════════════════════
# 4. CANCELLED + UPDATED
# ═══════════════════════════════════════════════════════════════

class TestCancelAndUpdate:

    @pytest.mark.asyncio
    async def test_cancel_moves_hold_to_rejected(self, shop, shopify):
        order = ShopifyOrder.model_validate(make_order())
        await shopify.import_order(SHOP, order)
        result = await shopify.handle_order_cancelled(SHOP, order)
        assert result["updated"] is True
        assert result["lead"]["status"] == "rejected"
        assert result["lead"]["status_changed_by"] == "shopify"

    @pytest.mark.asyncio
    async def test_cancel_leaves_sale_alone(self, shop, shopify):
        order = ShopifyOrder.model_validate(make_order(financial_status="paid", fulfillment_status="fulfilled"))
        await shopify.import_order(SHOP, order)
        result = await shopify.handle_order_cancelled(SHOP, order)
        assert result["updated"] is False
        assert result["lead"]["status"] == "sale"

    @pytest.mark.asyncio
    async def test_cancel_of_unknown_order_imports_rejected(self, shop, shopify):
        result = await shopify.handle_order_cancelled(SHOP, ShopifyOrder.model_validate(make_order()))
        assert result["lead"]["status"] == "rejected"
        assert shop.product(1)["stock"] == 999

    def test_update_is_ignored(self):
        order = ShopifyOrder.model_validate(make_order())
        result = ShopifyImportService.handle_order_updated(SHOP, order)
        assert result["success"] is True
        assert "ignored" in result["message"]
