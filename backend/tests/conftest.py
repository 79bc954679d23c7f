"""
Lead Backoffice - Fixtures de test

MemoryStore: double en mémoire du LeadStore (mêmes méthodes, même contrat)
- transactions par snapshot / restauration
- index unique téléphone/jour reproduit sur insert_lead
- injection de pannes via store.fail_on = {"insert_lead_items", ...}
"""

import copy
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, List

import httpx
import pytest

from config import to_iso, local_day
from services.diagnostic_log import DiagnosticLog
from services.duplicate_detector import DuplicateDetector
from services.lead_ingestion import LeadIngestionService
from services.lead_status import LeadStatusService
from services.lead_store import StoreError, LeadConflictError, DUPLICATE_SCOPE_STATUSES, DUPLICATE_NOTE_MARKER
from services.payout_resolver import PayoutResolver
from services.phone_normalizer import PhoneNormalizer
from services.postback_dispatcher import PostbackDispatcher
from services.shopify_import import ShopifyImportService
from services.wallet import WalletService

FIXED_NOW = datetime(2026, 3, 10, 15, 30, 0, tzinfo=timezone.utc)


def fixed_clock():
    return FIXED_NOW


# ═══════════════════════════════════════════════════════════════
# DOUBLES
# ═══════════════════════════════════════════════════════════════

class MemoryStore:

    COLLECTIONS = (
        "products", "users", "leads", "lead_items", "payout_overrides",
        "postback_configurations", "postback_notifications", "wallets",
        "transactions", "shopify_stores",
    )

    def __init__(self):
        for name in self.COLLECTIONS:
            setattr(self, name, [])
        self.fail_on = set()
        self.transactions_opened = 0

    def _fail(self, op: str):
        if op in self.fail_on:
            raise StoreError(f"simulated failure in {op}")

    async def run_in_transaction(self, work):
        self.transactions_opened += 1
        snapshot = {name: copy.deepcopy(getattr(self, name)) for name in self.COLLECTIONS}
        try:
            return await work(object())
        except BaseException:
            for name, docs in snapshot.items():
                setattr(self, name, docs)
            raise

    async def ensure_indexes(self):
        return None

    # ---------- seed ----------

    def add_product(self, id: int, sku: str, price: float, stock: int = 100, status: str = "active",
                    payout: Optional[float] = None, name: Optional[str] = None) -> Dict[str, Any]:
        product = {"id": id, "sku": sku, "name": name or f"Product {sku}", "price": price,
                   "stock": stock, "status": status, "payout": payout}
        self.products.append(product)
        return product

    def add_user(self, id: int, api_key: str, role: str = "affiliate", email: Optional[str] = None) -> Dict[str, Any]:
        user = {"id": id, "api_key": api_key, "role": role, "email": email or f"user{id}@example.com", "status": "active"}
        self.users.append(user)
        return user

    def add_lead(self, lead_number: str, phone: str, formatted: Optional[str] = None, status: str = "hold",
                 created: datetime = FIXED_NOW, user_id: int = 1, **extra) -> Dict[str, Any]:
        lead = {
            "id": f"id-{lead_number}", "lead_number": lead_number, "user_id": user_id,
            "customer_name": extra.pop("customer_name", "Existing Customer"),
            "customer_phone": phone, "customer_phone_formatted": formatted,
            "status": status, "created_at": to_iso(created), "created_day": local_day(created),
            "product_id": extra.pop("product_id", None), "publisher_id": extra.pop("publisher_id", None),
            **extra,
        }
        self.leads.append(lead)
        return lead

    def product(self, product_id: int) -> Dict[str, Any]:
        return next(p for p in self.products if p["id"] == product_id)

    # ---------- users ----------

    async def get_user_by_api_key(self, api_key):
        return next((dict(u) for u in self.users if u["api_key"] == api_key), None)

    async def get_user(self, user_id):
        return next((dict(u) for u in self.users if u["id"] == user_id), None)

    # ---------- products ----------

    async def get_product(self, product_id=None, sku=None):
        self._fail("get_product")
        if product_id is not None:
            found = next((p for p in self.products if p["id"] == product_id), None)
        elif sku:
            found = next((p for p in self.products if p["sku"] == sku), None)
        else:
            found = None
        return dict(found) if found else None

    async def decrement_stock(self, product_id, quantity, session=None):
        self._fail("decrement_stock")
        product = next((p for p in self.products if p["id"] == product_id), None)
        if not product or product.get("stock") is None or product["stock"] < quantity:
            return False
        product["stock"] -= quantity
        return True

    # ---------- leads ----------

    async def get_lead(self, lead_number):
        found = next((l for l in self.leads if l["lead_number"] == lead_number), None)
        return dict(found) if found else None

    async def find_same_day_lead(self, phones, start_iso, end_iso, statuses, exclude_lead_number=None):
        self._fail("find_same_day_lead")
        phones = set(phones)
        matches = [
            l for l in self.leads
            if start_iso <= l["created_at"] <= end_iso
            and l["status"] in statuses
            and (l.get("customer_phone_formatted") in phones or l.get("customer_phone") in phones)
            and (not exclude_lead_number or l["lead_number"] != exclude_lead_number)
        ]
        if not matches:
            return None
        first = sorted(matches, key=lambda l: l["created_at"])[0]
        return {k: first.get(k) for k in ("lead_number", "customer_name", "created_at", "user_id")}

    async def insert_lead(self, lead, session=None):
        self._fail("insert_lead")
        for other in self.leads:
            if other["lead_number"] == lead["lead_number"]:
                raise LeadConflictError(f"lead_number {lead['lead_number']} exists")
            phone = lead.get("customer_phone_formatted")
            if (
                isinstance(phone, str)
                and lead["status"] in DUPLICATE_SCOPE_STATUSES
                and other["status"] in DUPLICATE_SCOPE_STATUSES
                and other.get("customer_phone_formatted") == phone
                and other.get("created_day") == lead.get("created_day")
            ):
                raise LeadConflictError(f"phone {phone} already active today")
        self.leads.append(dict(lead))

    async def insert_lead_items(self, items, session=None):
        self._fail("insert_lead_items")
        self.lead_items.extend(dict(i) for i in items)

    async def get_lead_items(self, lead_id):
        return [dict(i) for i in self.lead_items if i["lead_id"] == lead_id]

    async def update_lead_status(self, lead_number, expected_status, fields, session=None):
        self._fail("update_lead_status")
        for lead in self.leads:
            if lead["lead_number"] == lead_number and lead["status"] == expected_status:
                lead.update(fields)
                return dict(lead)
        return None

    async def count_duplicate_trash(self, start_iso, end_iso):
        return len([
            l for l in self.leads
            if start_iso <= l["created_at"] <= end_iso
            and l["status"] == "trash"
            and DUPLICATE_NOTE_MARKER in (l.get("notes") or "")
        ])

    async def distinct_phones(self, start_iso, end_iso):
        return sorted({
            l["customer_phone_formatted"] for l in self.leads
            if start_iso <= l["created_at"] <= end_iso and l.get("customer_phone_formatted")
        })

    async def find_unformatted_leads(self, limit=0):
        found = sorted(
            (dict(l) for l in self.leads if l.get("customer_phone_formatted") is None and l.get("customer_phone")),
            key=lambda l: l["created_at"],
        )
        return found[:limit] if limit else found

    async def set_formatted_phone(self, lead_number, formatted, is_mobile, updated_at):
        lead = next((l for l in self.leads if l["lead_number"] == lead_number), None)
        if lead is None or lead.get("customer_phone_formatted") is not None:
            return False
        if lead["status"] in DUPLICATE_SCOPE_STATUSES and any(
            other is not lead
            and other["status"] in DUPLICATE_SCOPE_STATUSES
            and other.get("customer_phone_formatted") == formatted
            and other.get("created_day") == lead.get("created_day")
            for other in self.leads
        ):
            return False
        lead.update(customer_phone_formatted=formatted, customer_phone_is_mobile=is_mobile, updated_at=updated_at)
        return True

    # ---------- payout overrides ----------

    async def find_payout_override(self, product_id, user_id, publisher_id):
        return next((
            dict(o) for o in self.payout_overrides
            if o["product_id"] == product_id and o["user_id"] == user_id and o.get("publisher_id") == publisher_id
        ), None)

    async def upsert_payout_override(self, override):
        for o in self.payout_overrides:
            if (o["product_id"], o["user_id"], o.get("publisher_id")) == (
                override["product_id"], override["user_id"], override.get("publisher_id")
            ):
                o.update(override)
                return dict(o)
        self.payout_overrides.append(dict(override))
        return dict(override)

    async def delete_payout_override(self, product_id, user_id, publisher_id):
        before = len(self.payout_overrides)
        self.payout_overrides = [
            o for o in self.payout_overrides
            if (o["product_id"], o["user_id"], o.get("publisher_id")) != (product_id, user_id, publisher_id)
        ]
        return len(self.payout_overrides) < before

    # ---------- postbacks ----------

    async def get_postback_config(self, user_id):
        return next((dict(c) for c in self.postback_configurations if c["user_id"] == user_id), None)

    async def upsert_postback_config(self, user_id, fields):
        for c in self.postback_configurations:
            if c["user_id"] == user_id:
                c.update(fields)
                return dict(c)
        config = {**fields, "user_id": user_id}
        self.postback_configurations.append(config)
        return dict(config)

    async def insert_postback_notification(self, notification):
        self._fail("insert_postback_notification")
        self.postback_notifications.append(dict(notification))

    async def list_postback_notifications(self, user_id, limit=50):
        mine = [dict(n) for n in self.postback_notifications if n["user_id"] == user_id]
        return sorted(mine, key=lambda n: n["created_at"], reverse=True)[:limit]

    # ---------- wallet ----------

    async def get_wallet(self, user_id):
        return next((dict(w) for w in self.wallets if w["user_id"] == user_id), None)

    async def credit_wallet(self, user_id, amount, updated_at, session=None):
        self._fail("credit_wallet")
        for w in self.wallets:
            if w["user_id"] == user_id:
                w["balance"] = w.get("balance", 0) + amount
                w["updated_at"] = updated_at
                return dict(w)
        wallet = {"user_id": user_id, "balance": amount, "updated_at": updated_at}
        self.wallets.append(wallet)
        return dict(wallet)

    async def debit_wallet(self, user_id, amount, updated_at, session=None):
        for w in self.wallets:
            if w["user_id"] == user_id and w.get("balance", 0) >= amount:
                w["balance"] -= amount
                w["updated_at"] = updated_at
                return dict(w)
        return None

    async def insert_transaction(self, transaction, session=None):
        self._fail("insert_transaction")
        self.transactions.append(dict(transaction))

    # ---------- shopify ----------

    async def get_shopify_store(self, shop):
        return next((dict(s) for s in self.shopify_stores if s["shop"] == shop), None)


class MemoryDiagnosticLog(DiagnosticLog):
    """Sink en mémoire (aucun accès disque)"""

    def __init__(self):
        self.entries: List[tuple] = []

    def write(self, log_type: str, message: str) -> None:
        self.entries.append((log_type, message))

    def of_type(self, log_type: str) -> List[str]:
        return [m for t, m in self.entries if t == log_type]

    def close(self) -> None:
        return None


class FakeMobileLookup:

    def __init__(self, mobile: bool = False):
        self.mobile = mobile
        self.calls: List[str] = []

    async def is_mobile(self, phone: str, country_code: str = "AR") -> bool:
        self.calls.append(phone)
        return self.mobile


class RecordingTransport(httpx.MockTransport):
    """MockTransport qui garde les requêtes envoyées"""

    def __init__(self, handler=None):
        self.requests: List[httpx.Request] = []
        handler = handler or (lambda request: httpx.Response(200, text="OK"))

        def record(request):
            self.requests.append(request)
            return handler(request)

        super().__init__(record)


# ═══════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════

@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def diagnostics():
    return MemoryDiagnosticLog()


@pytest.fixture
def mobile_lookup():
    return FakeMobileLookup(mobile=False)


@pytest.fixture
def normalizer(mobile_lookup, diagnostics):
    return PhoneNormalizer(mobile_lookup=mobile_lookup, diagnostics=diagnostics)


@pytest.fixture
def detector(store, diagnostics):
    return DuplicateDetector(store, diagnostics, clock=fixed_clock)


@pytest.fixture
def resolver(store):
    return PayoutResolver(store)


@pytest.fixture
def wallet(store):
    return WalletService(store, clock=fixed_clock)


@pytest.fixture
def ingestion(store, normalizer, detector, resolver, wallet):
    return LeadIngestionService(store, normalizer, detector, resolver, wallet, clock=fixed_clock)


@pytest.fixture
def status_service(store, resolver, wallet):
    return LeadStatusService(store, resolver, wallet, clock=fixed_clock)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def dispatcher(store, resolver, transport):
    return PostbackDispatcher(store, resolver, transport=transport, clock=fixed_clock)


@pytest.fixture
def shopify(store, ingestion, status_service):
    return ShopifyImportService(store, ingestion, status_service)


@pytest.fixture
def catalog(store):
    """Catalogue de référence des scénarios"""
    store.add_product(1, "CURSO-MKT-001", 199.99, stock=999, payout=30.0, name="Curso Marketing Digital")
    store.add_product(2, "LOW-STOCK-01", 49.90, stock=147, payout=10.0, name="Producto Limitado")
    store.add_product(3, "OLD-SKU-01", 15.00, stock=50, status="inactive", name="Producto Viejo")
    return store


def yesterday() -> datetime:
    return FIXED_NOW - timedelta(days=1)
