"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Lead Backoffice - Pipeline d'ingestion                                      ║
║                                                                              ║
║  CANAL API (affilié, X-API-Key) - premier échec = rejet                      ║
║    1. Schéma du payload               → VALIDATION_ERROR 400                 ║
║    2. Produit par id OU sku           → PRODUCT_NOT_FOUND 404                ║
║    3. Produit actif                   → PRODUCT_INACTIVE 422                 ║
║    4. Stock ≥ quantité                → INSUFFICIENT_STOCK 422               ║
║    5. Valeur = prix catalogue × qté   (prix envoyé ignoré)                   ║
║    6. Téléphone normalisé             → accepté brut OU INVALID_PHONE 400    ║
║    7. Doublon du jour                 → DUPLICATE_LEAD 409                   ║
║    8. Validation métier               → VALIDATION_ERROR 400                 ║
║    9. Transaction: lead + lignes + décrément conditionnel du stock           ║
║                                                                              ║
║  CANAL IMPORT (Shopify) - jamais de rejet métier                             ║
║    doublon ou validation KO → lead stocké en trash avec note d'audit         ║
║                                                                              ║
║  ATOMICITÉ: lead, lignes et stock écrits ensemble ou pas du tout.            ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import json
import uuid
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List, Tuple, Callable

from pydantic import ValidationError

from config import (
    API_PHONE_FAILURE_POLICY,
    DEFAULT_COUNTRY,
    PHONE_COUNTRY_CODE,
    utc_now,
    to_iso,
    to_money,
    local_day,
)
from models.lead import LeadSubmission, LeadCandidate, LineItem, LeadStatus, IngestChannel, MAX_QUANTITY
from models.product import ProductStatus
from services.duplicate_detector import DuplicateDetector, DuplicateResult
from services.lead_store import StoreError, LeadConflictError
from services.lead_validator import validate_lead, format_validation_errors
from services.payout_resolver import PayoutResolver
from services.phone_normalizer import PhoneNormalizer, PhoneNormalizationResult

logger = logging.getLogger("lead_ingestion")

# Politiques par canal
PHONE_ACCEPT = "accept"
PHONE_REJECT = "reject"

MAX_CUSTOM_FIELD_LENGTH = 10000
FORBIDDEN_KEY_PARTS = ("__proto__", "constructor")


class IngestError(Exception):
    """Échec d'ingestion: code stable + message lisible + statut HTTP"""

    def __init__(self, code: str, message: str, status_code: int = 400, details: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": False, "error": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class _StockConflict(Exception):
    def __init__(self, product_id: int, quantity: int):
        super().__init__(f"stock conflict on product {product_id}")
        self.product_id = product_id
        self.quantity = quantity


# ==================== HELPERS ====================

def sanitize_custom_fields(fields: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Clés dangereuses retirées, textes tronqués, objets sérialisés en JSON"""
    if not fields:
        return {}
    clean = {}
    for key, value in fields.items():
        key = str(key)
        if key.startswith("$") or any(part in key for part in FORBIDDEN_KEY_PARTS):
            continue
        if isinstance(value, str):
            clean[key] = value[:MAX_CUSTOM_FIELD_LENGTH]
        elif isinstance(value, (dict, list)):
            clean[key] = json.dumps(value, ensure_ascii=False, default=str)[:MAX_CUSTOM_FIELD_LENGTH]
        elif value is None or isinstance(value, (bool, int, float)):
            clean[key] = value
        else:
            clean[key] = str(value)[:MAX_CUSTOM_FIELD_LENGTH]
    return clean


def format_duplicate_note(duplicate: DuplicateResult, original_note: Optional[str] = None) -> str:
    if duplicate.lead_number:
        origin = f"Lead original: {duplicate.lead_number}\nFecha original: {duplicate.created_at}\n\n"
    else:
        # Gagnant de la course plus visible (déjà sorti de hold/sale)
        origin = "Lead original: no identificado (registro concurrente)\n\n"
    return (
        "⚠️ LEAD DUPLICADO - AUTOMATIC TRASH\n\n"
        "Mismo número de teléfono ya ingresado hoy.\n"
        f"{origin}"
        f"---\nOriginal Note: {original_note or 'None'}"
    )


def validation_details(error: ValidationError) -> List[Dict[str, str]]:
    details = []
    for err in error.errors():
        field = ".".join(str(p) for p in err.get("loc", ()) if p != "body") or "body"
        details.append({"field": field, "message": err.get("msg", "Invalid value")})
    return details


def lead_summary(lead: Dict[str, Any]) -> Dict[str, Any]:
    """Vue publique d'un lead (réponses API)"""
    return {
        "id": lead.get("id"),
        "leadNumber": lead.get("lead_number"),
        "status": lead.get("status"),
        "value": lead.get("value"),
        "payout": lead.get("payout"),
        "customerName": lead.get("customer_name"),
        "customerPhone": lead.get("customer_phone"),
        "customerPhoneFormatted": lead.get("customer_phone_formatted"),
        "productId": lead.get("product_id"),
        "publisherId": lead.get("publisher_id"),
        "createdAt": lead.get("created_at"),
        "updatedAt": lead.get("updated_at"),
    }


# ==================== SERVICE ====================

class LeadIngestionService:

    def __init__(
        self,
        store,
        normalizer: PhoneNormalizer,
        detector: DuplicateDetector,
        payout_resolver: Optional[PayoutResolver] = None,
        wallet=None,
        clock: Callable[[], datetime] = utc_now,
        api_phone_policy: str = API_PHONE_FAILURE_POLICY,
    ):
        self.store = store
        self.normalizer = normalizer
        self.detector = detector
        self.payout_resolver = payout_resolver or PayoutResolver(store)
        self.wallet = wallet
        self._clock = clock
        if api_phone_policy not in (PHONE_ACCEPT, PHONE_REJECT):
            raise ValueError(f"Unknown phone failure policy: {api_phone_policy}")
        self.api_phone_policy = api_phone_policy

    # ---------- étapes communes ----------

    async def _normalize_phone(self, phone: str, owner_id: int, publisher_id: Optional[str]) -> PhoneNormalizationResult:
        if not phone or not phone.strip():
            return PhoneNormalizationResult(
                is_valid=False,
                original_phone="",
                formatted_phone=None,
                cleaned_phone="",
                error_reason="Phone number is missing",
            )
        return await self.normalizer.normalize(
            phone,
            PHONE_COUNTRY_CODE,
            affiliate_id=str(owner_id),
            publisher_id=publisher_id or "NODEF",
        )

    def _build_lead(
        self,
        candidate: LeadCandidate,
        owner_id: int,
        lead_number: str,
        product: Optional[Dict[str, Any]],
        phone: PhoneNormalizationResult,
        value: Decimal,
        payout: Decimal,
        status: str,
        notes: Optional[str],
        now: datetime,
    ) -> Dict[str, Any]:
        return {
            "id": str(uuid.uuid4()),
            "lead_number": lead_number,
            "user_id": owner_id,
            "source": candidate.channel.value,
            "product_id": product["id"] if product else None,
            "product_name": product.get("name") if product else None,
            "customer_name": candidate.customer_name,
            "customer_email": candidate.customer_email,
            "customer_phone": phone.original_phone,
            "customer_phone_formatted": phone.formatted_phone,
            "customer_phone_is_mobile": phone.is_mobile,
            "customer_address": candidate.customer_address,
            "customer_city": candidate.customer_city,
            "customer_postal_code": candidate.customer_postal_code,
            "customer_province": candidate.customer_province,
            "customer_country": candidate.customer_country or DEFAULT_COUNTRY,
            "value": float(to_money(value)),
            "payout": float(to_money(payout)),
            "status": status,
            "publisher_id": candidate.publisher_id,
            "subacc1": candidate.subacc1,
            "subacc2": candidate.subacc2,
            "subacc3": candidate.subacc3,
            "subacc4": candidate.subacc4,
            "click_id": candidate.click_id,
            "ip_address": candidate.ip_address,
            "user_agent": candidate.user_agent,
            "custom_fields": sanitize_custom_fields(candidate.custom_fields),
            "notes": notes,
            "created_at": to_iso(now),
            "created_day": local_day(now),
            "updated_at": to_iso(now),
        }

    @staticmethod
    def _build_items(lead: Dict[str, Any], items: List[LineItem]) -> List[Dict[str, Any]]:
        return [
            {
                "id": str(uuid.uuid4()),
                "lead_id": lead["id"],
                "lead_number": lead["lead_number"],
                "product_id": item.product_id,
                "sku": item.sku,
                "product_name": item.product_name,
                "quantity": item.quantity,
                "unit_price": float(to_money(item.unit_price)),
                "subtotal": float(to_money(to_money(item.unit_price) * item.quantity)),
                "created_at": lead["created_at"],
            }
            for item in items
        ]

    async def _persist(
        self,
        lead: Dict[str, Any],
        items: List[Dict[str, Any]],
        decrements: List[Tuple[int, int]],
    ):
        """Lead + lignes + stock (+ crédit wallet si sale) dans une seule transaction"""
        async def work(session):
            await self.store.insert_lead(lead, session=session)
            await self.store.insert_lead_items(items, session=session)
            for product_id, quantity in decrements:
                if not await self.store.decrement_stock(product_id, quantity, session=session):
                    raise _StockConflict(product_id, quantity)
            if lead["status"] == LeadStatus.SALE.value and lead["payout"] > 0 and self.wallet is not None:
                await self.wallet.credit(
                    lead["user_id"],
                    to_money(lead["payout"]),
                    f"Payout for lead {lead['lead_number']}",
                    lead_number=lead["lead_number"],
                    session=session,
                )

        await self.store.run_in_transaction(work)

    async def _insufficient_stock(self, product_id: int, requested: int) -> IngestError:
        product = await self.store.get_product(product_id=product_id)
        available = (product or {}).get("stock") or 0
        return IngestError(
            "INSUFFICIENT_STOCK",
            f"Insufficient stock. Available: {available}, Requested: {requested}",
            422,
            {"available": available, "requested": requested},
        )

    # ---------- canal API ----------

    def _parse(self, payload) -> LeadSubmission:
        if isinstance(payload, LeadSubmission):
            return payload
        try:
            return LeadSubmission.model_validate(payload)
        except ValidationError as e:
            raise IngestError("VALIDATION_ERROR", "Invalid lead payload", 400, validation_details(e))

    async def ingest(self, payload, owner: Dict[str, Any]) -> Dict[str, Any]:
        """
        Ingestion d'un lead soumis par l'API affilié.

        Returns:
            {"lead": lead_doc, "product": product_doc, "warnings": [...]}
        Raises:
            IngestError
        """
        submission = self._parse(payload)
        owner_id = owner["id"]
        quantity = submission.quantity

        # 2-4. Produit
        product = await self.store.get_product(product_id=submission.product_id, sku=submission.product_sku)
        if not product:
            ref = submission.product_sku or submission.product_id
            logger.info(f"[INGEST] user={owner_id} product {ref} not found")
            raise IngestError("PRODUCT_NOT_FOUND", f"Product {ref} not found", 404)

        if product.get("status") != ProductStatus.ACTIVE.value:
            logger.info(f"[INGEST] user={owner_id} product {product['sku']} inactive")
            raise IngestError("PRODUCT_INACTIVE", f"Product {product['sku']} is not active", 422)

        available = product.get("stock") or 0
        if quantity > available:
            logger.info(f"[INGEST] user={owner_id} stock {available} < {quantity} for {product['sku']}")
            raise IngestError(
                "INSUFFICIENT_STOCK",
                f"Insufficient stock. Available: {available}, Requested: {quantity}",
                422,
                {"available": available, "requested": quantity},
            )

        if quantity > MAX_QUANTITY:
            raise IngestError(
                "VALIDATION_ERROR",
                "Invalid lead payload",
                400,
                [{"field": "quantity", "message": f"Quantity must be between 1 and {MAX_QUANTITY}"}],
            )

        # 5. Valeur (prix catalogue uniquement)
        unit_price = to_money(product.get("price"))
        value = to_money(unit_price * quantity)
        warnings = []
        if submission.product_price is not None and to_money(submission.product_price) != unit_price:
            warnings.append(
                f"PRICE_IGNORED: declared price {to_money(submission.product_price)} "
                f"differs from catalog price {unit_price}, catalog price applied"
            )

        # 6. Téléphone
        phone = await self._normalize_phone(submission.customer_phone, owner_id, submission.publisher_id)
        if not phone.is_valid:
            if self.api_phone_policy == PHONE_REJECT:
                logger.info(f"[INGEST] user={owner_id} phone rejected: {phone.error_reason}")
                raise IngestError(
                    "INVALID_PHONE",
                    f"Invalid phone number: {phone.error_reason}",
                    400,
                    {"phone": phone.original_phone},
                )
            warnings.append(f"PHONE_NOT_NORMALIZED: {phone.error_reason}, stored as submitted")

        # 7. Doublon
        duplicate = await self.detector.check_duplicate_today(phone.formatted_phone, phone.original_phone)
        if duplicate.is_duplicate:
            logger.info(f"[INGEST] user={owner_id} duplicate of {duplicate.lead_number}")
            raise IngestError(
                "DUPLICATE_LEAD",
                f"Duplicate lead: same phone number already submitted today (lead {duplicate.lead_number})",
                409,
                {"leadNumber": duplicate.lead_number, "createdAt": duplicate.created_at},
            )

        # 8. Validation métier
        candidate = LeadCandidate(
            channel=IngestChannel.API,
            customer_name=submission.customer_name,
            customer_email=submission.customer_email,
            customer_phone=submission.customer_phone,
            customer_address=submission.customer_address,
            customer_city=submission.customer_city,
            customer_postal_code=submission.customer_postal_code,
            customer_province=submission.customer_province,
            items=[LineItem(
                sku=product.get("sku") or "",
                product_id=product["id"],
                product_name=product.get("name") or "",
                quantity=quantity,
                unit_price=unit_price,
            )],
            publisher_id=submission.publisher_id,
            subacc1=submission.subacc1,
            subacc2=submission.subacc2,
            subacc3=submission.subacc3,
            subacc4=submission.subacc4,
            click_id=submission.click_id,
            ip_address=submission.ip_address,
            user_agent=submission.user_agent,
            custom_fields=submission.custom_fields or {},
        )
        validation = await validate_lead(candidate, self.store)
        if not validation.is_valid:
            raise IngestError(
                "VALIDATION_ERROR",
                "Lead validation failed",
                400,
                [e.to_dict() for e in validation.errors],
            )
        warnings.extend(validation.warnings)

        # 9. Persistance
        payout = await self.payout_resolver.resolve(product["id"], owner_id, submission.publisher_id)
        now = self._clock()
        lead_number = f"LEAD-{int(now.timestamp() * 1000)}-{owner_id}"
        lead = self._build_lead(
            candidate, owner_id, lead_number, product, phone, value, payout,
            LeadStatus.HOLD.value, None, now,
        )
        items = self._build_items(lead, candidate.items)

        try:
            await self._persist(lead, items, [(product["id"], quantity)])
        except _StockConflict as e:
            logger.info(f"[INGEST] user={owner_id} lost stock race on product {e.product_id}")
            raise await self._insufficient_stock(e.product_id, e.quantity)
        except LeadConflictError:
            logger.info(f"[INGEST] user={owner_id} same-day phone conflict at insert")
            raise IngestError(
                "DUPLICATE_LEAD",
                "Duplicate lead: same phone number already submitted today",
                409,
            )
        except StoreError as e:
            logger.error(f"[INGEST] user={owner_id} persistence failed for {lead_number}: {e}")
            raise IngestError("PERSISTENCE_ERROR", "Could not save lead, no changes were applied", 500)

        logger.info(f"[INGEST] Lead {lead_number} created user={owner_id} value={value} payout={payout}")
        return {"lead": lead, "product": product, "warnings": warnings}

    # ---------- canal import ----------

    async def import_lead(
        self,
        candidate: LeadCandidate,
        owner_id: int,
        lead_number: str,
        status: str,
        value: Decimal,
    ) -> Dict[str, Any]:
        """
        Import d'une commande plateforme.

        Doublon ou validation KO → trash avec note. Idempotent sur lead_number.

        Returns:
            {"lead": lead_doc, "created": bool}
        """
        existing = await self.store.get_lead(lead_number)
        if existing:
            logger.info(f"[IMPORT] {lead_number} already imported")
            return {"lead": existing, "created": False}

        phone = await self._normalize_phone(candidate.customer_phone, owner_id, candidate.publisher_id)
        duplicate = await self.detector.check_duplicate_today(phone.formatted_phone, phone.original_phone)
        validation = await validate_lead(candidate, self.store)

        notes = candidate.notes
        if duplicate.is_duplicate:
            status = LeadStatus.TRASH.value
            notes = format_duplicate_note(duplicate, candidate.notes)
            logger.info(f"[IMPORT] {lead_number} trashed, duplicate of {duplicate.lead_number}")
        elif not validation.is_valid:
            status = LeadStatus.TRASH.value
            notes = format_validation_errors(validation, candidate.notes)
            logger.info(f"[IMPORT] {lead_number} trashed, validation errors {validation.error_codes}")

        # Premier produit reconnu: rattachement + payout
        product = None
        for item in candidate.items:
            if item.sku:
                product = await self.store.get_product(sku=item.sku)
                if product:
                    break

        payout = to_money(0)
        if product:
            payout = await self.payout_resolver.resolve(product["id"], owner_id, candidate.publisher_id)

        now = self._clock()
        lead = self._build_lead(candidate, owner_id, lead_number, product, phone, value, payout, status, notes, now)

        resolved_items = []
        decrements = []
        for item in candidate.items:
            matched = await self.store.get_product(sku=item.sku) if item.sku else None
            if matched:
                item = item.model_copy(update={"product_id": matched["id"]})
                if status in (LeadStatus.HOLD.value, LeadStatus.SALE.value) and matched.get("stock") is not None:
                    decrements.append((matched["id"], item.quantity))
            resolved_items.append(item)
        items = self._build_items(lead, resolved_items)

        try:
            await self._persist(lead, items, decrements)
        except _StockConflict as e:
            raise await self._insufficient_stock(e.product_id, e.quantity)
        except LeadConflictError:
            existing = await self.store.get_lead(lead_number)
            if existing:
                return {"lead": existing, "created": False}
            # Course perdue sur l'index téléphone/jour: le gagnant est maintenant visible
            duplicate = await self.detector.check_duplicate_today(phone.formatted_phone, phone.original_phone)
            lead["status"] = LeadStatus.TRASH.value
            lead["notes"] = format_duplicate_note(duplicate, candidate.notes)
            try:
                await self._persist(lead, items, [])
            except StoreError as e:
                logger.error(f"[IMPORT] {lead_number} persistence failed: {e}")
                raise IngestError("PERSISTENCE_ERROR", "Could not save imported lead", 500)
        except StoreError as e:
            logger.error(f"[IMPORT] {lead_number} persistence failed: {e}")
            raise IngestError("PERSISTENCE_ERROR", "Could not save imported lead", 500)

        logger.info(f"[IMPORT] Lead {lead_number} created user={owner_id} status={lead['status']}")
        return {"lead": lead, "created": True}
