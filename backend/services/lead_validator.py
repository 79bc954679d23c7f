"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Lead Backoffice - Validation métier d'un lead                               ║
║                                                                              ║
║  1. Champs client (tous vérifiés, aucune coupure au premier échec)           ║
║     nom ≥ 2, téléphone ≥ 8, adresse ≥ 5, code postal ≥ 3,                    ║
║     province ≥ 2 (si le canal la fournit), ville ≥ 2                         ║
║  2. Lignes de commande contre le catalogue                                   ║
║     SKU présent, SKU connu, produit actif, stock suffisant,                  ║
║     prix déclaré = prix catalogue (tolérance 0.01)                           ║
║                                                                              ║
║  Ne lève jamais pour un échec de validation: codes structurés                ║
║  "CODE: message" réutilisés tels quels dans la note d'un lead trash.         ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from decimal import Decimal
from typing import List, Optional, Dict, Any

from config import to_money
from models.lead import LeadCandidate
from models.product import ProductStatus

logger = logging.getLogger("lead_validator")

PRICE_TOLERANCE = Decimal("0.01")

MIN_NAME_LENGTH = 2
MIN_PHONE_LENGTH = 8
MIN_ADDRESS_LENGTH = 5
MIN_POSTAL_CODE_LENGTH = 3
MIN_PROVINCE_LENGTH = 2
MIN_CITY_LENGTH = 2


class ValidationIssue:

    def __init__(self, code: str, message: str, field: Optional[str] = None):
        self.code = code
        self.message = message
        self.field = field

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        d = {"code": self.code, "message": self.message}
        if self.field:
            d["field"] = self.field
        return d


class ValidationResult:

    def __init__(self, errors: List[ValidationIssue], warnings: List[str]):
        self.errors = errors
        self.warnings = warnings

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def error_codes(self) -> List[str]:
        return [e.code for e in self.errors]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": self.warnings,
        }


def _too_short(value: Optional[str], minimum: int) -> bool:
    return not value or len(value.strip()) < minimum


def _check_customer(candidate: LeadCandidate) -> List[ValidationIssue]:
    errors = []
    if _too_short(candidate.customer_name, MIN_NAME_LENGTH):
        errors.append(ValidationIssue("INVALID_CUSTOMER_NAME", "Customer name is missing or too short", "customer_name"))
    if _too_short(candidate.customer_phone, MIN_PHONE_LENGTH):
        errors.append(ValidationIssue("INVALID_PHONE", "Phone number is missing or invalid", "customer_phone"))
    if _too_short(candidate.customer_address, MIN_ADDRESS_LENGTH):
        errors.append(ValidationIssue("INVALID_ADDRESS", "Street address is missing or too short", "customer_address"))
    if _too_short(candidate.customer_postal_code, MIN_POSTAL_CODE_LENGTH):
        errors.append(ValidationIssue("INVALID_POSTAL_CODE", "Postal code is missing or invalid", "customer_postal_code"))
    # None = canal sans province (API affilié)
    if candidate.customer_province is not None and _too_short(candidate.customer_province, MIN_PROVINCE_LENGTH):
        errors.append(ValidationIssue("INVALID_PROVINCE", "Province/state is missing", "customer_province"))
    if _too_short(candidate.customer_city, MIN_CITY_LENGTH):
        errors.append(ValidationIssue("INVALID_CITY", "City is missing or invalid", "customer_city"))
    return errors


async def validate_lead(candidate: LeadCandidate, catalog) -> ValidationResult:
    """
    Valide un lead candidat contre le catalogue.

    `catalog` expose `get_product(sku=...)` (LeadStore en production).
    """
    errors = _check_customer(candidate)
    warnings: List[str] = []

    if not candidate.items:
        errors.append(ValidationIssue("NO_LINE_ITEMS", "Order has no products"))
        return ValidationResult(errors, warnings)

    for item in candidate.items:
        title = item.product_name or item.sku or "?"
        sku = (item.sku or "").strip()
        if not sku:
            errors.append(ValidationIssue("MISSING_SKU", f'Product "{title}" has no SKU'))
            continue

        try:
            product = await catalog.get_product(sku=sku)
        except Exception as e:
            logger.error(f"[VALIDATION] Catalog lookup failed for SKU {sku}: {e}")
            errors.append(ValidationIssue("DB_ERROR", f'Could not verify SKU "{sku}" against the catalog'))
            continue

        if not product:
            errors.append(ValidationIssue("SKU_NOT_FOUND", f'SKU "{sku}" not found in catalog for product "{title}"'))
            continue

        if product.get("status") != ProductStatus.ACTIVE.value:
            errors.append(ValidationIssue("PRODUCT_INACTIVE", f'Product "{title}" (SKU: {sku}) is not active'))

        stock = product.get("stock")
        if stock is None:
            warnings.append(f"STOCK_UNTRACKED: SKU {sku} has no stock count")
        elif item.quantity > stock:
            errors.append(ValidationIssue(
                "INSUFFICIENT_STOCK",
                f'Product "{title}" (SKU: {sku}) Available: {stock}, Requested: {item.quantity}',
            ))

        declared = to_money(item.unit_price)
        catalog_price = to_money(product.get("price"))
        if abs(declared - catalog_price) > PRICE_TOLERANCE:
            errors.append(ValidationIssue(
                "PRICE_MISMATCH",
                f'Product "{title}" (SKU: {sku}) has price ${declared} but catalog price is ${catalog_price}',
            ))

    if errors:
        logger.info(f"[VALIDATION] {candidate.channel.value} lead rejected: {[e.code for e in errors]}")

    return ValidationResult(errors, warnings)


def format_validation_errors(result: ValidationResult, original_note: Optional[str] = None) -> str:
    """Note d'audit attachée à un lead mis en trash"""
    lines = "\n".join(f"{i}. {issue}" for i, issue in enumerate(result.errors, start=1))
    return (
        "⚠️ ORDER VALIDATION FAILED - AUTOMATIC TRASH\n\n"
        f"Validation Errors:\n{lines}\n\n"
        f"---\nOriginal Note: {original_note or 'None'}"
    )
