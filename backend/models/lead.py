"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Lead Backoffice - Modèle Lead                                               ║
║                                                                              ║
║  RÈGLES FONDAMENTALES:                                                       ║
║  1. Statuts: hold (initial), sale, rejected, trash                           ║
║  2. Transitions: hold → sale | rejected | trash, le reste est figé           ║
║  3. Valeur = prix catalogue × quantité (jamais le prix envoyé)               ║
║  4. Un seul lead hold/sale par téléphone formaté et par jour                 ║
║                                                                              ║
║  Deux canaux d'entrée, un format intermédiaire commun:                       ║
║    LeadSubmission (API affilié) ─┐                                           ║
║                                  ├→ LeadCandidate → pipeline d'ingestion     ║
║    ShopifyOrder (import)   ──────┘                                           ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import ipaddress
import re
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, validator, model_validator


class LeadStatus(str, Enum):
    HOLD = "hold"           # En attente (statut initial)
    SALE = "sale"           # Converti
    REJECTED = "rejected"   # Refusé
    TRASH = "trash"         # Poubelle (doublon, validation échouée)


VALID_LEAD_STATUSES = [s.value for s in LeadStatus]


class IngestChannel(str, Enum):
    API = "api"
    SHOPIFY = "shopify"


EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MAX_QUANTITY = 100


class LeadSubmission(BaseModel):
    """
    Lead soumis via l'API affilié (header X-API-Key)

    Exemple:
    {
        "customerName": "Juan Perez",
        "customerPhone": "+54 9 11 2345-6789",
        "customerAddress": "Av. Corrientes 1234",
        "customerCity": "Buenos Aires",
        "customerPostalCode": "C1043",
        "productSku": "CURSO-MKT-001",
        "quantity": 1
    }
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # Client (OBLIGATOIRE)
    customer_name: str = Field(alias="customerName")
    customer_email: Optional[str] = Field(default=None, alias="customerEmail")
    customer_phone: str = Field(alias="customerPhone")
    customer_address: str = Field(alias="customerAddress")
    customer_city: str = Field(alias="customerCity")
    customer_postal_code: str = Field(alias="customerPostalCode")
    customer_province: Optional[str] = Field(default=None, alias="customerProvince")

    # Produit: id OU sku, jamais les deux
    product_id: Optional[int] = Field(default=None, alias="productId")
    product_sku: Optional[str] = Field(default=None, alias="productSku")
    product_price: Optional[float] = Field(default=None, alias="productPrice")  # informatif
    quantity: int = Field(default=1, ge=1)  # plafond MAX_QUANTITY vérifié après le stock

    # Attribution
    publisher_id: Optional[str] = Field(default=None, alias="publisherId")
    subacc1: Optional[str] = None
    subacc2: Optional[str] = None
    subacc3: Optional[str] = None
    subacc4: Optional[str] = None
    click_id: Optional[str] = Field(default=None, alias="clickId")
    ip_address: Optional[str] = Field(default=None, alias="ipAddress")
    user_agent: Optional[str] = Field(default=None, alias="userAgent")
    custom_fields: Optional[Dict[str, Any]] = Field(default=None, alias="customFields")

    @validator("customer_name", "customer_phone", "customer_address", "customer_city", "customer_postal_code")
    def strip_required(cls, v):
        return v.strip()

    @validator("customer_email")
    def validate_email(cls, v):
        if v is None or v.strip() == "":
            return None
        v = v.strip()
        if not EMAIL_RE.match(v):
            raise ValueError("Invalid email format")
        return v

    @validator("ip_address")
    def validate_ip(cls, v):
        if v is None or v.strip() == "":
            return None
        try:
            ipaddress.ip_address(v.strip())
        except ValueError:
            raise ValueError("Invalid IP address (IPv4 or IPv6 expected)")
        return v.strip()

    @validator("product_sku")
    def blank_sku_is_none(cls, v):
        if v is None or v.strip() == "":
            return None
        return v.strip()

    @model_validator(mode="after")
    def product_reference(self):
        if (self.product_id is None) == (self.product_sku is None):
            raise ValueError("Exactly one of productId or productSku must be provided")
        return self


class LineItem(BaseModel):
    """Ligne de commande déclarée (prix = snapshot au moment de la soumission)"""
    sku: str = ""
    product_id: Optional[int] = None
    product_name: str = ""
    quantity: int = 1
    unit_price: Decimal = Decimal("0.00")


class LeadCandidate(BaseModel):
    """Représentation commune API / import avant validation métier"""
    channel: IngestChannel
    customer_name: str = ""
    customer_email: Optional[str] = None
    customer_phone: str = ""
    customer_address: str = ""
    customer_city: str = ""
    customer_postal_code: str = ""
    customer_province: Optional[str] = None
    customer_country: Optional[str] = None

    items: List[LineItem] = []

    publisher_id: Optional[str] = None
    subacc1: Optional[str] = None
    subacc2: Optional[str] = None
    subacc3: Optional[str] = None
    subacc4: Optional[str] = None
    click_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    custom_fields: Dict[str, Any] = {}
    notes: Optional[str] = None


class LeadStatusUpdate(BaseModel):
    status: LeadStatus
    note: Optional[str] = None
