"""
Modèle Produit (catalogue)

Le catalogue est géré hors pipeline. L'ingestion ne fait que:
- le lire (prix, statut, stock, payout par défaut)
- décrémenter le stock de façon conditionnelle
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ProductStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DRAFT = "draft"


class ProductSummary(BaseModel):
    """Résumé produit renvoyé avec un lead créé"""
    model_config = ConfigDict(extra="ignore")

    id: int
    sku: str
    name: str
    price: float
    stock: Optional[int] = None
