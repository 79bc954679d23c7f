"""
Modèles Payout Override

Clé explicite à trois niveaux: (product_id, user_id, publisher_id | None)
- publisher_id renseigné → override spécifique publisher
- publisher_id None      → override niveau affilié
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PayoutOverrideKey(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: int = Field(alias="productId")
    user_id: int = Field(alias="userId")
    publisher_id: Optional[str] = Field(default=None, alias="publisherId")


class PayoutOverrideUpsert(PayoutOverrideKey):
    payout: float = Field(ge=0)
