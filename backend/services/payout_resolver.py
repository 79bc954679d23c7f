"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Lead Backoffice - Résolution du payout                                      ║
║                                                                              ║
║  PRÉCÉDENCE (premier trouvé gagne):                                          ║
║    1. (product_id, user_id, publisher_id)   override publisher               ║
║    2. (product_id, user_id, None)           override affilié                 ║
║    3. products.payout                       payout par défaut                ║
║    4. 0.00                                                                   ║
║                                                                              ║
║  Utilisé à l'ingestion, au passage en sale et pour les postbacks.            ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from decimal import Decimal
from typing import Optional, Tuple

from config import to_money

logger = logging.getLogger("payout_resolver")

SOURCE_PUBLISHER = "publisher_override"
SOURCE_AFFILIATE = "affiliate_override"
SOURCE_PRODUCT = "product_default"
SOURCE_NONE = "none"


class PayoutResolver:

    def __init__(self, store):
        self.store = store

    async def explain(
        self,
        product_id: Optional[int],
        user_id: int,
        publisher_id: Optional[str] = None,
    ) -> Tuple[Decimal, str]:
        """Montant + niveau de la hiérarchie qui l'a fourni"""
        if product_id is None:
            return to_money(0), SOURCE_NONE

        if publisher_id:
            override = await self.store.find_payout_override(product_id, user_id, publisher_id)
            if override:
                return to_money(override.get("payout")), SOURCE_PUBLISHER

        override = await self.store.find_payout_override(product_id, user_id, None)
        if override:
            return to_money(override.get("payout")), SOURCE_AFFILIATE

        product = await self.store.get_product(product_id=product_id)
        if product and product.get("payout") is not None:
            return to_money(product["payout"]), SOURCE_PRODUCT

        return to_money(0), SOURCE_NONE

    async def resolve(
        self,
        product_id: Optional[int],
        user_id: int,
        publisher_id: Optional[str] = None,
    ) -> Decimal:
        amount, source = await self.explain(product_id, user_id, publisher_id)
        logger.debug(f"[PAYOUT] product={product_id} user={user_id} publisher={publisher_id} → {amount} ({source})")
        return amount
