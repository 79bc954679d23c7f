"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Lead Store - Persistance MongoDB (motor)                                    ║
║                                                                              ║
║  Seule couche qui parle à la base. Les services reçoivent le store           ║
║  par injection et n'utilisent que ses méthodes sémantiques.                  ║
║                                                                              ║
║  TRANSACTIONS:                                                               ║
║    async def work(session):                                                  ║
║        await store.insert_lead(doc, session=session)                         ║
║    await store.run_in_transaction(work)                                      ║
║    Toute exception dans work → abort (aucune écriture partielle).            ║
║    WriteConflict (TransientTransactionError) → work rejoué, borné.           ║
║    Nécessite un replica set MongoDB.                                         ║
║                                                                              ║
║  ÉTAT PARTAGÉ (stock, solde wallet):                                         ║
║    Jamais de lecture puis écriture. Uniquement des updates conditionnels     ║
║    ({"stock": {"$gte": n}}) dont le résultat est vérifié.                    ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from typing import Optional, List, Dict, Any, Iterable, Callable, Awaitable, TypeVar

from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

logger = logging.getLogger("lead_store")

# Statuts couverts par l'index unique téléphone/jour
DUPLICATE_SCOPE_STATUSES = ["hold", "sale"]

DUPLICATE_NOTE_MARKER = "LEAD DUPLICADO"

MAX_TRANSACTION_ATTEMPTS = 5

T = TypeVar("T")


class StoreError(Exception):
    """Échec de persistance (la transaction en cours est annulée)"""


class LeadConflictError(StoreError):
    """Violation d'unicité: même téléphone le même jour, ou lead_number déjà pris"""


class LeadStore:
    """Accès aux collections du back-office"""

    def __init__(self, client, db):
        self.client = client
        self.db = db

    # ==================== TRANSACTIONS ====================

    async def run_in_transaction(self, work: Callable[[Any], Awaitable[T]]) -> T:
        """
        Exécute work(session) dans une transaction.
        Rejoue work quand le serveur marque l'échec TransientTransactionError
        (WriteConflict entre deux écritures concurrentes sur le même document).
        """
        for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
            try:
                async with await self.client.start_session() as session:
                    async with session.start_transaction():
                        return await work(session)
            except DuplicateKeyError as e:
                raise LeadConflictError(str(e)) from e
            except PyMongoError as e:
                if e.has_error_label("TransientTransactionError") and attempt < MAX_TRANSACTION_ATTEMPTS:
                    logger.info(f"[STORE] Transient transaction error, retry {attempt}/{MAX_TRANSACTION_ATTEMPTS}: {e}")
                    continue
                logger.error(f"[STORE] Transaction aborted: {e}")
                raise StoreError(str(e)) from e

    # ==================== INDEXES ====================

    async def ensure_indexes(self):
        await self.db.leads.create_index("lead_number", unique=True)
        await self.db.leads.create_index("id", unique=True)
        await self.db.leads.create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
        await self.db.leads.create_index("created_day")
        # Ferme la fenêtre de course de la détection de doublons
        await self.db.leads.create_index(
            [("customer_phone_formatted", ASCENDING), ("created_day", ASCENDING)],
            unique=True,
            name="uniq_phone_per_day_active",
            partialFilterExpression={
                "status": {"$in": DUPLICATE_SCOPE_STATUSES},
                "customer_phone_formatted": {"$type": "string"},
            },
        )
        await self.db.lead_items.create_index("lead_id")
        await self.db.products.create_index("id", unique=True)
        await self.db.products.create_index("sku", unique=True)
        await self.db.users.create_index("api_key", unique=True)
        await self.db.payout_overrides.create_index(
            [("product_id", ASCENDING), ("user_id", ASCENDING), ("publisher_id", ASCENDING)],
            unique=True,
        )
        await self.db.postback_configurations.create_index("user_id", unique=True)
        await self.db.postback_notifications.create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
        await self.db.wallets.create_index("user_id", unique=True)
        await self.db.transactions.create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
        await self.db.shopify_stores.create_index("shop", unique=True)
        logger.info("[STORE] Indexes ensured")

    # ==================== USERS ====================

    async def get_user_by_api_key(self, api_key: str) -> Optional[Dict[str, Any]]:
        return await self.db.users.find_one({"api_key": api_key}, {"_id": 0})

    async def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        return await self.db.users.find_one({"id": user_id}, {"_id": 0})

    # ==================== PRODUCTS ====================

    async def get_product(self, product_id: Optional[int] = None, sku: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if product_id is not None:
            return await self.db.products.find_one({"id": product_id}, {"_id": 0})
        if sku:
            return await self.db.products.find_one({"sku": sku}, {"_id": 0})
        return None

    async def decrement_stock(self, product_id: int, quantity: int, session=None) -> bool:
        """Décrément conditionnel: False si le stock ne couvre pas la quantité"""
        result = await self.db.products.update_one(
            {"id": product_id, "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}},
            session=session,
        )
        return result.modified_count == 1

    # ==================== LEADS ====================

    async def get_lead(self, lead_number: str) -> Optional[Dict[str, Any]]:
        return await self.db.leads.find_one({"lead_number": lead_number}, {"_id": 0})

    async def find_same_day_lead(
        self,
        phones: Iterable[str],
        start_iso: str,
        end_iso: str,
        statuses: List[str],
        exclude_lead_number: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Lead le plus ancien du jour dont le téléphone (formaté ou original) est dans `phones`"""
        phones = list(phones)
        query = {
            "created_at": {"$gte": start_iso, "$lte": end_iso},
            "status": {"$in": statuses},
            "$or": [
                {"customer_phone_formatted": {"$in": phones}},
                {"customer_phone": {"$in": phones}},
            ],
        }
        if exclude_lead_number:
            query["lead_number"] = {"$ne": exclude_lead_number}

        return await self.db.leads.find_one(
            query,
            {"_id": 0, "lead_number": 1, "customer_name": 1, "created_at": 1, "user_id": 1},
            sort=[("created_at", ASCENDING)],
        )

    async def insert_lead(self, lead: Dict[str, Any], session=None):
        await self.db.leads.insert_one(dict(lead), session=session)

    async def insert_lead_items(self, items: List[Dict[str, Any]], session=None):
        if items:
            await self.db.lead_items.insert_many([dict(i) for i in items], session=session)

    async def get_lead_items(self, lead_id: str) -> List[Dict[str, Any]]:
        return await self.db.lead_items.find({"lead_id": lead_id}, {"_id": 0}).to_list(100)

    async def update_lead_status(
        self,
        lead_number: str,
        expected_status: str,
        fields: Dict[str, Any],
        session=None,
    ) -> Optional[Dict[str, Any]]:
        """Update conditionnel au statut courant. None si le lead a changé entre-temps."""
        return await self.db.leads.find_one_and_update(
            {"lead_number": lead_number, "status": expected_status},
            {"$set": fields},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
            session=session,
        )

    async def count_duplicate_trash(self, start_iso: str, end_iso: str) -> int:
        return await self.db.leads.count_documents({
            "created_at": {"$gte": start_iso, "$lte": end_iso},
            "status": "trash",
            "notes": {"$regex": DUPLICATE_NOTE_MARKER},
        })

    async def distinct_phones(self, start_iso: str, end_iso: str) -> List[str]:
        phones = await self.db.leads.distinct(
            "customer_phone_formatted",
            {"created_at": {"$gte": start_iso, "$lte": end_iso}},
        )
        return [p for p in phones if p]

    async def find_unformatted_leads(self, limit: int = 0) -> List[Dict[str, Any]]:
        """Leads stockés avec le téléphone brut (normalisation échouée ou antérieure)"""
        cursor = self.db.leads.find(
            {"customer_phone_formatted": None, "customer_phone": {"$nin": [None, ""]}},
            {"_id": 0, "lead_number": 1, "user_id": 1, "publisher_id": 1, "customer_phone": 1},
        ).sort("created_at", ASCENDING)
        if limit:
            cursor = cursor.limit(limit)
        return await cursor.to_list(length=None)

    async def set_formatted_phone(self, lead_number: str, formatted: str, is_mobile: Optional[bool], updated_at: str) -> bool:
        """False si l'index téléphone/jour refuse la valeur (doublon actif le même jour)"""
        try:
            result = await self.db.leads.update_one(
                {"lead_number": lead_number, "customer_phone_formatted": None},
                {"$set": {
                    "customer_phone_formatted": formatted,
                    "customer_phone_is_mobile": is_mobile,
                    "updated_at": updated_at,
                }},
            )
        except DuplicateKeyError:
            return False
        return result.modified_count == 1

    # ==================== PAYOUT OVERRIDES ====================

    async def find_payout_override(
        self, product_id: int, user_id: int, publisher_id: Optional[str]
    ) -> Optional[Dict[str, Any]]:
        return await self.db.payout_overrides.find_one(
            {"product_id": product_id, "user_id": user_id, "publisher_id": publisher_id},
            {"_id": 0},
        )

    async def upsert_payout_override(self, override: Dict[str, Any]) -> Dict[str, Any]:
        key = {
            "product_id": override["product_id"],
            "user_id": override["user_id"],
            "publisher_id": override.get("publisher_id"),
        }
        return await self.db.payout_overrides.find_one_and_update(
            key,
            {"$set": override},
            upsert=True,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

    async def delete_payout_override(self, product_id: int, user_id: int, publisher_id: Optional[str]) -> bool:
        result = await self.db.payout_overrides.delete_one(
            {"product_id": product_id, "user_id": user_id, "publisher_id": publisher_id}
        )
        return result.deleted_count == 1

    # ==================== POSTBACKS ====================

    async def get_postback_config(self, user_id: int) -> Optional[Dict[str, Any]]:
        return await self.db.postback_configurations.find_one({"user_id": user_id}, {"_id": 0})

    async def upsert_postback_config(self, user_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        return await self.db.postback_configurations.find_one_and_update(
            {"user_id": user_id},
            {"$set": {**fields, "user_id": user_id}},
            upsert=True,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

    async def insert_postback_notification(self, notification: Dict[str, Any]):
        await self.db.postback_notifications.insert_one(dict(notification))

    async def list_postback_notifications(self, user_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        return await self.db.postback_notifications.find(
            {"user_id": user_id}, {"_id": 0}
        ).sort("created_at", -1).limit(limit).to_list(limit)

    # ==================== WALLET ====================

    async def get_wallet(self, user_id: int) -> Optional[Dict[str, Any]]:
        return await self.db.wallets.find_one({"user_id": user_id}, {"_id": 0})

    async def credit_wallet(self, user_id: int, amount: float, updated_at: str, session=None) -> Dict[str, Any]:
        return await self.db.wallets.find_one_and_update(
            {"user_id": user_id},
            {"$inc": {"balance": amount}, "$set": {"updated_at": updated_at}},
            upsert=True,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
            session=session,
        )

    async def debit_wallet(self, user_id: int, amount: float, updated_at: str, session=None) -> Optional[Dict[str, Any]]:
        """Débit conditionnel: None si le solde ne couvre pas le montant"""
        return await self.db.wallets.find_one_and_update(
            {"user_id": user_id, "balance": {"$gte": amount}},
            {"$inc": {"balance": -amount}, "$set": {"updated_at": updated_at}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
            session=session,
        )

    async def insert_transaction(self, transaction: Dict[str, Any], session=None):
        await self.db.transactions.insert_one(dict(transaction), session=session)

    # ==================== SHOPIFY ====================

    async def get_shopify_store(self, shop: str) -> Optional[Dict[str, Any]]:
        return await self.db.shopify_stores.find_one({"shop": shop}, {"_id": 0})
