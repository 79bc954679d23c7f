"""
Dépendances FastAPI: authentification affilié + câblage des services

Chaque service est construit à partir du store et des autres dépendances,
ce qui permet aux tests de remplacer n'importe quel maillon via
app.dependency_overrides.
"""

from typing import Optional

from fastapi import Depends, Header

from config import client, db
from services.diagnostic_log import DiagnosticLog
from services.duplicate_detector import DuplicateDetector
from services.lead_ingestion import IngestError, LeadIngestionService
from services.lead_status import LeadStatusService
from services.lead_store import LeadStore
from services.payout_resolver import PayoutResolver
from services.phone_normalizer import MobileLookup, PhoneNormalizer
from services.postback_dispatcher import PostbackDispatcher
from services.shopify_import import ShopifyImportService
from services.wallet import WalletService

STATUS_MANAGER_ROLES = {"admin", "moderator", "finance"}

_store = LeadStore(client, db)
_diagnostics = DiagnosticLog()


# ==================== INFRA ====================

def get_store() -> LeadStore:
    return _store


def get_diagnostics() -> DiagnosticLog:
    return _diagnostics


# ==================== SERVICES ====================

def get_phone_normalizer(diagnostics: DiagnosticLog = Depends(get_diagnostics)) -> PhoneNormalizer:
    return PhoneNormalizer(mobile_lookup=MobileLookup(diagnostics=diagnostics), diagnostics=diagnostics)


def get_duplicate_detector(
    store=Depends(get_store),
    diagnostics: DiagnosticLog = Depends(get_diagnostics),
) -> DuplicateDetector:
    return DuplicateDetector(store, diagnostics)


def get_payout_resolver(store=Depends(get_store)) -> PayoutResolver:
    return PayoutResolver(store)


def get_wallet_service(store=Depends(get_store)) -> WalletService:
    return WalletService(store)


def get_ingestion_service(
    store=Depends(get_store),
    normalizer: PhoneNormalizer = Depends(get_phone_normalizer),
    detector: DuplicateDetector = Depends(get_duplicate_detector),
    payout_resolver: PayoutResolver = Depends(get_payout_resolver),
    wallet: WalletService = Depends(get_wallet_service),
) -> LeadIngestionService:
    return LeadIngestionService(store, normalizer, detector, payout_resolver, wallet)


def get_status_service(
    store=Depends(get_store),
    payout_resolver: PayoutResolver = Depends(get_payout_resolver),
    wallet: WalletService = Depends(get_wallet_service),
) -> LeadStatusService:
    return LeadStatusService(store, payout_resolver, wallet)


def get_postback_dispatcher(
    store=Depends(get_store),
    payout_resolver: PayoutResolver = Depends(get_payout_resolver),
) -> PostbackDispatcher:
    return PostbackDispatcher(store, payout_resolver)


def get_shopify_import(
    store=Depends(get_store),
    ingestion: LeadIngestionService = Depends(get_ingestion_service),
    status_service: LeadStatusService = Depends(get_status_service),
) -> ShopifyImportService:
    return ShopifyImportService(store, ingestion, status_service)


# ==================== AUTH ====================

async def get_current_affiliate(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    store=Depends(get_store),
) -> dict:
    """Affilié propriétaire de la clé API (401 générique sinon)"""
    if x_api_key:
        user = await store.get_user_by_api_key(x_api_key.strip())
        if user and user.get("status", "active") == "active":
            return user
    raise IngestError("UNAUTHORIZED", "Invalid or missing API key", 401)


async def require_status_manager(user: dict = Depends(get_current_affiliate)) -> dict:
    if user.get("role") not in STATUS_MANAGER_ROLES:
        raise IngestError("FORBIDDEN", "Insufficient permissions to change lead status", 403)
    return user
