"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Lead Backoffice - Service de Détection de Doublons                          ║
║                                                                              ║
║  RÈGLE DOUBLON DU JOUR:                                                      ║
║  - Même téléphone (formaté OU original, croisés dans les deux sens)          ║
║  - Créé aujourd'hui (jour local serveur, 00:00:00.000 → 23:59:59.999)        ║
║  - Statut hold ou sale uniquement                                            ║
║                                                                              ║
║  Les leads rejected/trash sont exclus: une resoumission corrigée d'un        ║
║  lead rejeté n'est pas bloquée.                                              ║
║                                                                              ║
║  ANTI-CONTOURNEMENT:                                                         ║
║  Un numéro déjà formaté renvoyé comme "original" est comparé aux             ║
║  numéros formatés existants. Hypothèse liée aux règles du normalizer:        ║
║  à revoir si elles changent.                                                 ║
║                                                                              ║
║  FAIL-OPEN: erreur base → pas doublon + log                                  ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, Callable

from config import utc_now, local_day_bounds
from services.diagnostic_log import DiagnosticLog
from services.lead_store import DUPLICATE_SCOPE_STATUSES

logger = logging.getLogger("duplicate_detector")

LOG_DUPLICATE = "duplicate_detection"


class DuplicateResult:
    """Résultat de la détection de doublon"""

    def __init__(
        self,
        is_duplicate: bool,
        lead_number: Optional[str] = None,
        customer_name: Optional[str] = None,
        created_at: Optional[str] = None,
        user_id: Optional[int] = None,
    ):
        self.is_duplicate = is_duplicate
        self.lead_number = lead_number
        self.customer_name = customer_name
        self.created_at = created_at
        self.user_id = user_id

    @property
    def duplicate_lead(self) -> Optional[Dict[str, Any]]:
        if not self.is_duplicate:
            return None
        return {
            "lead_number": self.lead_number,
            "customer_name": self.customer_name,
            "created_at": self.created_at,
            "user_id": self.user_id,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_duplicate": self.is_duplicate,
            "duplicate_lead": self.duplicate_lead,
        }


class DuplicateDetector:

    def __init__(
        self,
        store,
        diagnostics: Optional[DiagnosticLog] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.diagnostics = diagnostics or DiagnosticLog()
        self._clock = clock

    async def check_duplicate_today(
        self,
        formatted_phone: Optional[str],
        original_phone: Optional[str],
        exclude_lead_number: Optional[str] = None,
    ) -> DuplicateResult:
        phones = [p.strip() for p in (formatted_phone, original_phone) if p and p.strip()]
        if not phones:
            return DuplicateResult(is_duplicate=False)

        start_iso, end_iso = local_day_bounds(self._clock())
        label = f"formatted={formatted_phone or '-'} original={original_phone or '-'}"

        try:
            existing = await self.store.find_same_day_lead(
                phones=set(phones),
                start_iso=start_iso,
                end_iso=end_iso,
                statuses=DUPLICATE_SCOPE_STATUSES,
                exclude_lead_number=exclude_lead_number,
            )
        except Exception as e:
            logger.error(f"[DUPLICATE] Check failed, accepting lead ({label}): {e}")
            self.diagnostics.write(LOG_DUPLICATE, f"ERROR {label} - {e}")
            return DuplicateResult(is_duplicate=False)

        if not existing:
            self.diagnostics.write(LOG_DUPLICATE, f"NO_MATCH {label}")
            return DuplicateResult(is_duplicate=False)

        logger.info(f"[DUPLICATE] {label} matches {existing.get('lead_number')}")
        self.diagnostics.write(
            LOG_DUPLICATE,
            f"MATCH {label} - lead={existing.get('lead_number')} created_at={existing.get('created_at')}",
        )
        return DuplicateResult(
            is_duplicate=True,
            lead_number=existing.get("lead_number"),
            customer_name=existing.get("customer_name"),
            created_at=existing.get("created_at"),
            user_id=existing.get("user_id"),
        )
