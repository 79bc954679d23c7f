"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Lead Backoffice - Lead Status State Machine                                 ║
║                                                                              ║
║  SEUL CE MODULE change le statut d'un lead existant.                         ║
║                                                                              ║
║  TRANSITIONS:                                                                ║
║    hold → sale | rejected | trash                                            ║
║    sale, rejected, trash: figés                                              ║
║                                                                              ║
║  GARANTIES:                                                                  ║
║  - Update conditionnel au statut lu (pas de mise à jour perdue)              ║
║  - Passage en sale: payout re-résolu, stocké et crédité au wallet            ║
║    dans la même transaction                                                  ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, Callable

from config import utc_now, to_iso, to_money
from models.lead import LeadStatus, VALID_LEAD_STATUSES
from services.lead_ingestion import IngestError
from services.lead_store import StoreError
from services.payout_resolver import PayoutResolver

logger = logging.getLogger("lead_status")


VALID_LEAD_TRANSITIONS = {
    "hold": ["sale", "rejected", "trash"],
    "sale": [],      # TERMINAL
    "rejected": [],  # TERMINAL
    "trash": [],     # TERMINAL
}


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in VALID_LEAD_TRANSITIONS.get(from_status, [])


class LeadStatusService:

    def __init__(
        self,
        store,
        payout_resolver: Optional[PayoutResolver] = None,
        wallet=None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.payout_resolver = payout_resolver or PayoutResolver(store)
        self.wallet = wallet
        self._clock = clock

    async def change_status(
        self,
        lead_number: str,
        new_status: str,
        changed_by: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Applique une transition de statut.

        Raises:
            IngestError LEAD_NOT_FOUND / VALIDATION_ERROR / INVALID_STATUS_TRANSITION / PERSISTENCE_ERROR
        """
        if new_status not in VALID_LEAD_STATUSES:
            raise IngestError("VALIDATION_ERROR", f"Unknown status '{new_status}'", 400)

        lead = await self.store.get_lead(lead_number)
        if not lead:
            raise IngestError("LEAD_NOT_FOUND", f"Lead {lead_number} not found", 404)

        current = lead["status"]
        if not can_transition(current, new_status):
            raise IngestError(
                "INVALID_STATUS_TRANSITION",
                f"Lead {lead_number} cannot go from '{current}' to '{new_status}'",
                409,
                {"from": current, "to": new_status, "allowed": VALID_LEAD_TRANSITIONS.get(current, [])},
            )

        now_str = to_iso(self._clock())
        fields = {
            "status": new_status,
            "status_changed_at": now_str,
            "status_changed_by": changed_by,
            "updated_at": now_str,
        }
        if note:
            fields["notes"] = note

        payout = None
        if new_status == LeadStatus.SALE.value:
            payout = await self.payout_resolver.resolve(
                lead.get("product_id"), lead["user_id"], lead.get("publisher_id")
            )
            fields["payout"] = float(payout)

        async def work(session):
            changed = await self.store.update_lead_status(lead_number, current, fields, session=session)
            if changed is None:
                raise IngestError(
                    "INVALID_STATUS_TRANSITION",
                    f"Lead {lead_number} changed status concurrently",
                    409,
                )
            if payout is not None and payout > 0 and self.wallet is not None:
                await self.wallet.credit(
                    lead["user_id"],
                    to_money(payout),
                    f"Payout for lead {lead_number}",
                    lead_number=lead_number,
                    session=session,
                )
            return changed

        try:
            updated = await self.store.run_in_transaction(work)
        except StoreError as e:
            logger.error(f"[STATUS] {lead_number} {current} → {new_status} failed: {e}")
            raise IngestError("PERSISTENCE_ERROR", "Could not update lead status, no changes were applied", 500)

        logger.info(f"[STATUS] {lead_number}: {current} → {new_status} (by {changed_by or 'system'})")
        return updated
