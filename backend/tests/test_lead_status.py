"""
Lead Backoffice — Lead Status Transition Tests
Tests: allowed transitions, terminal statuses, payout credit on sale, concurrent updates.
Run: cd backend && pytest tests/test_lead_status.py -v
"""

import pytest

from services.lead_ingestion import IngestError
from services.lead_status import VALID_LEAD_TRANSITIONS, can_transition


# ═══════════════════════════════════════════════════════════════
# 1. UNIT: transition table
# ═══════════════════════════════════════════════════════════════

class TestTransitionTable:

    @pytest.mark.parametrize("target", ["sale", "rejected", "trash"])
    def test_hold_can_move(self, target):
        assert can_transition("hold", target)

    @pytest.mark.parametrize("terminal", ["sale", "rejected", "trash"])
    def test_terminal_statuses(self, terminal):
        assert VALID_LEAD_TRANSITIONS[terminal] == []
        assert not can_transition(terminal, "hold")

    def test_unknown_source_status(self):
        assert not can_transition("archived", "sale")


# ═══════════════════════════════════════════════════════════════
# 2. CHANGE STATUS
# ═══════════════════════════════════════════════════════════════

class TestChangeStatus:

    @pytest.mark.asyncio
    async def test_hold_to_sale_credits_wallet(self, catalog, status_service):
        catalog.add_lead("LEAD-1", "x", "1123456789", product_id=1, user_id=7)
        lead = await status_service.change_status("LEAD-1", "sale", changed_by="admin@example.com")
        assert lead["status"] == "sale"
        assert lead["payout"] == 30.0
        assert lead["status_changed_by"] == "admin@example.com"
        assert catalog.wallets[0]["balance"] == 30.0
        assert catalog.transactions[0]["type"] == "payout"
        assert catalog.transactions[0]["lead_number"] == "LEAD-1"

    @pytest.mark.asyncio
    async def test_sale_uses_current_override(self, catalog, status_service):
        catalog.add_lead("LEAD-1", "x", "1123456789", product_id=1, user_id=7, publisher_id="pub-A")
        catalog.payout_overrides.append({"product_id": 1, "user_id": 7, "publisher_id": "pub-A", "payout": 42})
        lead = await status_service.change_status("LEAD-1", "sale")
        assert lead["payout"] == 42.0

    @pytest.mark.asyncio
    async def test_reject_keeps_wallet_untouched(self, catalog, status_service):
        catalog.add_lead("LEAD-1", "x", "1123456789", product_id=1)
        lead = await status_service.change_status("LEAD-1", "rejected", note="cliente no contesta")
        assert lead["status"] == "rejected"
        assert lead["notes"] == "cliente no contesta"
        assert catalog.wallets == []

    @pytest.mark.asyncio
    async def test_zero_payout_sale_has_no_credit(self, catalog, status_service):
        catalog.add_lead("LEAD-1", "x", "1123456789", product_id=3)
        await status_service.change_status("LEAD-1", "sale")
        assert catalog.transactions == []

    @pytest.mark.asyncio
    async def test_terminal_lead_refused(self, catalog, status_service):
        catalog.add_lead("LEAD-1", "x", "1123456789", status="trash")
        with pytest.raises(IngestError) as exc:
            await status_service.change_status("LEAD-1", "sale")
        assert exc.value.code == "INVALID_STATUS_TRANSITION"
        assert exc.value.status_code == 409
        assert exc.value.details == {"from": "trash", "to": "sale", "allowed": []}

    @pytest.mark.asyncio
    async def test_unknown_lead(self, catalog, status_service):
        with pytest.raises(IngestError) as exc:
            await status_service.change_status("LEAD-404", "sale")
        assert exc.value.code == "LEAD_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_unknown_status(self, catalog, status_service):
        catalog.add_lead("LEAD-1", "x", "1123456789")
        with pytest.raises(IngestError) as exc:
            await status_service.change_status("LEAD-1", "archived")
        assert exc.value.code == "VALIDATION_ERROR"


# ═══════════════════════════════════════════════════════════════
# 3. ATOMICITY
# ═══════════════════════════════════════════════════════════════

class TestStatusAtomicity:

    @pytest.mark.asyncio
    async def test_wallet_failure_rolls_back_status(self, catalog, status_service):
        catalog.add_lead("LEAD-1", "x", "1123456789", product_id=1, user_id=7)
        catalog.fail_on.add("insert_transaction")
        with pytest.raises(IngestError) as exc:
            await status_service.change_status("LEAD-1", "sale")
        assert exc.value.code == "PERSISTENCE_ERROR"
        assert (await catalog.get_lead("LEAD-1"))["status"] == "hold"
        assert catalog.wallets == []

    @pytest.mark.asyncio
    async def test_concurrent_change_detected(self, catalog, status_service, monkeypatch):
        """Another request moved the lead between the read and the conditional update."""
        catalog.add_lead("LEAD-1", "x", "1123456789", product_id=1, user_id=7)
        real_update = catalog.update_lead_status

        async def raced_update(lead_number, expected_status, fields, session=None):
            catalog.leads[0]["status"] = "rejected"
            return await real_update(lead_number, expected_status, fields, session=session)

        monkeypatch.setattr(catalog, "update_lead_status", raced_update)
        with pytest.raises(IngestError) as exc:
            await status_service.change_status("LEAD-1", "sale")
        assert exc.value.code == "INVALID_STATUS_TRANSITION"
        assert catalog.wallets == []
