"""
Lead Backoffice — Lead Store Transaction Tests
Tests: replay on TransientTransactionError, bounded attempts, error mapping.
Run: cd backend && pytest tests/test_lead_store.py -v
"""

import pytest
from pymongo.errors import DuplicateKeyError, OperationFailure

from services.lead_store import LeadStore, StoreError, LeadConflictError, MAX_TRANSACTION_ATTEMPTS


class FakeTransaction:

    def __init__(self, session):
        self.session = session

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.session.commits += 1
        else:
            self.session.aborts += 1
        return False


class FakeSession:

    def __init__(self):
        self.commits = 0
        self.aborts = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def start_transaction(self):
        return FakeTransaction(self)


class FakeClient:

    def __init__(self):
        self.session = FakeSession()
        self.sessions_started = 0

    async def start_session(self):
        self.sessions_started += 1
        return self.session


def write_conflict():
    return OperationFailure(
        "WriteConflict error: this operation conflicted with another operation",
        112,
        {"errorLabels": ["TransientTransactionError"], "code": 112},
    )


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def lead_store(client):
    return LeadStore(client, db=None)


# ═══════════════════════════════════════════════════════════════
# 1. REPLAY
# ═══════════════════════════════════════════════════════════════

class TestTransientRetry:

    @pytest.mark.asyncio
    async def test_write_conflict_is_replayed(self, lead_store, client):
        calls = []

        async def work(session):
            calls.append(session)
            if len(calls) == 1:
                raise write_conflict()
            return "committed"

        assert await lead_store.run_in_transaction(work) == "committed"
        assert len(calls) == 2
        assert client.session.aborts == 1
        assert client.session.commits == 1

    @pytest.mark.asyncio
    async def test_attempts_are_bounded(self, lead_store, client):
        async def work(session):
            raise write_conflict()

        with pytest.raises(StoreError):
            await lead_store.run_in_transaction(work)
        assert client.sessions_started == MAX_TRANSACTION_ATTEMPTS
        assert client.session.commits == 0


# ═══════════════════════════════════════════════════════════════
# 2. ERREURS NON TRANSITOIRES
# ═══════════════════════════════════════════════════════════════

class TestErrorMapping:

    @pytest.mark.asyncio
    async def test_other_driver_error_not_replayed(self, lead_store, client):
        async def work(session):
            raise OperationFailure("not authorized", 13)

        with pytest.raises(StoreError):
            await lead_store.run_in_transaction(work)
        assert client.sessions_started == 1

    @pytest.mark.asyncio
    async def test_duplicate_key_is_conflict(self, lead_store, client):
        async def work(session):
            raise DuplicateKeyError("E11000 duplicate key error uniq_phone_per_day_active", 11000)

        with pytest.raises(LeadConflictError):
            await lead_store.run_in_transaction(work)
        assert client.sessions_started == 1

    @pytest.mark.asyncio
    async def test_business_error_aborts_and_propagates(self, lead_store, client):
        async def work(session):
            raise ValueError("stock conflict")

        with pytest.raises(ValueError):
            await lead_store.run_in_transaction(work)
        assert client.session.aborts == 1
        assert client.sessions_started == 1
