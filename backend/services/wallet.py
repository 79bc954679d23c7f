"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Lead Backoffice - Wallet affilié                                            ║
║                                                                              ║
║  RÈGLE: jamais de solde lu hors de la transaction qui le débite.             ║
║  Le débit est un update conditionnel {"balance": {"$gte": montant}}          ║
║  suivi de l'insertion de la transaction, dans la même session.               ║
║                                                                              ║
║  Crédit: payout d'un lead passé en sale (appelé par lead_status,             ║
║  dans la transaction du changement de statut).                               ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import uuid
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, Callable

from config import utc_now, to_iso, to_money
from services.lead_store import StoreError

logger = logging.getLogger("wallet")


class WalletError(Exception):
    """Erreur métier wallet (code + statut HTTP)"""

    def __init__(self, code: str, message: str, status_code: int = 400, details: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details


def withdrawal_reference(now: datetime) -> str:
    return "WIT" + str(int(now.timestamp() * 1000))[-6:]


class WalletService:

    def __init__(self, store, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self._clock = clock

    async def get_balance(self, user_id: int) -> Decimal:
        wallet = await self.store.get_wallet(user_id)
        return to_money(wallet.get("balance") if wallet else 0)

    async def credit(
        self,
        user_id: int,
        amount: Decimal,
        description: str,
        lead_number: Optional[str] = None,
        session=None,
    ) -> Dict[str, Any]:
        """Crédit + transaction "payout". À appeler dans une transaction ouverte."""
        now_str = to_iso(self._clock())
        wallet = await self.store.credit_wallet(user_id, float(amount), now_str, session=session)
        await self.store.insert_transaction({
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "type": "payout",
            "amount": float(amount),
            "status": "completed",
            "description": description,
            "lead_number": lead_number,
            "created_at": now_str,
        }, session=session)
        return wallet

    async def withdraw(self, user_id: int, amount, wallet_address: str) -> Dict[str, Any]:
        amount = to_money(amount)
        if amount <= 0:
            raise WalletError("INVALID_AMOUNT", "Withdrawal amount must be greater than 0")
        if not wallet_address or not wallet_address.strip():
            raise WalletError("VALIDATION_ERROR", "Wallet address is required", details=[{"field": "walletAddress"}])

        now = self._clock()
        transaction = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "type": "withdrawal",
            "amount": float(-amount),
            "status": "pending",
            "description": f"Withdrawal to {wallet_address.strip()}",
            "wallet_address": wallet_address.strip(),
            "reference": withdrawal_reference(now),
            "created_at": to_iso(now),
        }

        async def work(session):
            debited = await self.store.debit_wallet(user_id, float(amount), to_iso(now), session=session)
            if debited is None:
                raise WalletError("INSUFFICIENT_BALANCE", "Insufficient balance")
            await self.store.insert_transaction(transaction, session=session)
            return debited

        try:
            wallet = await self.store.run_in_transaction(work)
        except WalletError as e:
            if e.code != "INSUFFICIENT_BALANCE":
                raise
            available = await self.get_balance(user_id)
            message = f"Insufficient balance. Available: {available}, Requested: {amount}"
            logger.info(f"[WALLET] Withdrawal refused for user {user_id}: {message}")
            raise WalletError(
                "INSUFFICIENT_BALANCE",
                message,
                details={"available": float(available), "requested": float(amount)},
            ) from None
        except StoreError as e:
            logger.error(f"[WALLET] Withdrawal failed for user {user_id}: {e}")
            raise WalletError("PERSISTENCE_ERROR", "Could not process withdrawal, no changes were applied", 500)

        logger.info(f"[WALLET] Withdrawal {transaction['reference']} user={user_id} amount={amount}")
        return {"transaction": transaction, "balance": float(to_money(wallet.get("balance")))}
