"""
Routes Wallet affilié
- GET  /api/wallet/balance
- POST /api/wallet/withdraw
"""

from fastapi import APIRouter, Depends

from models.wallet import WithdrawRequest
from routes.deps import get_current_affiliate, get_wallet_service
from services.wallet import WalletService

router = APIRouter(prefix="/wallet", tags=["Wallet"])


@router.get("/balance")
async def get_balance(
    user: dict = Depends(get_current_affiliate),
    wallet: WalletService = Depends(get_wallet_service),
):
    balance = await wallet.get_balance(user["id"])
    return {"success": True, "data": {"balance": float(balance)}}


@router.post("/withdraw")
async def withdraw(
    data: WithdrawRequest,
    user: dict = Depends(get_current_affiliate),
    wallet: WalletService = Depends(get_wallet_service),
):
    result = await wallet.withdraw(user["id"], data.amount, data.wallet_address)
    return {"success": True, "message": "Withdrawal request submitted", "data": result}
