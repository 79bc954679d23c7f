"""
Modèles Wallet (retraits affilié)
"""

from pydantic import BaseModel, ConfigDict, Field


class WithdrawRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: float
    wallet_address: str = Field(alias="walletAddress")
