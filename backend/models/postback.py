"""
Modèles Postback (configuration affilié + journal d'envoi)
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class NotificationStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


class PostbackConfigUpdate(BaseModel):
    """
    Une URL par statut, variables entre accolades:
    {leadId} {leadNumber} {status} {payout} {publisherId} {producto}
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    enabled: bool = True
    sale_url: Optional[str] = Field(default=None, alias="saleUrl")
    hold_url: Optional[str] = Field(default=None, alias="holdUrl")
    rejected_url: Optional[str] = Field(default=None, alias="rejectedUrl")
    trash_url: Optional[str] = Field(default=None, alias="trashUrl")


class PostbackTestRequest(BaseModel):
    url: str
