# paygate/api/models/premium.py
from typing import Optional
from pydantic import BaseModel


class PremiumResponse(BaseModel):
    """
    Response model for the paid premium resource.
    """
    message: str
    txHash: Optional[str] = None
    payer: Optional[str] = None
    amount: Optional[str] = None
