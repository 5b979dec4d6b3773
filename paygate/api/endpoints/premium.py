# paygate/api/endpoints/premium.py
from fastapi import APIRouter, Request
import logging

from paygate.api.models.premium import PremiumResponse
from paygate.paymentauth.middleware import get_payment_receipt

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=PremiumResponse)
async def get_premium(request: Request) -> PremiumResponse:
    """
    Paid resource guarded by the payment gate.

    The gate admits the request only after the settlement transaction has
    been verified; the receipt it produced is echoed back in the body.
    """
    receipt = get_payment_receipt(request)
    if receipt is None:
        # Payment gate disabled
        logger.info("Premium endpoint accessed without payment")
        return PremiumResponse(message="Premium content")

    logger.info(f"Premium endpoint accessed, paid by {receipt.payer} in {receipt.tx_hash}")
    return PremiumResponse(
        message="Premium content",
        txHash=receipt.tx_hash,
        payer=receipt.payer,
        amount=receipt.amount,
    )
