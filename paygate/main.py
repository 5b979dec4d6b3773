# paygate/main.py
from fastapi import FastAPI
from paygate.core.config import settings
from paygate.api.endpoints import premium
from paygate.paymentauth.middleware import PaymentGateMiddleware
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json" # Standard location for OpenAPI spec
)

# The gate is built lazily on the first protected request, so a missing
# recipient or amount surfaces as 503 rather than a startup failure
if settings.PAYMENT_ENABLED:
    app.add_middleware(PaymentGateMiddleware)
    logger.info(f"Payment gate enabled for: {settings.PAYMENT_PROTECTED_PATHS}")

# The prefix ensures all routes start with /api/v1
app.include_router(premium.router, prefix=f"{settings.API_V1_STR}/premium", tags=["premium"])

@app.get("/", summary="Health Check", tags=["default"])
def read_root():
    """ Basic health check endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}"}
