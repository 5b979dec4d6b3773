# paygate/paymentauth/middleware.py
"""
FastAPI middleware for the Payment authentication scheme.

This module provides HTTP middleware that:
1. Intercepts requests to protected endpoints
2. Checks if payment is required (PAYMENT_ENABLED)
3. Runs the payment gate against the Authorization header
4. Returns 402/401/400 with the gate's error body when denied
5. Attaches the Payment-Receipt header to admitted responses

The gate's verification is blocking RPC work and runs in the threadpool.
Handlers read the receipt from request.state.payment_receipt.
"""
import logging
from typing import Callable, List, Optional, Tuple

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from paygate.core.config import settings
from paygate.paymentauth import audit
from paygate.paymentauth.codec import PaymentReceipt
from paygate.paymentauth.errors import PaymentErrorKind
from paygate.paymentauth.gate import (
    AUTHORIZATION_HEADER,
    GateConfig,
    GateDecision,
    PaymentGate,
)
from paygate.paymentauth.verifier import RpcSettlementVerifier

logger = logging.getLogger(__name__)


def parse_protected_paths(value: Optional[str]) -> List[Tuple[str, str]]:
    """
    Parse "METHOD /path, METHOD /other" into (method, path) pairs.

    Entries without a method apply to GET.
    """
    endpoints = []
    for item in (value or "").split(","):
        parts = item.split()
        if not parts:
            continue
        if len(parts) == 1:
            endpoints.append(("GET", parts[0]))
        else:
            endpoints.append((parts[0].upper(), parts[1]))
    return endpoints


def is_protected_endpoint(method: str, path: str, endpoints: List[Tuple[str, str]]) -> bool:
    """Check if the request matches a protected endpoint prefix."""
    for protected_method, protected_path in endpoints:
        if method == protected_method and path.rstrip("/").startswith(protected_path.rstrip("/")):
            return True
    return False


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    if request.client:
        return request.client.host

    return "unknown"


def get_payment_receipt(request: Request) -> Optional[PaymentReceipt]:
    """Receipt of the settlement that admitted this request, if any."""
    return getattr(request.state, "payment_receipt", None)


def create_gate_from_settings() -> PaymentGate:
    """Build a gate backed by the configured RPC node."""
    config = GateConfig.from_settings()
    verifier = RpcSettlementVerifier(
        rpc_url=config.rpc_url,
        confirmations=settings.PAYMENT_CONFIRMATIONS
    )
    return PaymentGate(config, verifier)


class PaymentGateMiddleware(BaseHTTPMiddleware):
    """
    Payment gate middleware for FastAPI.

    When PAYMENT_ENABLED=true, this middleware:
    - Checks if the endpoint requires payment
    - Issues a challenge when no Payment credential is present
    - Verifies presented credentials and rejects replays
    - Passes the receipt to the handler and echoes it in Payment-Receipt

    When PAYMENT_ENABLED=false, all requests pass through unchanged.
    """

    def __init__(
        self,
        app,
        gate: Optional[PaymentGate] = None,
        protected_endpoints: Optional[List[Tuple[str, str]]] = None
    ):
        super().__init__(app)
        self._gate = gate
        self._protected_endpoints = protected_endpoints

    @property
    def gate(self) -> PaymentGate:
        """Lazy initialization of the gate."""
        if self._gate is None:
            self._gate = create_gate_from_settings()
        return self._gate

    @property
    def protected_endpoints(self) -> List[Tuple[str, str]]:
        if self._protected_endpoints is None:
            self._protected_endpoints = parse_protected_paths(settings.PAYMENT_PROTECTED_PATHS)
        return self._protected_endpoints

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        if not settings.PAYMENT_ENABLED:
            return await call_next(request)

        if not is_protected_endpoint(request.method, request.url.path, self.protected_endpoints):
            return await call_next(request)

        client_ip = get_client_ip(request)
        path = request.url.path

        decision = await run_in_threadpool(
            self.gate.evaluate,
            request.headers.get(AUTHORIZATION_HEADER)
        )
        self._audit(decision, client_ip, path)

        if not decision.admitted:
            return JSONResponse(
                status_code=decision.status,
                content=decision.body,
                headers=decision.headers
            )

        request.state.payment_receipt = decision.receipt
        response = await call_next(request)
        for header, value in decision.headers.items():
            response.headers[header] = value
        return response

    def _audit(self, decision: GateDecision, client_ip: str, path: str) -> None:
        if decision.admitted:
            receipt = decision.receipt
            audit.log_payment_verified(client_ip, path, receipt.tx_hash, receipt.payer, receipt.amount)
            return

        error = decision.error
        if error is None:
            audit.log_payment_failed(
                client_ip, path, "infrastructure", decision.body.get("message", ""), decision.status
            )
            return

        if error.kind == PaymentErrorKind.PAYMENT_REQUIRED:
            challenge_id = decision.challenge.id if decision.challenge else None
            logger.info(f"Payment required for {path} from {client_ip}")
            audit.log_challenge_issued(client_ip, path, challenge_id, self.gate.config.amount)
        elif decision.replayed:
            credential_id = decision.credential.id if decision.credential else None
            audit.log_replay_rejected(client_ip, path, credential_id)
        else:
            audit.log_payment_failed(client_ip, path, error.kind.value, error.message, decision.status)
