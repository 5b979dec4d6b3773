# paygate/agent/agent.py
"""
HTTP client that settles 402 Payment challenges on its own.

Request flow:
1. Send the original request
2. Anything other than 402 is returned unchanged
3. Decode the WWW-Authenticate challenge
4. Pay the challenge's charge through the wallet and wait for confirmation
5. Retry once with an Authorization: Payment credential
6. A second 402 is a terminal failure, never another payment
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import httpx

from paygate.agent.wallet import PrivateKeyWallet, WalletClient
from paygate.core.config import ALPHA_USD_ADDRESS, TESTNET_RPC
from paygate.paymentauth.codec import (
    PaymentChallenge,
    PaymentCredential,
    decode_challenge,
    encode_credential,
)
from paygate.paymentauth.errors import PaymentError, PaymentErrorKind
from paygate.paymentauth.validation import (
    is_valid_address,
    is_valid_amount,
    is_valid_private_key,
    is_valid_url,
    redact_config,
)
from paygate.paymentauth.verifier import HASH_PAYLOAD_TYPE

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_TX_TIMEOUT_SECONDS = 60.0


class PaymentFailureError(Exception):
    """
    Settlement of a payment challenge failed.

    The underlying exception is kept as `original_error` and chained as
    `__cause__`.
    """

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.original_error = original_error


class Agent:
    """
    Payment-aware HTTP client for autonomous agents.

    Either a private key (a PrivateKeyWallet is built for it) or an
    externally supplied WalletClient is required. Construction validates
    its inputs and performs no network access.
    """

    def __init__(
        self,
        private_key: Optional[str] = None,
        wallet: Optional[WalletClient] = None,
        rpc_url: Optional[str] = None,
        fee_token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        tx_timeout: float = DEFAULT_TX_TIMEOUT_SECONDS,
        method: str = "tempo",
        http_client: Optional[httpx.Client] = None
    ):
        if not private_key and wallet is None:
            raise ValueError("Either privateKey or walletClient is required")

        if private_key and not is_valid_private_key(private_key):
            raise ValueError("Invalid privateKey format: must be 0x followed by 64 hex characters")

        if rpc_url is not None and not is_valid_url(rpc_url):
            raise ValueError("Invalid rpcUrl format: must be a valid URL")

        if fee_token is not None and not is_valid_address(fee_token):
            raise ValueError("Invalid feeToken address: must be 0x followed by 40 hex characters")

        self.rpc_url = rpc_url or TESTNET_RPC
        self.fee_token = fee_token or ALPHA_USD_ADDRESS
        self.tx_timeout = tx_timeout
        self.method = method
        self.wallet = wallet or PrivateKeyWallet(private_key, rpc_url=self.rpc_url)

        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=timeout)

        safe_config = redact_config({
            "private_key": private_key,
            "rpc_url": self.rpc_url,
            "fee_token": self.fee_token,
            "mode": "External Wallet" if wallet is not None else "Private Key",
        })
        logger.debug(f"Agent initialized: {safe_config}")

    def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Perform an HTTP request, settling a 402 challenge if one comes back.

        Raises:
            PaymentFailureError: If the challenge cannot be settled or the
                server still demands payment after settlement
        """
        response = self._client.request(method, url, **kwargs)
        if response.status_code != 402:
            return response

        authorization = self._settle(response)

        headers = httpx.Headers(kwargs.get("headers"))
        headers["Authorization"] = authorization
        try:
            retried = self._client.request(method, url, **{**kwargs, "headers": headers})
        except httpx.HTTPError as e:
            raise PaymentFailureError(f"Retry after settlement failed: {e}", e) from e

        if retried.status_code == 402:
            logger.error(f"Server still requires payment after settlement: {method} {url}")
            raise PaymentFailureError(
                "Payment was not accepted: server answered 402 after settlement"
            )
        return retried

    def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "Agent":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _settle(self, response: httpx.Response) -> str:
        """Pay the challenge carried by a 402 response and return the Authorization value."""
        try:
            header = response.headers.get("WWW-Authenticate")
            if not header:
                raise PaymentError(
                    PaymentErrorKind.MALFORMED_PROOF,
                    "Received 402 response without a WWW-Authenticate challenge"
                )
            challenge = decode_challenge(header)
            recipient, amount, token = self._charge_terms(challenge)

            tx_hash = self.wallet.send_payment(recipient, amount, token)
            self.wallet.wait_for_receipt(tx_hash, timeout=self.tx_timeout)
        except Exception as e:
            logger.error(f"Settlement failed: {e}")
            raise PaymentFailureError(f"Failed to execute payment transaction: {e}", e) from e

        credential = PaymentCredential(
            id=challenge.id,
            payload={"type": HASH_PAYLOAD_TYPE, "hash": tx_hash},
            source=self.wallet.address,
        )
        return encode_credential(credential)

    def _charge_terms(self, challenge: PaymentChallenge) -> Tuple[str, int, str]:
        """
        Extract (recipient, amount, token) from a charge challenge.

        Raises:
            PaymentError: If the challenge cannot be paid by this agent
        """
        if challenge.method != self.method:
            raise PaymentError(
                PaymentErrorKind.PAYMENT_METHOD_UNSUPPORTED,
                f"Unsupported payment method: {challenge.method}"
            )
        if challenge.intent != "charge":
            raise PaymentError(
                PaymentErrorKind.PAYMENT_METHOD_UNSUPPORTED,
                f"Unsupported payment intent: {challenge.intent}"
            )
        if challenge.expires and _is_expired(challenge.expires):
            raise PaymentError(PaymentErrorKind.PAYMENT_EXPIRED, "Challenge has expired")

        request: Dict[str, Any] = challenge.request if isinstance(challenge.request, dict) else {}
        recipient = request.get("destination") or request.get("recipient")
        token = request.get("asset") or request.get("token") or self.fee_token
        amount = request.get("amount")

        if not is_valid_address(recipient) or not is_valid_address(token):
            raise PaymentError(
                PaymentErrorKind.MALFORMED_PROOF,
                "Challenge request has no valid recipient or token address"
            )
        if not is_valid_amount(amount):
            raise PaymentError(
                PaymentErrorKind.MALFORMED_PROOF,
                "Challenge request amount must be an integer string in base units"
            )
        return recipient, int(amount), token


def _is_expired(expires: str) -> bool:
    try:
        expires_at = datetime.fromisoformat(expires.replace("Z", "+00:00"))
    except ValueError as e:
        raise PaymentError(
            PaymentErrorKind.MALFORMED_PROOF,
            f"Invalid challenge expiry: {expires}"
        ) from e
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= datetime.now(timezone.utc)
