# paygate/paymentauth/gate.py
"""
Payment gate: admission state machine for a protected resource.

Per request:
- No credential               -> 402 with a fresh challenge
- Credential, undecodable     -> 400 malformed_proof
- Credential, verifier denies -> status of the verifier's error kind
- Verified, hash already used -> 401 payment_verification_failed
- Verified, first use         -> admitted with a Payment-Receipt header

The gate never retries verification. Concurrent presentations of one hash
share a single verification. Its shared mutable state is the replay cache,
the in-flight verification map and, when challenge binding is on, the
challenge store.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ValidationError, field_validator

from paygate.core.config import ALPHA_USD_ADDRESS, settings
from paygate.paymentauth.challenges import (
    CHALLENGE_EXPIRED,
    CHALLENGE_UNKNOWN,
    ChallengeStore,
)
from paygate.paymentauth.coalescer import VerificationCoalescer
from paygate.paymentauth.codec import (
    SCHEME_PREFIX,
    PaymentChallenge,
    PaymentCredential,
    PaymentReceipt,
    decode_credential,
    encode_challenge,
    encode_receipt,
    generate_challenge_id,
)
from paygate.paymentauth.errors import PaymentConfigError, PaymentError, PaymentErrorKind
from paygate.paymentauth.replay import ReplayCache, get_replay_cache
from paygate.paymentauth.validation import is_valid_address, is_valid_url
from paygate.paymentauth.verifier import (
    SettlementVerifier,
    VerificationRequirements,
    credential_tx_hash,
)

logger = logging.getLogger(__name__)

WWW_AUTHENTICATE_HEADER = "WWW-Authenticate"
AUTHORIZATION_HEADER = "Authorization"
PAYMENT_RECEIPT_HEADER = "Payment-Receipt"


class GateConfig(BaseModel):
    """Static configuration of one payment gate."""
    realm: str = "Payment Gate"
    method: str = "tempo"
    recipient: Optional[str] = None
    amount: Optional[str] = None
    token: str = ALPHA_USD_ADDRESS
    rpc_url: Optional[str] = None
    max_age_seconds: Optional[int] = 300
    description: Optional[str] = None
    challenge_ttl_seconds: int = 300
    bind_challenges: bool = False

    @field_validator("recipient", "token")
    @classmethod
    def check_address(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not is_valid_address(v):
            raise ValueError("Invalid Ethereum address format")
        return v

    @field_validator("amount")
    @classmethod
    def check_amount(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if not v.isdigit() or int(v) <= 0:
            raise ValueError("Amount must be a positive integer in base units")
        return v

    @field_validator("rpc_url")
    @classmethod
    def check_rpc_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not is_valid_url(v):
            raise ValueError("Invalid RPC URL format")
        return v

    @field_validator("max_age_seconds", "challenge_ttl_seconds")
    @classmethod
    def check_positive(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("Must be a positive number of seconds")
        return v

    @property
    def is_complete(self) -> bool:
        """A gate can only charge once recipient and amount are known."""
        return bool(self.recipient and self.amount)

    def requirements(self) -> VerificationRequirements:
        return VerificationRequirements(
            recipient=self.recipient,
            amount=self.amount,
            token=self.token,
            max_age_seconds=self.max_age_seconds,
        )

    @classmethod
    def from_settings(cls) -> "GateConfig":
        """Build the gate configuration from environment settings."""
        return build_gate_config(
            realm=settings.PAYMENT_REALM,
            method=settings.PAYMENT_METHOD,
            recipient=settings.PAYMENT_RECIPIENT,
            amount=settings.PAYMENT_AMOUNT,
            token=settings.PAYMENT_TOKEN,
            rpc_url=str(settings.PAYMENT_RPC_URL),
            max_age_seconds=settings.PAYMENT_MAX_AGE_SECONDS,
            description=settings.PAYMENT_DESCRIPTION,
            challenge_ttl_seconds=settings.PAYMENT_CHALLENGE_TTL_SECONDS,
            bind_challenges=settings.PAYMENT_BIND_CHALLENGES,
        )


def build_gate_config(**values: Any) -> GateConfig:
    """
    Validate gate configuration values.

    Raises:
        PaymentConfigError: If any value is invalid
    """
    try:
        return GateConfig(**values)
    except ValidationError as e:
        raise PaymentConfigError("Invalid configuration", details=e.errors()) from e


@dataclass
class GateDecision:
    """Outcome of evaluating one request against the gate."""
    admitted: bool
    status: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    receipt: Optional[PaymentReceipt] = None
    credential: Optional[PaymentCredential] = None
    error: Optional[PaymentError] = None
    replayed: bool = False
    challenge: Optional[PaymentChallenge] = None


class PaymentGate:
    """
    Admits or denies requests to a protected resource.

    The gate owns its replay cache and verifier handle for its lifetime.
    A used transaction hash stays blocked for at least max_age_seconds, the
    longest a settlement can remain acceptable to the verifier.
    """

    def __init__(
        self,
        config: GateConfig,
        verifier: SettlementVerifier,
        replay_cache: Optional[ReplayCache] = None,
        challenge_store: Optional[ChallengeStore] = None
    ):
        self.config = config
        self.verifier = verifier
        self.replay_cache = replay_cache or get_replay_cache()
        if config.max_age_seconds is None:
            raise PaymentConfigError(
                "Settlement max age is required to bound replay protection",
                details={"max_age_seconds": None},
            )
        self.challenge_store = challenge_store
        if config.bind_challenges and self.challenge_store is None:
            self.challenge_store = ChallengeStore(ttl_seconds=config.challenge_ttl_seconds)
        self.coalescer = VerificationCoalescer()

    def new_challenge(self) -> PaymentChallenge:
        """Issue a fresh charge challenge for the configured price."""
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.config.challenge_ttl_seconds)
        expires = expires_at.strftime("%Y-%m-%dT%H:%M:%SZ")

        challenge = PaymentChallenge(
            id=generate_challenge_id(),
            realm=self.config.realm,
            method=self.config.method,
            intent="charge",
            request={
                "amount": self.config.amount,
                "asset": self.config.token,
                "destination": self.config.recipient,
                "expires": expires,
            },
            expires=expires,
            description=self.config.description,
        )

        if self.challenge_store is not None:
            self.challenge_store.add(challenge)
        return challenge

    def evaluate(self, authorization: Optional[str]) -> GateDecision:
        """
        Run the admission state machine for one request.

        Args:
            authorization: Raw Authorization header value, if any

        Returns:
            GateDecision describing the response to send
        """
        if not self.config.is_complete:
            logger.error("Payment gate misconfigured: recipient and amount are required")
            return GateDecision(
                admitted=False,
                status=503,
                body={"error": "Service Unavailable", "message": "Payment gateway misconfigured"},
            )

        if not authorization or not authorization.startswith(SCHEME_PREFIX):
            message = self.config.description or "Payment required to access this endpoint"
            return self._deny(PaymentError(PaymentErrorKind.PAYMENT_REQUIRED, message))

        try:
            credential = decode_credential(authorization)
        except PaymentError as e:
            logger.warning(f"Rejected malformed credential: {e.message}")
            return self._deny(e)

        if self.challenge_store is not None:
            outcome, _ = self.challenge_store.check(credential.id)
            if outcome == CHALLENGE_UNKNOWN:
                return self._deny(PaymentError(
                    PaymentErrorKind.PAYMENT_VERIFICATION_FAILED,
                    "Unknown or expired challenge ID"
                ), credential)
            if outcome == CHALLENGE_EXPIRED:
                return self._deny(PaymentError(
                    PaymentErrorKind.PAYMENT_EXPIRED,
                    "Challenge has expired"
                ), credential)

        try:
            tx_hash = credential_tx_hash(credential)
            receipt = self.coalescer.run(
                tx_hash,
                lambda: self.verifier.verify(credential, self.config.requirements())
            )
        except PaymentError as e:
            logger.warning(f"Settlement verification denied ({e.kind.value}): {e.message}")
            return self._deny(e, credential)
        except Exception as e:
            logger.error(f"Payment verification infrastructure error: {e}")
            return GateDecision(
                admitted=False,
                status=503,
                body={
                    "error": "Service Unavailable",
                    "message": "Payment verification failed due to infrastructure error",
                },
                credential=credential,
            )

        # Challenge before hash: a credential that loses its challenge leaves
        # the transaction unused.
        if self.challenge_store is not None and not self.challenge_store.consume(credential.id):
            return self._deny(PaymentError(
                PaymentErrorKind.PAYMENT_VERIFICATION_FAILED,
                "Challenge has already been used"
            ), credential)

        if not self.replay_cache.mark_used(receipt.tx_hash, ttl_seconds=self._replay_window()):
            return self._deny(PaymentError(
                PaymentErrorKind.PAYMENT_VERIFICATION_FAILED,
                "This transaction has already been used"
            ), credential, replayed=True)

        logger.info(f"Payment accepted: {receipt.tx_hash} ({receipt.amount} from {receipt.payer})")
        return GateDecision(
            admitted=True,
            status=200,
            body={"txHash": receipt.tx_hash},
            headers={
                PAYMENT_RECEIPT_HEADER: encode_receipt(receipt),
                "Cache-Control": "private",
            },
            receipt=receipt,
            credential=credential,
        )

    def _deny(
        self,
        error: PaymentError,
        credential: Optional[PaymentCredential] = None,
        replayed: bool = False
    ) -> GateDecision:
        """Build a denial; 401 and 402 responses carry a fresh challenge."""
        headers: Dict[str, str] = {}
        challenge = None
        if error.status in (401, 402):
            challenge = self.new_challenge()
            headers[WWW_AUTHENTICATE_HEADER] = encode_challenge(challenge)
            headers["Cache-Control"] = "no-store"
        return GateDecision(
            admitted=False,
            status=error.status,
            body=error.to_dict(),
            headers=headers,
            credential=credential,
            error=error,
            replayed=replayed,
            challenge=challenge,
        )

    def _replay_window(self) -> float:
        """Lifetime of a used hash: the cache TTL, stretched to cover max age."""
        return max(self.replay_cache.ttl_seconds, self.config.max_age_seconds)
