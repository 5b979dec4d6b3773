# paygate/paymentauth/errors.py
"""
Error taxonomy for the Payment authentication scheme.

Every protocol failure is a PaymentError tagged with one of six
PaymentErrorKind values. The HTTP status is derived from the kind
through status_for(); there is no per-kind exception subclass.
"""
from enum import Enum
from typing import Any, Dict, Optional


class PaymentErrorKind(str, Enum):
    """Closed set of protocol error codes carried in the response body."""
    PAYMENT_REQUIRED = "payment_required"
    PAYMENT_INSUFFICIENT = "payment_insufficient"
    PAYMENT_EXPIRED = "payment_expired"
    PAYMENT_VERIFICATION_FAILED = "payment_verification_failed"
    PAYMENT_METHOD_UNSUPPORTED = "payment_method_unsupported"
    MALFORMED_PROOF = "malformed_proof"


_STATUS_BY_KIND = {
    PaymentErrorKind.PAYMENT_REQUIRED: 402,
    PaymentErrorKind.PAYMENT_INSUFFICIENT: 402,
    PaymentErrorKind.PAYMENT_EXPIRED: 402,
    PaymentErrorKind.PAYMENT_VERIFICATION_FAILED: 401,
    PaymentErrorKind.PAYMENT_METHOD_UNSUPPORTED: 400,
    PaymentErrorKind.MALFORMED_PROOF: 400,
}

_DEFAULT_MESSAGES = {
    PaymentErrorKind.PAYMENT_REQUIRED: "Payment required",
    PaymentErrorKind.PAYMENT_INSUFFICIENT: "Payment amount insufficient",
    PaymentErrorKind.PAYMENT_EXPIRED: "Payment has expired",
    PaymentErrorKind.PAYMENT_VERIFICATION_FAILED: "Payment verification failed",
    PaymentErrorKind.PAYMENT_METHOD_UNSUPPORTED: "Payment method not supported",
    PaymentErrorKind.MALFORMED_PROOF: "Malformed payment proof",
}


def status_for(kind: PaymentErrorKind) -> int:
    """Return the fixed HTTP status for an error kind."""
    return _STATUS_BY_KIND[PaymentErrorKind(kind)]


class PaymentError(Exception):
    """
    A typed payment protocol failure.

    Attributes:
        kind: The PaymentErrorKind tag
        message: Human-readable diagnostic
        status: HTTP status derived from the kind
    """

    def __init__(self, kind: PaymentErrorKind, message: Optional[str] = None):
        self.kind = PaymentErrorKind(kind)
        self.message = message or _DEFAULT_MESSAGES[self.kind]
        super().__init__(self.message)

    @property
    def status(self) -> int:
        return status_for(self.kind)

    def to_dict(self) -> Dict[str, Any]:
        """Error body shape: {"error": <kind>, "message": <text>}."""
        return {"error": self.kind.value, "message": self.message}

    def __repr__(self) -> str:
        return f"PaymentError({self.kind.value!r}, {self.message!r})"


class PaymentConfigError(ValueError):
    """Raised when a payment gate is configured with invalid values."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.details = details
