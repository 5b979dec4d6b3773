# paygate/paymentauth/codec.py
"""
Header codec for the Payment authentication scheme.

Three header families are handled:
- WWW-Authenticate: Payment id="..", realm="..", method="..", intent="..", request=".."
- Authorization: Payment <base64url-json credential>
- Payment-Receipt: <base64url-json receipt>

Opaque JSON payloads are base64url-encoded without padding. Every decode
failure raises PaymentError with kind malformed_proof.
"""
import base64
import binascii
import json
import logging
import re
import secrets
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from paygate.paymentauth.errors import PaymentError, PaymentErrorKind

logger = logging.getLogger(__name__)

SCHEME_PREFIX = "Payment "
CHALLENGE_ID_BYTES = 16  # 128 bits

REQUIRED_CHALLENGE_PARAMS = ("id", "realm", "method", "intent", "request")
OPTIONAL_CHALLENGE_PARAMS = ("expires", "description")

PaymentIntent = Literal["charge", "subscription", "authorize"]

_B64URL_RE = re.compile(r"^[A-Za-z0-9_-]*={0,2}$")
# key="value" where value may hold backslash-escaped characters
_PARAM = r'(\w+)="((?:[^"\\]|\\.)*)"'
_PARAM_RE = re.compile(_PARAM)
_PARAMS_RE = re.compile(rf"{_PARAM}(?:\s*,\s*{_PARAM})*")
_UNESCAPE_RE = re.compile(r"\\(.)")


class PaymentChallenge(BaseModel):
    """Server-issued description of a required payment."""
    id: str
    realm: str
    method: str
    intent: PaymentIntent
    request: Any
    expires: Optional[str] = None
    description: Optional[str] = None


class PaymentCredential(BaseModel):
    """Client-issued proof of a settlement attempt."""
    id: str
    payload: Any
    source: Optional[str] = None


class PaymentReceipt(BaseModel):
    """Server-confirmed record of an accepted settlement."""
    tx_hash: str = Field(..., alias="txHash")
    amount: str
    token: str
    payer: str
    recipient: str
    timestamp: int

    model_config = ConfigDict(populate_by_name=True)


def b64url_encode(data: bytes) -> str:
    """Base64url-encode bytes without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    """
    Decode a base64url string. Trailing padding is optional.

    Raises:
        ValueError: If the value holds characters outside the base64url alphabet
    """
    if not _B64URL_RE.fullmatch(value):
        raise ValueError("invalid base64url characters")
    value = value.rstrip("=")
    padding = -len(value) % 4
    return base64.urlsafe_b64decode(value + "=" * padding)


def _encode_json(obj: Any) -> str:
    return b64url_encode(json.dumps(obj, separators=(",", ":")).encode("utf-8"))


def _decode_json(value: str, what: str) -> Any:
    try:
        return json.loads(b64url_decode(value).decode("utf-8"))
    except (ValueError, binascii.Error, UnicodeDecodeError) as e:
        raise PaymentError(
            PaymentErrorKind.MALFORMED_PROOF,
            f"Invalid {what}: payload is not base64url-encoded JSON ({e})"
        ) from e


def _wire_dict(model: BaseModel) -> Dict[str, Any]:
    """Dump a model by alias, omitting absent optional fields."""
    return {
        key: value
        for key, value in model.model_dump(by_alias=True).items()
        if value is not None
    }


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def generate_challenge_id() -> str:
    """Draw 128 bits from the OS CSPRNG and base64url-encode them."""
    return b64url_encode(secrets.token_bytes(CHALLENGE_ID_BYTES))


def encode_challenge(challenge: PaymentChallenge) -> str:
    """
    Format a challenge as a WWW-Authenticate header value.

    Example:
        Payment id="abc", realm="api", method="tempo", intent="charge", request="eyJ..."
    """
    params = [
        ("id", challenge.id),
        ("realm", challenge.realm),
        ("method", challenge.method),
        ("intent", challenge.intent),
        ("request", _encode_json(challenge.request)),
    ]
    if challenge.expires is not None:
        params.append(("expires", challenge.expires))
    if challenge.description is not None:
        params.append(("description", challenge.description))

    rendered = ", ".join(f'{key}="{_quote(value)}"' for key, value in params)
    return f"{SCHEME_PREFIX}{rendered}"


def parse_challenge_params(header: str) -> Dict[str, str]:
    """
    Split a WWW-Authenticate value into its parameter map.

    Args:
        header: Full header value, including the "Payment " prefix

    Returns:
        Mapping of parameter name to unescaped value

    Raises:
        PaymentError: malformed_proof on a bad prefix, bad syntax or duplicate keys
    """
    if not isinstance(header, str) or not header.startswith(SCHEME_PREFIX):
        raise PaymentError(
            PaymentErrorKind.MALFORMED_PROOF,
            'Invalid WWW-Authenticate header: must start with "Payment "'
        )

    params_string = header[len(SCHEME_PREFIX):].strip()
    if not _PARAMS_RE.fullmatch(params_string):
        raise PaymentError(
            PaymentErrorKind.MALFORMED_PROOF,
            'Invalid WWW-Authenticate header: parameters must be key="value" pairs'
        )

    params: Dict[str, str] = {}
    for match in _PARAM_RE.finditer(params_string):
        key = match.group(1)
        if key in params:
            raise PaymentError(
                PaymentErrorKind.MALFORMED_PROOF,
                f"Invalid WWW-Authenticate header: duplicate parameter '{key}'"
            )
        params[key] = _UNESCAPE_RE.sub(r"\1", match.group(2))
    return params


def decode_challenge(header: str) -> PaymentChallenge:
    """
    Parse a WWW-Authenticate header value into a PaymentChallenge.

    Raises:
        PaymentError: malformed_proof if the header is not a complete Payment challenge
    """
    params = parse_challenge_params(header)

    missing = [name for name in REQUIRED_CHALLENGE_PARAMS if name not in params]
    if missing:
        raise PaymentError(
            PaymentErrorKind.MALFORMED_PROOF,
            "Invalid WWW-Authenticate header: missing required parameters "
            f"({', '.join(missing)})"
        )

    fields: Dict[str, Any] = {
        name: params[name]
        for name in REQUIRED_CHALLENGE_PARAMS + OPTIONAL_CHALLENGE_PARAMS
        if name in params
    }
    fields["request"] = _decode_json(params["request"], "challenge request")

    try:
        return PaymentChallenge(**fields)
    except ValidationError as e:
        raise PaymentError(
            PaymentErrorKind.MALFORMED_PROOF,
            f"Invalid WWW-Authenticate header: {e.errors()[0]['msg']}"
        ) from e


def encode_credential(credential: PaymentCredential) -> str:
    """Format a credential as an Authorization header value."""
    return f"{SCHEME_PREFIX}{_encode_json(_wire_dict(credential))}"


def decode_credential(header: str) -> PaymentCredential:
    """
    Parse an Authorization header value into a PaymentCredential.

    Raises:
        PaymentError: malformed_proof on a missing prefix or undecodable payload
    """
    if not isinstance(header, str) or not header.startswith(SCHEME_PREFIX):
        raise PaymentError(
            PaymentErrorKind.MALFORMED_PROOF,
            'Invalid Authorization header: must start with "Payment "'
        )

    data = _decode_json(header[len(SCHEME_PREFIX):].strip(), "Authorization header")
    if not isinstance(data, dict):
        raise PaymentError(
            PaymentErrorKind.MALFORMED_PROOF,
            "Invalid Authorization header: credential must be a JSON object"
        )

    try:
        return PaymentCredential.model_validate(data)
    except ValidationError as e:
        raise PaymentError(
            PaymentErrorKind.MALFORMED_PROOF,
            f"Invalid Authorization header: {e.errors()[0]['msg']}"
        ) from e


def encode_receipt(receipt: PaymentReceipt) -> str:
    """Format a receipt as a Payment-Receipt header value."""
    return _encode_json(_wire_dict(receipt))


def decode_receipt(header: str) -> PaymentReceipt:
    """
    Parse a Payment-Receipt header value.

    Raises:
        PaymentError: malformed_proof if the value is not a receipt
    """
    data = _decode_json((header or "").strip(), "Payment-Receipt header")
    if not isinstance(data, dict):
        raise PaymentError(
            PaymentErrorKind.MALFORMED_PROOF,
            "Invalid Payment-Receipt header: receipt must be a JSON object"
        )

    try:
        return PaymentReceipt.model_validate(data)
    except ValidationError as e:
        raise PaymentError(
            PaymentErrorKind.MALFORMED_PROOF,
            f"Invalid Payment-Receipt header: {e.errors()[0]['msg']}"
        ) from e
