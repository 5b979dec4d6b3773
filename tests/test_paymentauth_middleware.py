# tests/test_paymentauth_middleware.py
"""
Tests for the payment gate middleware.

These tests drive the middleware through FastAPI's TestClient with a fake
verifier, covering:
- Endpoint protection and pass-through
- 402 challenge responses
- Admission with Payment-Receipt header and handler access to the receipt
- Replay rejection
- Audit events emitted per decision
"""
import tempfile
import pytest
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from paygate.paymentauth.audit import AuditEventType, read_audit_log
from paygate.paymentauth.codec import (
    PaymentCredential,
    PaymentReceipt,
    decode_challenge,
    decode_receipt,
    encode_credential,
)
from paygate.paymentauth.gate import GateConfig, PaymentGate
from paygate.paymentauth.middleware import (
    PaymentGateMiddleware,
    get_client_ip,
    get_payment_receipt,
    is_protected_endpoint,
    parse_protected_paths,
)
from paygate.paymentauth.replay import ReplayCache
from paygate.paymentauth.verifier import SettlementVerifier, credential_tx_hash


RECIPIENT = "0x742d35cc6634c0532925a3b844bc9e7595f8fe00"
TOKEN = "0x20c0000000000000000000000000000000000001"
PAYER = "0x1111111111111111111111111111111111111111"
TX_HASH = "0x" + "cd" * 32


class FakeVerifier(SettlementVerifier):
    def __init__(self, error=None):
        self.error = error

    def verify(self, credential, expected):
        if self.error is not None:
            raise self.error
        return PaymentReceipt(
            tx_hash=credential_tx_hash(credential),
            amount=expected.amount,
            token=expected.token,
            payer=PAYER,
            recipient=expected.recipient,
            timestamp=1700000000,
        )


def make_gate(verifier=None) -> PaymentGate:
    config = GateConfig(realm="api", recipient=RECIPIENT, amount="1000", token=TOKEN)
    return PaymentGate(config, verifier or FakeVerifier(), replay_cache=ReplayCache(ttl_seconds=60))


def create_test_app(gate: PaymentGate) -> FastAPI:
    """Create a test FastAPI app with one paid and one free endpoint."""
    app = FastAPI()

    @app.get("/api/v1/premium")
    async def premium(request: Request):
        receipt = get_payment_receipt(request)
        return {"data": "premium", "paid_by": receipt.payer if receipt else None}

    @app.get("/api/v1/health")
    async def health():
        return {"status": "healthy"}

    app.add_middleware(
        PaymentGateMiddleware,
        gate=gate,
        protected_endpoints=[("GET", "/api/v1/premium")]
    )
    return app


def credential_header(tx_hash: str = TX_HASH) -> str:
    return encode_credential(PaymentCredential(id="c1", payload={"type": "hash", "hash": tx_hash}))


class TestProtectedPaths:
    """Test endpoint protection configuration."""

    def test_parse_protected_paths(self):
        assert parse_protected_paths("GET /api/v1/premium, post /api/v1/reports") == [
            ("GET", "/api/v1/premium"),
            ("POST", "/api/v1/reports"),
        ]

    def test_parse_path_without_method_defaults_to_get(self):
        assert parse_protected_paths("/api/v1/premium") == [("GET", "/api/v1/premium")]

    def test_parse_empty(self):
        assert parse_protected_paths("") == []
        assert parse_protected_paths(None) == []

    def test_prefix_match(self):
        endpoints = [("GET", "/api/v1/premium")]
        assert is_protected_endpoint("GET", "/api/v1/premium", endpoints) is True
        assert is_protected_endpoint("GET", "/api/v1/premium/", endpoints) is True
        assert is_protected_endpoint("GET", "/api/v1/premium/reports", endpoints) is True

    def test_method_must_match(self):
        endpoints = [("GET", "/api/v1/premium")]
        assert is_protected_endpoint("POST", "/api/v1/premium", endpoints) is False
        assert is_protected_endpoint("GET", "/api/v1/health", endpoints) is False


class TestGetClientIP:
    """Test client IP extraction."""

    def test_forwarded_for_header(self):
        request = MagicMock(spec=Request)
        request.headers = {"X-Forwarded-For": "203.0.113.50, 70.41.3.18"}
        request.client = None
        assert get_client_ip(request) == "203.0.113.50"

    def test_direct_connection(self):
        request = MagicMock(spec=Request)
        request.headers = {}
        request.client = MagicMock()
        request.client.host = "192.168.1.100"
        assert get_client_ip(request) == "192.168.1.100"

    def test_no_client_info(self):
        request = MagicMock(spec=Request)
        request.headers = {}
        request.client = None
        assert get_client_ip(request) == "unknown"


class TestPaymentGateMiddleware:
    """Test the middleware end to end through TestClient."""

    @patch("paygate.paymentauth.middleware.settings")
    def test_disabled_passes_through(self, mock_settings):
        mock_settings.PAYMENT_ENABLED = False
        client = TestClient(create_test_app(make_gate()))

        response = client.get("/api/v1/premium")

        assert response.status_code == 200
        assert response.json() == {"data": "premium", "paid_by": None}

    def test_unprotected_endpoint_passes_through(self):
        client = TestClient(create_test_app(make_gate()))
        response = client.get("/api/v1/health")
        assert response.status_code == 200

    def test_protected_endpoint_returns_402(self):
        client = TestClient(create_test_app(make_gate()))

        response = client.get("/api/v1/premium")

        assert response.status_code == 402
        assert response.json()["error"] == "payment_required"
        assert response.headers["Cache-Control"] == "no-store"
        challenge = decode_challenge(response.headers["WWW-Authenticate"])
        assert challenge.request["destination"] == RECIPIENT

    def test_valid_payment_admitted(self):
        client = TestClient(create_test_app(make_gate()))

        response = client.get("/api/v1/premium", headers={"Authorization": credential_header()})

        assert response.status_code == 200
        assert response.json() == {"data": "premium", "paid_by": PAYER}
        assert response.headers["Cache-Control"] == "private"
        assert decode_receipt(response.headers["Payment-Receipt"]).tx_hash == TX_HASH

    def test_replay_rejected(self):
        client = TestClient(create_test_app(make_gate()))
        headers = {"Authorization": credential_header()}

        assert client.get("/api/v1/premium", headers=headers).status_code == 200
        response = client.get("/api/v1/premium", headers=headers)

        assert response.status_code == 401
        assert response.json() == {
            "error": "payment_verification_failed",
            "message": "This transaction has already been used",
        }
        assert "WWW-Authenticate" in response.headers

    def test_malformed_credential_returns_400(self):
        client = TestClient(create_test_app(make_gate()))
        response = client.get("/api/v1/premium", headers={"Authorization": "Payment !!!"})
        assert response.status_code == 400
        assert response.json()["error"] == "malformed_proof"

    def test_infrastructure_error_returns_503(self):
        client = TestClient(create_test_app(make_gate(FakeVerifier(requests.ConnectionError("timeout")))))
        response = client.get("/api/v1/premium", headers={"Authorization": credential_header()})
        assert response.status_code == 503

    def test_lazy_gate_from_settings(self):
        """Without an injected gate, one is built from settings on first use."""
        middleware = PaymentGateMiddleware(FastAPI())
        with patch("paygate.paymentauth.middleware.create_gate_from_settings") as mock_create:
            mock_create.return_value = make_gate()
            assert middleware.gate is mock_create.return_value
            assert middleware.gate is mock_create.return_value
            mock_create.assert_called_once()


class TestMiddlewareAudit:
    """Each gate decision is recorded in the audit log."""

    @pytest.fixture
    def audit_settings(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with patch("paygate.paymentauth.audit.settings") as mock_settings:
                mock_settings.PAYMENT_AUDIT_ENABLED = True
                mock_settings.PAYMENT_AUDIT_LOG_PATH = str(Path(tmpdir) / "audit.jsonl")
                yield mock_settings

    def test_challenge_and_payment_logged(self, audit_settings):
        client = TestClient(create_test_app(make_gate()))

        challenge_id = decode_challenge(client.get("/api/v1/premium").headers["WWW-Authenticate"]).id
        client.get("/api/v1/premium", headers={"Authorization": credential_header()})

        issued = read_audit_log(event_type=AuditEventType.CHALLENGE_ISSUED)
        verified = read_audit_log(event_type=AuditEventType.PAYMENT_VERIFIED)
        assert issued[0]["data"]["challenge_id"] == challenge_id
        assert issued[0]["data"]["amount"] == "1000"
        assert verified[0]["data"]["tx_hash"] == TX_HASH
        assert verified[0]["data"]["payer"] == PAYER

    def test_replay_logged(self, audit_settings):
        client = TestClient(create_test_app(make_gate()))
        headers = {"Authorization": credential_header()}
        client.get("/api/v1/premium", headers=headers)
        client.get("/api/v1/premium", headers=headers)

        replays = read_audit_log(event_type=AuditEventType.REPLAY_REJECTED)
        assert len(replays) == 1
        assert replays[0]["data"]["credential_id"] == "c1"

    def test_infrastructure_failure_logged(self, audit_settings):
        client = TestClient(create_test_app(make_gate(FakeVerifier(requests.ConnectionError("timeout")))))
        client.get("/api/v1/premium", headers={"Authorization": credential_header()})

        failures = read_audit_log(event_type=AuditEventType.PAYMENT_FAILED)
        assert failures[0]["data"]["error"] == "infrastructure"
        assert failures[0]["data"]["status"] == 503


class TestApplication:
    """Test the application module wiring."""

    def test_health_check(self):
        from paygate.main import app

        response = TestClient(app).get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @patch("paygate.paymentauth.middleware.settings")
    @patch("paygate.paymentauth.gate.settings")
    def test_premium_requires_configured_gate(self, mock_gate_settings, mock_middleware_settings):
        """Without recipient and amount the gate answers 503."""
        from paygate.paymentauth.middleware import create_gate_from_settings

        mock_gate_settings.PAYMENT_REALM = "Payment Gate"
        mock_gate_settings.PAYMENT_METHOD = "tempo"
        mock_gate_settings.PAYMENT_RECIPIENT = None
        mock_gate_settings.PAYMENT_AMOUNT = None
        mock_gate_settings.PAYMENT_TOKEN = TOKEN
        mock_gate_settings.PAYMENT_RPC_URL = "https://rpc.example.com"
        mock_gate_settings.PAYMENT_MAX_AGE_SECONDS = 300
        mock_gate_settings.PAYMENT_DESCRIPTION = None
        mock_gate_settings.PAYMENT_CHALLENGE_TTL_SECONDS = 300
        mock_gate_settings.PAYMENT_BIND_CHALLENGES = False
        mock_middleware_settings.PAYMENT_CONFIRMATIONS = 1

        gate = create_gate_from_settings()
        client = TestClient(create_test_app(gate))
        response = client.get("/api/v1/premium")

        assert response.status_code == 503
        assert response.json()["message"] == "Payment gateway misconfigured"
