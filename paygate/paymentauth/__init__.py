# paygate/paymentauth/__init__.py
"""
Payment authentication protocol for HTTP.

This package implements the server side of the "Payment" HTTP
authentication scheme: a protected resource answers 402 with a
challenge, the client settles on-chain and retries with a credential,
and the server admits the request with a receipt.

Key components:
- errors: closed error taxonomy and HTTP status mapping
- codec: WWW-Authenticate / Authorization / Payment-Receipt headers
- replay: at-most-once guard over settlement transaction hashes
- verifier: on-chain settlement verification
- challenges: issued-challenge bookkeeping
- gate: framework-agnostic admission state machine
- middleware: FastAPI middleware binding for the gate
- audit: JSON-lines audit trail of payment events

Configuration is loaded from environment variables via paygate.core.config.
"""

__version__ = "0.1.0"
