# paygate/agent/__init__.py
"""
Autonomous payment agent.

An HTTP client that notices 402 Payment challenges, settles them on-chain
through a wallet collaborator and retries the original request once with
a Payment credential.

Example:
    agent = Agent(private_key=os.environ["AGENT_PRIVATE_KEY"])
    response = agent.get("https://api.example.com/api/v1/premium")

PaymentTool wraps an Agent for tool-calling frameworks.
"""
from paygate.agent.agent import Agent, PaymentFailureError
from paygate.agent.tool import PaymentTool
from paygate.agent.wallet import (
    PrivateKeyWallet,
    SettlementError,
    SettlementTimeoutError,
    WalletClient,
)

__all__ = [
    "Agent",
    "PaymentFailureError",
    "PaymentTool",
    "PrivateKeyWallet",
    "SettlementError",
    "SettlementTimeoutError",
    "WalletClient",
]
