# paygate/agent/wallet.py
"""
Wallet collaborators used by the agent to settle challenges.

A WalletClient submits a token transfer and waits for it to be mined.
PrivateKeyWallet builds ERC-20 (TIP-20) transfer transactions with web3,
signs them locally with eth_account and broadcasts them to the node.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted

from paygate.services.rpc import create_web3, erc20_contract

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 1.0


class SettlementError(Exception):
    """Raised when a settlement transaction fails or is reverted."""


class SettlementTimeoutError(SettlementError, TimeoutError):
    """Raised when a settlement is not confirmed before the deadline."""


class WalletClient(ABC):
    """Signer/chain collaborator consumed by the agent."""

    address: Optional[str] = None

    @abstractmethod
    def send_payment(self, recipient: str, amount: int, token: str) -> str:
        """
        Submit a transfer of `amount` base units of `token` to `recipient`.

        Returns:
            The transaction hash
        """

    @abstractmethod
    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Dict[str, Any]:
        """
        Block until the transaction is mined.

        Raises:
            SettlementTimeoutError: If not mined within `timeout` seconds
            SettlementError: If the transaction reverted
        """


class PrivateKeyWallet(WalletClient):
    """Signs transfers with a local private key and sends them through web3."""

    def __init__(
        self,
        private_key: str,
        rpc_url: Optional[str] = None,
        web3: Optional[Web3] = None,
        gas_limit: Optional[int] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    ):
        if web3 is None and rpc_url is None:
            raise ValueError("Either rpc_url or web3 is required")
        self._account = Account.from_key(private_key)
        self._w3 = web3 or create_web3(rpc_url)
        self._gas_limit = gas_limit
        self._poll_interval = poll_interval
        self.address = self._account.address

    def send_payment(self, recipient: str, amount: int, token: str) -> str:
        logger.info(f"Executing settlement: {amount} of {token} to {recipient}")

        params = {
            "from": self.address,
            "nonce": self._w3.eth.get_transaction_count(self.address, "pending"),
        }
        if self._gas_limit:
            params["gas"] = self._gas_limit

        transfer = erc20_contract(self._w3, token).functions.transfer(
            Web3.to_checksum_address(recipient), int(amount)
        )
        tx = transfer.build_transaction(params)

        signed = self._account.sign_transaction(tx)
        tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction).to_0x_hex()

        logger.info(f"Settlement broadcast successful: {tx_hash}")
        return tx_hash

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Dict[str, Any]:
        try:
            receipt = self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=self._poll_interval
            )
        except TimeExhausted as e:
            raise SettlementTimeoutError(
                f"Transaction {tx_hash} not confirmed within {timeout} seconds"
            ) from e

        if receipt["status"] != 1:
            raise SettlementError(f"Transaction reverted: {tx_hash}")

        logger.info(f"Settlement confirmed: {tx_hash} in block {receipt['blockNumber']}")
        return dict(receipt)
