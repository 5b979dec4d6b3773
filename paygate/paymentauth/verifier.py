# paygate/paymentauth/verifier.py
"""
Settlement verification.

A SettlementVerifier confirms that a payment credential references a
genuine, sufficient and timely on-chain payment and turns it into a
PaymentReceipt. Verification is blocking network I/O and must never run
while the replay cache lock is held.

RpcSettlementVerifier checks ERC-20 (TIP-20) transfers through web3:
1. Transaction receipt exists, succeeded and has enough confirmations
2. Transaction was sent to the expected token contract
3. Block timestamp is within the allowed age
4. A Transfer event pays the recipient at least the expected amount
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Tuple

from web3 import Web3
from web3.exceptions import TransactionNotFound
from web3.logs import DISCARD

from paygate.paymentauth.codec import PaymentCredential, PaymentReceipt
from paygate.paymentauth.errors import PaymentError, PaymentErrorKind
from paygate.paymentauth.validation import is_valid_tx_hash
from paygate.services.rpc import create_web3, erc20_contract

logger = logging.getLogger(__name__)

HASH_PAYLOAD_TYPE = "hash"


@dataclass(frozen=True)
class VerificationRequirements:
    """What the gate expects a settlement to satisfy."""
    recipient: str
    amount: str
    token: str
    max_age_seconds: Optional[int] = None


class SettlementVerifier(ABC):
    """Contract consumed by the payment gate."""

    @abstractmethod
    def verify(
        self,
        credential: PaymentCredential,
        expected: VerificationRequirements
    ) -> PaymentReceipt:
        """
        Confirm a credential against the expected payment.

        Returns:
            PaymentReceipt describing the confirmed settlement

        Raises:
            PaymentError: payment_verification_failed, payment_insufficient
                or payment_expired
        """


def credential_tx_hash(credential: PaymentCredential) -> str:
    """
    Extract the settlement transaction hash from a hash-type credential.

    Raises:
        PaymentError: If the payload is not a hash reference
    """
    payload = credential.payload
    if not isinstance(payload, dict):
        raise PaymentError(
            PaymentErrorKind.PAYMENT_VERIFICATION_FAILED,
            "Credential payload must be an object"
        )

    payload_type = payload.get("type")
    if payload_type != HASH_PAYLOAD_TYPE:
        raise PaymentError(
            PaymentErrorKind.PAYMENT_METHOD_UNSUPPORTED,
            f"Unsupported credential payload type: {payload_type!r}"
        )

    tx_hash = payload.get("hash")
    if not is_valid_tx_hash(tx_hash):
        raise PaymentError(
            PaymentErrorKind.PAYMENT_VERIFICATION_FAILED,
            "Invalid transaction hash format"
        )
    return tx_hash.lower()


def decode_transfer_events(contract: Any, receipt: Mapping[str, Any]) -> List[Tuple[str, str, int]]:
    """
    Decode ERC-20 Transfer events emitted by the token contract.

    Logs from other contracts or with other signatures are skipped.

    Returns:
        List of (from, to, value) tuples, addresses lowercased
    """
    token = contract.address.lower()
    transfers = []
    for event in contract.events.Transfer().process_receipt(receipt, errors=DISCARD):
        if event["address"].lower() != token:
            continue
        args = event["args"]
        transfers.append((args["from"].lower(), args["to"].lower(), int(args["value"])))
    return transfers


class RpcSettlementVerifier(SettlementVerifier):
    """Verifies hash-reference credentials against an EVM node."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        confirmations: int = 1,
        web3: Optional[Web3] = None,
        clock: Callable[[], float] = time.time
    ):
        if web3 is None and rpc_url is None:
            raise ValueError("Either rpc_url or web3 is required")
        self._w3 = web3 or create_web3(rpc_url)
        self._confirmations = confirmations
        self._clock = clock

    def verify(
        self,
        credential: PaymentCredential,
        expected: VerificationRequirements
    ) -> PaymentReceipt:
        tx_hash = credential_tx_hash(credential)

        try:
            receipt = self._w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            receipt = None
        if not receipt:
            logger.warning(f"Settlement {tx_hash} not found on chain")
            raise PaymentError(
                PaymentErrorKind.PAYMENT_VERIFICATION_FAILED,
                "Transaction not found"
            )

        if receipt["status"] != 1:
            logger.warning(f"Settlement {tx_hash} reverted")
            raise PaymentError(
                PaymentErrorKind.PAYMENT_VERIFICATION_FAILED,
                "Transaction reverted"
            )

        block_number = receipt["blockNumber"]
        confirmations = self._w3.eth.block_number - block_number + 1
        if confirmations < self._confirmations:
            logger.warning(
                f"Settlement {tx_hash} has {confirmations} confirmations, "
                f"{self._confirmations} required"
            )
            raise PaymentError(
                PaymentErrorKind.PAYMENT_VERIFICATION_FAILED,
                "Insufficient confirmations"
            )

        tx = self._w3.eth.get_transaction(tx_hash)
        if (tx.get("to") or "").lower() != expected.token.lower():
            raise PaymentError(
                PaymentErrorKind.PAYMENT_INSUFFICIENT,
                "Payment was not made in the required token"
            )

        timestamp = int(self._w3.eth.get_block(block_number)["timestamp"])
        if expected.max_age_seconds and self._clock() - timestamp > expected.max_age_seconds:
            raise PaymentError(
                PaymentErrorKind.PAYMENT_EXPIRED,
                f"Transaction is older than {expected.max_age_seconds} seconds"
            )

        contract = erc20_contract(self._w3, expected.token)
        transfers = [
            t for t in decode_transfer_events(contract, receipt)
            if t[1] == expected.recipient.lower()
        ]
        if not transfers:
            raise PaymentError(
                PaymentErrorKind.PAYMENT_VERIFICATION_FAILED,
                "No transfer to the recipient found in transaction"
            )

        payer, recipient, value = max(transfers, key=lambda t: t[2])
        if value < int(expected.amount):
            raise PaymentError(
                PaymentErrorKind.PAYMENT_INSUFFICIENT,
                f"Paid {value}, required {expected.amount}"
            )

        logger.info(f"Settlement {tx_hash} verified: {value} from {payer}")
        return PaymentReceipt(
            tx_hash=tx_hash,
            amount=str(value),
            token=expected.token.lower(),
            payer=payer,
            recipient=recipient,
            timestamp=timestamp,
        )
