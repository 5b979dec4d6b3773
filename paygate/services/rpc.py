# paygate/services/rpc.py
"""
Chain access shared by settlement verification and the agent wallet.

Both sides talk to the node through web3 over a requests session whose
adapter retries transient failures (connection errors and 429/5xx answers)
a bounded number of times before the error reaches the caller.
"""
import logging
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util import Retry
from web3 import Web3

logger = logging.getLogger(__name__)

DEFAULT_RPC_TIMEOUT_SECONDS = 10
RPC_RETRY_COUNT = 3
RPC_RETRY_BACKOFF_SECONDS = 1.0
RPC_RETRY_STATUS_CODES = (429, 500, 502, 503, 504)

# Only what the gate and the wallet need from an ERC-20 (TIP-20) token.
ERC20_ABI = [
    {
        "constant": False,
        "inputs": [
            {"name": "_to", "type": "address"},
            {"name": "_value", "type": "uint256"}
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"}
        ],
        "name": "Transfer",
        "type": "event"
    },
]


def create_rpc_session(
    retries: int = RPC_RETRY_COUNT,
    backoff_factor: float = RPC_RETRY_BACKOFF_SECONDS
) -> requests.Session:
    """
    Create a requests session that retries JSON-RPC calls.

    JSON-RPC goes over POST, which urllib3 does not retry unless told to.
    After the last attempt the final response or error is handed back
    to web3 unchanged.
    """
    retry = Retry(
        total=retries,
        connect=retries,
        read=retries,
        status=retries,
        backoff_factor=backoff_factor,
        status_forcelist=RPC_RETRY_STATUS_CODES,
        allowed_methods=frozenset(["POST"]),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)

    session = requests.Session()
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def create_web3(
    rpc_url: str,
    timeout: float = DEFAULT_RPC_TIMEOUT_SECONDS,
    session: Optional[requests.Session] = None
) -> Web3:
    """
    Create a Web3 instance for an RPC endpoint.

    Construction performs no network access. web3's own exception retry is
    disabled so that the session adapter is the only retry layer.
    """
    provider = Web3.HTTPProvider(
        str(rpc_url),
        request_kwargs={"timeout": timeout},
        session=session or create_rpc_session(),
        exception_retry_configuration=None,
    )
    logger.debug(f"Created web3 provider for {rpc_url}")
    return Web3(provider)


def erc20_contract(w3: Web3, token: str):
    """Bind the ERC-20 ABI to a token address."""
    return w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
