# paygate/paymentauth/coalescer.py
"""
Coalescing of concurrent settlement verifications.

When several requests present the same transaction hash at once, only the
first runs the verifier; the others wait for its outcome and share it,
result or exception. The in-flight entry is dropped as soon as that
verification finishes, so later requests verify afresh. Replay protection
still decides which of the callers is admitted.
"""
import logging
import threading
from concurrent.futures import Future
from typing import Callable, Dict, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class VerificationCoalescer:
    """Deduplicates concurrent verification calls keyed by transaction hash."""

    def __init__(self):
        self._pending: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def run(self, key: str, verify: Callable[[], T]) -> T:
        """
        Run `verify` for `key`, or join a verification already in flight.

        Raises:
            Whatever the shared verification raised
        """
        with self._lock:
            future = self._pending.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._pending[key] = future

        if not leader:
            logger.debug(f"Joining in-flight verification for {key}")
            return future.result()

        try:
            result = verify()
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                del self._pending[key]

    def pending_count(self) -> int:
        """Number of verifications currently in flight."""
        with self._lock:
            return len(self._pending)
