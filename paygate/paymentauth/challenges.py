# paygate/paymentauth/challenges.py
"""
Bookkeeping for issued payment challenges.

When challenge binding is enabled the gate only accepts credentials whose
id names a challenge it issued, that has not expired and that has not
already admitted a request.
"""
import logging
import threading
import time
from typing import Dict, Optional, Tuple

from paygate.paymentauth.codec import PaymentChallenge

logger = logging.getLogger(__name__)

# Lookup outcomes
CHALLENGE_OK = "ok"
CHALLENGE_UNKNOWN = "unknown"
CHALLENGE_EXPIRED = "expired"


class ChallengeStore:
    """Thread-safe in-memory store of live challenges keyed by id."""

    def __init__(self, ttl_seconds: float = 300):
        self.ttl_seconds = ttl_seconds
        self._challenges: Dict[str, Tuple[PaymentChallenge, float]] = {}
        self._lock = threading.Lock()

    def add(self, challenge: PaymentChallenge) -> None:
        now = time.monotonic()
        with self._lock:
            self._purge(now)
            self._challenges[challenge.id] = (challenge, now + self.ttl_seconds)

    def check(self, challenge_id: str) -> Tuple[str, Optional[PaymentChallenge]]:
        """
        Look up a challenge without consuming it.

        Returns:
            (outcome, challenge) where outcome is one of CHALLENGE_OK,
            CHALLENGE_UNKNOWN or CHALLENGE_EXPIRED
        """
        now = time.monotonic()
        with self._lock:
            found = self._challenges.get(challenge_id)
            if found is None:
                return CHALLENGE_UNKNOWN, None
            challenge, expires_at = found
            if expires_at <= now:
                del self._challenges[challenge_id]
                return CHALLENGE_EXPIRED, challenge
            return CHALLENGE_OK, challenge

    def consume(self, challenge_id: str) -> bool:
        """Remove a challenge after it admitted a request. False if already gone."""
        with self._lock:
            return self._challenges.pop(challenge_id, None) is not None

    def size(self) -> int:
        with self._lock:
            return len(self._challenges)

    def _purge(self, now: float) -> None:
        stale = [cid for cid, (_, expires_at) in self._challenges.items() if expires_at <= now]
        for cid in stale:
            del self._challenges[cid]
        if stale:
            logger.debug(f"Purged {len(stale)} expired challenges")
