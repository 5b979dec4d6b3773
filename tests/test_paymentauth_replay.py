# tests/test_paymentauth_replay.py
"""
Unit tests for replay protection and challenge bookkeeping.
"""
import threading
import time
from unittest.mock import patch

from paygate.paymentauth.challenges import (
    CHALLENGE_EXPIRED,
    CHALLENGE_OK,
    CHALLENGE_UNKNOWN,
    ChallengeStore,
)
from paygate.paymentauth.codec import PaymentChallenge
from paygate.paymentauth.replay import (
    ReplayCache,
    get_replay_cache,
    reset_replay_cache,
)


class TestReplayCache:
    """Test the ReplayCache class."""

    def test_first_use_accepted_then_replay_rejected(self):
        """A key is accepted once, then rejected."""
        cache = ReplayCache(ttl_seconds=60)
        assert cache.mark_used("0x123") is True
        assert cache.mark_used("0x123") is False

    def test_keys_are_independent(self):
        """Different keys do not block each other."""
        cache = ReplayCache(ttl_seconds=60)
        assert cache.mark_used("0x111") is True
        assert cache.mark_used("0x222") is True

    def test_key_reusable_after_ttl(self):
        """Once the window elapses the key is accepted again."""
        cache = ReplayCache(ttl_seconds=0.01)
        assert cache.mark_used("0x123") is True
        time.sleep(0.02)
        assert cache.mark_used("0x123") is True

    def test_entry_lifetime_override(self):
        """An explicit lifetime outlasts the cache TTL."""
        cache = ReplayCache(ttl_seconds=0.01)
        assert cache.mark_used("0x123", ttl_seconds=60) is True
        time.sleep(0.02)
        assert cache.mark_used("0x123") is False
        assert cache.is_used("0x123") is True

    def test_replay_does_not_extend_window(self):
        """A rejected replay leaves the original expiry untouched."""
        cache = ReplayCache(ttl_seconds=0.2)
        assert cache.mark_used("0x123") is True
        time.sleep(0.05)
        assert cache.mark_used("0x123") is False
        time.sleep(0.2)
        assert cache.mark_used("0x123") is True

    def test_is_used_does_not_mark(self):
        cache = ReplayCache(ttl_seconds=60)
        assert cache.is_used("0xabc") is False
        assert cache.mark_used("0xabc") is True
        assert cache.is_used("0xabc") is True

    def test_clear(self):
        cache = ReplayCache(ttl_seconds=60)
        cache.mark_used("0x123")
        cache.clear()
        assert cache.size() == 0
        assert cache.mark_used("0x123") is True

    def test_concurrent_mark_used_single_winner(self):
        """Of many simultaneous presentations exactly one succeeds."""
        cache = ReplayCache(ttl_seconds=60)
        thread_count = 50
        barrier = threading.Barrier(thread_count)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            outcome = cache.mark_used("0xconcurrent")
            with results_lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(thread_count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == thread_count
        assert results.count(True) == 1

    def test_full_cache_evicts_expired_first(self):
        """Expired entries make room before live ones are dropped."""
        cache = ReplayCache(ttl_seconds=0.01, max_entries=2)
        cache.mark_used("0x1")
        cache.mark_used("0x2")
        time.sleep(0.02)
        assert cache.mark_used("0x3") is True
        assert cache.size() == 1

    def test_full_cache_evicts_soonest_expiring(self):
        """When every entry is live the one closest to expiry goes."""
        cache = ReplayCache(ttl_seconds=60, max_entries=2)
        cache.mark_used("0x1")
        cache.mark_used("0x2")
        cache.mark_used("0x3")
        assert cache.size() == 2
        assert cache.is_used("0x1") is False
        assert cache.is_used("0x3") is True

    @patch("paygate.paymentauth.replay.settings")
    def test_ttl_from_config(self, mock_settings):
        """TTL falls back to settings when not given."""
        mock_settings.PAYMENT_REPLAY_TTL_SECONDS = 120
        cache = ReplayCache()
        assert cache.ttl_seconds == 120


class TestGlobalReplayCache:
    """Test the process-wide cache accessor."""

    def setup_method(self):
        reset_replay_cache()

    def teardown_method(self):
        reset_replay_cache()

    def test_singleton(self):
        assert get_replay_cache() is get_replay_cache()

    def test_reset_clears_entries(self):
        get_replay_cache().mark_used("0x123")
        reset_replay_cache()
        assert get_replay_cache().mark_used("0x123") is True


def make_challenge(challenge_id: str) -> PaymentChallenge:
    return PaymentChallenge(id=challenge_id, realm="api", method="tempo", intent="charge", request={})


class TestChallengeStore:
    """Test issued-challenge bookkeeping."""

    def test_unknown_id(self):
        store = ChallengeStore(ttl_seconds=60)
        assert store.check("nope") == (CHALLENGE_UNKNOWN, None)

    def test_issued_challenge_found(self):
        store = ChallengeStore(ttl_seconds=60)
        challenge = make_challenge("c1")
        store.add(challenge)
        assert store.check("c1") == (CHALLENGE_OK, challenge)

    def test_expired_challenge_reported_once(self):
        """An expired challenge is reported, then forgotten."""
        store = ChallengeStore(ttl_seconds=0.01)
        store.add(make_challenge("c1"))
        time.sleep(0.02)
        outcome, _ = store.check("c1")
        assert outcome == CHALLENGE_EXPIRED
        assert store.check("c1")[0] == CHALLENGE_UNKNOWN

    def test_consume_is_single_use(self):
        store = ChallengeStore(ttl_seconds=60)
        store.add(make_challenge("c1"))
        assert store.consume("c1") is True
        assert store.consume("c1") is False
        assert store.check("c1")[0] == CHALLENGE_UNKNOWN

    def test_add_purges_expired(self):
        store = ChallengeStore(ttl_seconds=0.01)
        store.add(make_challenge("c1"))
        time.sleep(0.02)
        store.add(make_challenge("c2"))
        assert store.size() == 1
