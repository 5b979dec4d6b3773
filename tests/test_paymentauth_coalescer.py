# tests/test_paymentauth_coalescer.py
"""
Unit tests for the verification coalescer.
"""
import threading
import time
import pytest

from paygate.paymentauth.coalescer import VerificationCoalescer
from paygate.paymentauth.errors import PaymentError, PaymentErrorKind


def run_with_followers(coalescer, key, verify, followers=5):
    """Start one caller, wait until it is inside `verify`, then add followers."""
    results = []
    errors = []

    def worker():
        try:
            results.append(coalescer.run(key, verify))
        except Exception as e:
            errors.append(e)

    leader = threading.Thread(target=worker)
    leader.start()
    return leader, [threading.Thread(target=worker) for _ in range(followers)], results, errors


class TestVerificationCoalescer:
    """Test sharing of in-flight verifications."""

    def test_single_call(self):
        coalescer = VerificationCoalescer()
        assert coalescer.run("0xabc", lambda: "receipt") == "receipt"
        assert coalescer.pending_count() == 0

    def test_concurrent_calls_share_one_verification(self):
        coalescer = VerificationCoalescer()
        entered = threading.Event()
        release = threading.Event()
        calls = []

        def verify():
            calls.append(1)
            entered.set()
            release.wait(timeout=5)
            return "receipt"

        leader, followers, results, errors = run_with_followers(coalescer, "0xabc", verify)
        assert entered.wait(timeout=5)
        for t in followers:
            t.start()
        time.sleep(0.1)
        assert coalescer.pending_count() == 1

        release.set()
        for t in [leader] + followers:
            t.join(timeout=10)

        assert calls == [1]
        assert results == ["receipt"] * 6
        assert errors == []
        assert coalescer.pending_count() == 0

    def test_error_shared_and_entry_removed(self):
        coalescer = VerificationCoalescer()
        entered = threading.Event()
        release = threading.Event()
        failure = PaymentError(PaymentErrorKind.PAYMENT_VERIFICATION_FAILED, "Transaction not found")

        def verify():
            entered.set()
            release.wait(timeout=5)
            raise failure

        leader, followers, results, errors = run_with_followers(coalescer, "0xabc", verify, followers=3)
        assert entered.wait(timeout=5)
        for t in followers:
            t.start()
        time.sleep(0.1)
        release.set()
        for t in [leader] + followers:
            t.join(timeout=10)

        assert results == []
        assert errors == [failure] * 4
        assert coalescer.pending_count() == 0

    def test_later_calls_verify_again(self):
        """Outcomes are not cached once the verification finishes."""
        coalescer = VerificationCoalescer()
        calls = []

        def verify():
            calls.append(1)
            raise RuntimeError("node unavailable")

        for _ in range(2):
            with pytest.raises(RuntimeError):
                coalescer.run("0xabc", verify)
        assert len(calls) == 2

    def test_different_keys_independent(self):
        coalescer = VerificationCoalescer()
        assert coalescer.run("0x1", lambda: 1) == 1
        assert coalescer.run("0x2", lambda: 2) == 2
