"""
Tests for reliability — retry policy and cancellation token.
"""

import threading
import time

import pytest

from oqs_installer.core.errors import (
    Cancelled,
    InstallerError,
    NetworkError,
    ValidationError,
)
from oqs_installer.core.reliability.cancellation import CancelToken
from oqs_installer.core.reliability.retry import RetryPolicy, retry_call

# ── Retry Policy ─────────────────────────────────────────────────


class TestRetryPolicy:
    def test_schedule_is_exponential(self):
        policy = RetryPolicy(max_attempts=4, delay=1.0, backoff_multiplier=2.0)
        assert policy.schedule() == [1.0, 2.0, 4.0]
        assert policy.total_delay == 7.0

    def test_fixed_delay(self):
        policy = RetryPolicy(max_attempts=3, delay=5.0, backoff_multiplier=1.0)
        assert policy.schedule() == [5.0, 5.0]

    def test_single_attempt_never_sleeps(self):
        assert RetryPolicy(max_attempts=1).schedule() == []

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_attempts": 0}, {"delay": -1}, {"backoff_multiplier": 0.5}],
    )
    def test_invalid_policy(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestRetryCall:
    def test_always_failing_runs_exactly_n_times(self):
        calls = []
        sleeps = []
        policy = RetryPolicy(max_attempts=4, delay=0.5, backoff_multiplier=3.0)

        def operation():
            calls.append(1)
            raise NetworkError("down")

        with pytest.raises(NetworkError) as exc:
            retry_call(operation, policy, sleep=sleeps.append)

        assert len(calls) == 4
        assert sleeps == policy.schedule()
        assert sum(sleeps) == pytest.approx(0.5 + 1.5 + 4.5)
        assert exc.value.attempts == 4
        assert "after 4 attempts" in str(exc.value)

    def test_real_elapsed_sleep_matches_schedule(self):
        policy = RetryPolicy(max_attempts=3, delay=0.05, backoff_multiplier=2.0)

        def operation():
            raise NetworkError("down")

        start = time.monotonic()
        with pytest.raises(NetworkError):
            retry_call(operation, policy)
        elapsed = time.monotonic() - start
        assert elapsed == pytest.approx(policy.total_delay, abs=0.1)
        assert elapsed >= policy.total_delay

    def test_returns_first_success(self):
        attempts = []

        def operation():
            attempts.append(1)
            if len(attempts) < 2:
                raise NetworkError("flaky")
            return "ok"

        sleeps = []
        result = retry_call(operation, RetryPolicy(max_attempts=5, delay=1), sleep=sleeps.append)
        assert result == "ok"
        assert len(attempts) == 2
        assert sleeps == [1]

    def test_non_retryable_error_propagates_immediately(self):
        calls = []

        def operation():
            calls.append(1)
            raise ValidationError("no cmake")

        with pytest.raises(ValidationError):
            retry_call(operation, RetryPolicy(max_attempts=3, delay=0),
                       retry_on=(NetworkError,))
        assert len(calls) == 1

    def test_cancelled_before_first_attempt(self):
        cancel = CancelToken()
        cancel.cancel("test")
        calls = []
        with pytest.raises(Cancelled):
            retry_call(lambda: calls.append(1), RetryPolicy(), cancel=cancel)
        assert calls == []

    def test_cancel_interrupts_retry_sleep(self):
        cancel = CancelToken()
        calls = []

        def operation():
            calls.append(1)
            raise NetworkError("down")

        timer = threading.Timer(0.2, cancel.cancel, args=("SIGINT",))
        timer.start()
        start = time.monotonic()
        try:
            with pytest.raises(Cancelled):
                retry_call(operation, RetryPolicy(max_attempts=5, delay=30), cancel=cancel)
        finally:
            timer.cancel()
        assert time.monotonic() - start < 5
        assert len(calls) == 1

    def test_cancelled_is_never_retried(self):
        calls = []

        def operation():
            calls.append(1)
            raise Cancelled("stop")

        with pytest.raises(Cancelled):
            retry_call(operation, RetryPolicy(max_attempts=3, delay=0),
                       retry_on=(InstallerError,))
        assert len(calls) == 1


# ── Cancellation ─────────────────────────────────────────────────


class TestCancelToken:
    def test_initial_state(self):
        token = CancelToken()
        assert not token.cancelled
        token.raise_if_cancelled()

    def test_cancel_records_first_reason(self):
        token = CancelToken()
        token.cancel("SIGTERM")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "SIGTERM"
        with pytest.raises(Cancelled, match="SIGTERM"):
            token.raise_if_cancelled()

    def test_sleep_completes_when_not_cancelled(self):
        token = CancelToken()
        start = time.monotonic()
        token.sleep(0.05)
        assert time.monotonic() - start >= 0.04

    def test_handle_signals_restores_handlers(self):
        import signal

        before = signal.getsignal(signal.SIGTERM)
        token = CancelToken()
        with token.handle_signals():
            assert signal.getsignal(signal.SIGTERM) is not before
        assert signal.getsignal(signal.SIGTERM) is before

    def test_sigint_cancels_token(self):
        import os
        import signal

        token = CancelToken()
        with token.handle_signals():
            os.kill(os.getpid(), signal.SIGINT)
            # Python runs handlers between bytecodes on the main thread
            for _ in range(100):
                if token.cancelled:
                    break
                time.sleep(0.01)
        assert token.cancelled
        assert token.reason == "SIGINT"
