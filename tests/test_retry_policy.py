import pytest

from settlement.errors import MaxRetryErrorsException, TransientError, VerificationMismatch
from settlement.retry_policy import EXPONENTIAL, LINEAR, RetryPolicy


class Flaky:
    def __init__(self, failures, error=TransientError("boom")):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


def test_linear_and_exponential_delays():
    linear = RetryPolicy(base_delay=2.0, backoff=LINEAR)
    exponential = RetryPolicy(base_delay=2.0, backoff=EXPONENTIAL, max_delay=5.0)

    assert [linear.delay_for(a) for a in (1, 2, 3)] == [2.0, 4.0, 6.0]
    assert [exponential.delay_for(a) for a in (1, 2, 3)] == [2.0, 4.0, 5.0]


def test_recovers_after_transient_failures():
    delays = []
    fn = Flaky(failures=2)

    assert RetryPolicy(max_attempts=3, sleep=delays.append).run(fn, label="op") == "ok"
    assert fn.calls == 3
    assert delays == [2.0, 4.0]


def test_non_retryable_error_propagates_immediately():
    fn = Flaky(failures=5, error=VerificationMismatch("wrong amount"))

    with pytest.raises(VerificationMismatch):
        RetryPolicy(max_attempts=5, sleep=lambda s: None).run(fn, label="op")
    assert fn.calls == 1


def test_exhaustion_carries_last_error():
    fn = Flaky(failures=10, error=ConnectionError("relay down"))

    with pytest.raises(MaxRetryErrorsException) as exc:
        RetryPolicy(max_attempts=2, sleep=lambda s: None).run(fn, label="Deposit")

    assert str(exc.value) == "Deposit failed after 2 attempts: relay down"
    assert isinstance(exc.value.last_error, ConnectionError)
    assert exc.value.__cause__ is exc.value.last_error
    assert fn.calls == 2


def test_worst_case_counts_every_timeout_and_sleep():
    assert RetryPolicy(max_attempts=5, base_delay=2.0, backoff=LINEAR).worst_case_seconds(10) == 70
    assert RetryPolicy(max_attempts=3).worst_case_seconds(45) == 141
    assert RetryPolicy(max_attempts=1).worst_case_seconds(45) == 45
