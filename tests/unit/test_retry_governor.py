from __future__ import annotations

import pytest

from billing_sync.infrastructure.external.iugu_sync.retry_governor import (
    EXPONENTIAL,
    ConsecutiveErrorBudget,
    RetryGovernor,
    RetryPolicy,
)
from billing_sync.shared.exceptions import (
    RateLimitedError,
    SourceApiError,
    SystemicSyncError,
    TransientRemoteError,
)


class _Flaky:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_transient_errors_are_retried_with_linear_delay():
    sleeps = []
    governor = RetryGovernor(RetryPolicy(max_attempts=5, base_delay_s=2.0), sleep=sleeps.append)
    fn = _Flaky(TransientRemoteError("502"), TransientRemoteError("502"), "ok")

    result = governor.with_retry(fn, description="test")

    assert result.ok and result.value == "ok"
    assert result.attempts == 3
    assert sleeps == [2.0, 4.0]


def test_exponential_delay_is_capped():
    policy = RetryPolicy(base_delay_s=2.0, strategy=EXPONENTIAL, max_delay_s=10.0)
    assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 10.0]


def test_exhausted_retries_return_typed_error_instead_of_raising():
    sleeps = []
    governor = RetryGovernor(RetryPolicy(max_attempts=3), sleep=sleeps.append)
    fn = _Flaky(*(TransientRemoteError("timeout") for _ in range(3)))

    result = governor.with_retry(fn, description="test")

    assert not result.ok
    assert isinstance(result.error, TransientRemoteError)
    assert fn.calls == 3
    assert len(sleeps) == 2


def test_non_retryable_error_returns_immediately():
    sleeps = []
    governor = RetryGovernor(sleep=sleeps.append)
    fn = _Flaky(SourceApiError("401", status_code=401))

    result = governor.with_retry(fn, description="test")

    assert isinstance(result.error, SourceApiError)
    assert fn.calls == 1
    assert sleeps == []


def test_rate_limit_waits_cooldown_without_consuming_attempts():
    sleeps = []
    governor = RetryGovernor(
        RetryPolicy(max_attempts=1, rate_limit_cooldown_s=30.0), sleep=sleeps.append
    )
    fn = _Flaky(RateLimitedError("429"), RateLimitedError("429", retry_after_s=60), "ok")

    result = governor.with_retry(fn, description="test")

    assert result.ok
    assert sleeps == [30.0, 60.0]


def test_rate_limit_waits_are_bounded():
    sleeps = []
    governor = RetryGovernor(RetryPolicy(max_rate_limit_waits=2), sleep=sleeps.append)
    fn = _Flaky(*(RateLimitedError("429") for _ in range(3)))

    result = governor.with_retry(fn, description="test")

    assert isinstance(result.error, RateLimitedError)
    assert len(sleeps) == 2


def test_programming_errors_propagate():
    governor = RetryGovernor(sleep=lambda s: None)
    with pytest.raises(KeyError):
        governor.with_retry(_Flaky(KeyError("bug")), description="test")


def test_consecutive_error_budget_resets_on_success():
    budget = ConsecutiveErrorBudget(threshold=3)
    budget.record_failure("a")
    budget.record_failure("b")
    budget.record_success()
    budget.record_failure("c")
    budget.record_failure("d")
    with pytest.raises(SystemicSyncError):
        budget.record_failure("e")
