"""
Tests for Kubernetes API retry helpers and backoff policies.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import aiohttp
import pytest
from kubernetes_asyncio.client import ApiException
from pydantic import ValidationError

from oradb_operator.core.retry_policy import BackoffPolicy, ReconcileResult, ReconcilerConfig, RetryPolicy
from oradb_operator.config.settings import Settings
from oradb_operator.models.lifecycle import LifecycleState
from oradb_operator.utils.retry import is_retryable_k8s_error, retry_on_k8s_error


@pytest.mark.parametrize("error,retryable", [
    (ApiException(status=503), True),
    (ApiException(status=429), True),
    (ApiException(status=409), False),
    (ApiException(status=404), False),
    (aiohttp.ClientConnectionError("reset"), True),
    (asyncio.TimeoutError(), True),
    (ValueError("bad"), False),
])
def test_is_retryable_k8s_error(error, retryable):
    assert is_retryable_k8s_error(error) is retryable


class Flaky:
    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


@pytest.mark.asyncio
async def test_retries_transient_failures():
    flaky = Flaky(ApiException(status=503), ApiException(status=502))
    call = retry_on_k8s_error(max_retries=3, initial_delay=0)(flaky)

    assert await call() == "ok"
    assert flaky.calls == 3


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    flaky = Flaky(*[ApiException(status=500)] * 5)
    call = retry_on_k8s_error(max_retries=2, initial_delay=0)(flaky)

    with pytest.raises(ApiException):
        await call()
    assert flaky.calls == 3


@pytest.mark.asyncio
async def test_does_not_retry_conflicts():
    flaky = Flaky(ApiException(status=409))
    call = retry_on_k8s_error(max_retries=3, initial_delay=0)(flaky)

    with pytest.raises(ApiException):
        await call()
    assert flaky.calls == 1


@pytest.mark.asyncio
async def test_extra_exception_types():
    flaky = Flaky(KeyError("x"))
    call = retry_on_k8s_error(max_retries=1, initial_delay=0, retry_on=(KeyError,))(flaky)

    assert await call() == "ok"


class TestBackoffPolicy:
    def test_exponential_and_capped(self):
        backoff = BackoffPolicy(base_delay=2, max_delay=30)

        assert [backoff.delay(n) for n in range(1, 6)] == [2, 4, 8, 16, 30]

    def test_zero_attempts_uses_base(self):
        assert BackoffPolicy(base_delay=5).delay(0) == 5


class TestRetryPolicy:
    def test_expiry(self):
        policy = RetryPolicy(expected_states=frozenset({LifecycleState.AVAILABLE}), max_wait=60, poll_interval=10)
        since = datetime(2026, 1, 1, tzinfo=timezone.utc)

        assert not policy.is_expired(None, since)
        assert not policy.is_expired(since, since + timedelta(seconds=59))
        assert policy.is_expired(since, since + timedelta(seconds=60))

    def test_absent_is_a_state(self):
        policy = RetryPolicy(expected_states=frozenset({None}), max_wait=60, poll_interval=10)

        assert policy.is_satisfied(None)
        assert not policy.is_satisfied(LifecycleState.AVAILABLE)
        assert policy.describe() == "ABSENT"


def test_reconciler_config_from_settings():
    config = ReconcilerConfig.from_settings(Settings(
        resync_interval_seconds=120,
        transient_backoff_base_seconds=1,
        transient_backoff_max_seconds=60,
    ))

    assert config.resync_interval == 120
    assert config.backoff == BackoffPolicy(base_delay=1, max_delay=60)


def test_policies_are_immutable():
    config = ReconcilerConfig()

    with pytest.raises(ValidationError):
        config.poll_interval = 1
    with pytest.raises(ValidationError):
        config.backoff.max_delay = 1
    assert RetryPolicy(expected_states=None, max_wait=0, poll_interval=0).excluded_states == frozenset()


def test_reconcile_result_defaults():
    result = ReconcileResult(requeue_after=None, outcome="gone")

    assert result.action is None
    assert result.dispatched is False
