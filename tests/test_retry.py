"""Tests for the retry/backoff policy."""

import asyncio

import pytest

from dc_migration.client.exceptions import (
    BlobCopyError,
    CloudError,
    ConfigurationError,
    NotFoundError,
    RetryExhaustedError,
    TransientRemoteError,
    ValidationError,
)
from dc_migration.config import RetryConfig
from dc_migration.resources import ResourceType
from dc_migration.utils.retry import RetryPolicy, is_retryable


def flaky(failures: list[BaseException], result="ok"):
    """Coroutine function raising the given errors in order, then returning result."""
    calls = []

    async def action():
        calls.append(len(calls))
        if failures:
            raise failures.pop(0)
        return result

    action.calls = calls
    return action


class TestBackoff:
    """Test delay computation."""

    def test_first_delay_is_min_backoff(self):
        """Test the first retry waits exactly min_backoff."""
        policy = RetryPolicy(min_backoff=3, max_backoff=90, delta_backoff=90, rng=lambda a, b: 1.2)

        assert policy.compute_delay(0) == 3

    def test_delay_grows_and_is_capped(self):
        """Test delays grow exponentially up to max_backoff."""
        policy = RetryPolicy(min_backoff=1, max_backoff=30, delta_backoff=2, rng=lambda a, b: 1.0)

        delays = [policy.compute_delay(n) for n in range(6)]

        assert delays == [1, 3, 7, 15, 30, 30]

    def test_randomization_bounds(self):
        """Test the random factor is drawn from [0.8, 1.2]."""
        bounds = []

        def rng(a, b):
            bounds.append((a, b))
            return a

        policy = RetryPolicy(min_backoff=0, max_backoff=1000, delta_backoff=10, rng=rng)

        assert policy.compute_delay(1) == pytest.approx(8.0)
        assert bounds == [(0.8, 1.2)]

    def test_from_config(self):
        """Test building a policy from the retry configuration."""
        config = RetryConfig(retry_count=7, min_backoff=2, max_backoff=40, delta_backoff=5)

        policy = RetryPolicy.from_config(config)

        assert policy.retry_count == 7
        assert (policy.min_backoff, policy.max_backoff, policy.delta_backoff) == (2, 40, 5)

    def test_retry_count_must_be_positive(self):
        """Test a policy needs at least one attempt."""
        with pytest.raises(ValueError):
            RetryPolicy(retry_count=0)


class TestRetryableErrors:
    """Test error classification."""

    def test_transient_errors_are_retried(self):
        """Test remote and network failures are retryable."""
        assert is_retryable(TransientRemoteError("throttled"))
        assert is_retryable(CloudError("conflict", error_code="ConflictError"))
        assert is_retryable(TimeoutError())
        assert is_retryable(ConnectionResetError())
        assert is_retryable(RuntimeError("connection reset"))
        assert is_retryable(KeyError("partial response"))

    def test_answers_are_not_retried(self):
        """Test not-found, terminal copy, validation and configuration errors are final."""
        assert not is_retryable(NotFoundError("gone"))
        assert not is_retryable(BlobCopyError("failed"))
        assert not is_retryable(ValidationError("bad"))
        assert not is_retryable(ConfigurationError("no destination"))
        assert not is_retryable(asyncio.CancelledError())


class TestRun:
    """Test RetryPolicy.run()."""

    @pytest.fixture
    def policy(self, fake_sleep):
        return RetryPolicy(
            retry_count=5,
            min_backoff=3,
            max_backoff=90,
            delta_backoff=90,
            sleep=fake_sleep,
            rng=lambda a, b: 1.0,
        )

    async def test_succeeds_after_two_failures(self, policy, sleeps):
        """Test two transient failures cost two bounded, non-decreasing delays."""
        action = flaky([TransientRemoteError("busy"), TransientRemoteError("busy")], result=42)

        result = await policy.run(action, ResourceType.AFFINITY_GROUP, "ag1")

        assert result == 42
        assert len(action.calls) == 3
        assert sleeps == [3, 90]
        assert sleeps == sorted(sleeps)
        assert all(policy.min_backoff <= delay <= policy.max_backoff for delay in sleeps)

    async def test_unclassified_errors_are_retried(self, policy, sleeps):
        """Test an arbitrary exception from the provider is retried like a remote failure."""
        action = flaky(
            [
                RuntimeError("connection reset by management endpoint"),
                RuntimeError("connection reset by management endpoint"),
            ]
        )

        assert await policy.run(action, ResourceType.CLOUD_SERVICE, "svc1") == "ok"
        assert len(action.calls) == 3
        assert sleeps == [3, 90]

    async def test_exhaustion_collects_every_error(self, policy, sleeps):
        """Test giving up after retry_count attempts with one error per attempt."""
        errors = [TransientRemoteError(f"busy {n}") for n in range(5)]
        action = flaky(list(errors))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await policy.run(action, ResourceType.STORAGE_ACCOUNT, "sa1")

        assert exc_info.value.errors == errors
        assert exc_info.value.last_error is errors[-1]
        assert exc_info.value.resource_name == "sa1"
        assert len(sleeps) == 4

    async def test_non_retryable_error_raised_unchanged(self, policy, sleeps):
        """Test a validation error propagates on the first attempt."""
        action = flaky([ValidationError("duplicate names")])

        with pytest.raises(ValidationError):
            await policy.run(action, ResourceType.CLOUD_SERVICE)

        assert len(action.calls) == 1
        assert sleeps == []

    async def test_not_found_raised_by_default(self, policy):
        """Test not-found responses propagate unless ignored."""
        with pytest.raises(NotFoundError):
            await policy.run(flaky([NotFoundError("gone")]), ResourceType.DEPLOYMENT)

    async def test_not_found_ignored(self, policy, sleeps):
        """Test ignore_not_found turns a not-found response into None."""
        result = await policy.run(
            flaky([NotFoundError("gone")]), ResourceType.NETWORK_CONFIGURATION, ignore_not_found=True
        )

        assert result is None
        assert sleeps == []

    async def test_prelude_runs_before_each_retry(self, policy):
        """Test the compensating action runs before every retry but not the first attempt."""
        preludes = []

        async def remove_partial():
            preludes.append(True)

        action = flaky([TransientRemoteError("busy"), TransientRemoteError("busy")])

        await policy.run(action, ResourceType.CLOUD_SERVICE, "svc1", prelude=remove_partial)

        assert len(preludes) == 2

    async def test_failing_prelude_does_not_stop_retry(self, policy):
        """Test a compensating action failure is logged and the retry continues."""

        async def remove_partial():
            raise TransientRemoteError("still busy")

        action = flaky([TransientRemoteError("busy")], result="created")

        assert await policy.run(action, ResourceType.CLOUD_SERVICE, prelude=remove_partial) == "created"

    async def test_single_attempt_policy(self, fake_sleep, sleeps):
        """Test retry_count=1 makes exactly one attempt."""
        policy = RetryPolicy(retry_count=1, sleep=fake_sleep)
        action = flaky([TransientRemoteError("busy")])

        with pytest.raises(RetryExhaustedError) as exc_info:
            await policy.run(action, ResourceType.BLOB)

        assert len(exc_info.value.errors) == 1
        assert sleeps == []
