"""Retry logic for remote calls using tenacity.

Every call the exporter, importer and rollback coordinator make against a
cloud provider goes through RetryPolicy.run(). The policy applies a randomized
exponential backoff bounded by [min_backoff, max_backoff], can run a
compensating action before each retry, and aggregates every attempt's error
when it gives up.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from dc_migration.client.exceptions import (
    BlobCopyError,
    ConfigurationError,
    NotFoundError,
    RetryExhaustedError,
    ValidationError,
)
from dc_migration.config import RetryConfig
from dc_migration.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[Any]]
UniformFunc = Callable[[float, float], float]

# Never retried
FINAL_ERRORS = (NotFoundError, BlobCopyError, ValidationError, ConfigurationError)


def is_retryable(exc: BaseException) -> bool:
    """Check whether an exception is worth another attempt.

    Any failure of a remote call is retried. Not-found responses and terminal
    blob copy states are answers, not glitches, and validation or
    configuration errors will fail the same way again.
    """
    # CancelledError and KeyboardInterrupt are not Exceptions
    return isinstance(exc, Exception) and not isinstance(exc, FINAL_ERRORS)


class wait_randomized_exponential(wait_base):
    """Tenacity wait strategy for the randomized exponential backoff.

    delay = min(min_backoff + (2**n - 1) * U(0.8, 1.2) * delta_backoff, max_backoff)

    where n is the zero-based index of the attempt that just failed, so the
    first backoff is exactly min_backoff.
    """

    def __init__(self, policy: "RetryPolicy"):
        self.policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        return self.policy.compute_delay(retry_state.attempt_number - 1)


class RetryPolicy:
    """Bounded exponential-backoff retry for remote operations.

    Example:
        >>> policy = RetryPolicy(retry_count=5, min_backoff=3, max_backoff=90, delta_backoff=90)
        >>> groups = await policy.run(
        ...     provider.list_affinity_groups, ResourceType.AFFINITY_GROUP
        ... )
    """

    def __init__(
        self,
        retry_count: int = 5,
        min_backoff: float = 3.0,
        max_backoff: float = 90.0,
        delta_backoff: float = 90.0,
        sleep: SleepFunc | None = None,
        rng: UniformFunc | None = None,
    ):
        """Initialize retry policy.

        Args:
            retry_count: Total attempts per operation (at least 1)
            min_backoff: Minimum delay between attempts in seconds
            max_backoff: Maximum delay between attempts in seconds
            delta_backoff: Growth factor for the exponential term in seconds
            sleep: Awaitable sleep function (defaults to asyncio.sleep)
            rng: Uniform random function (defaults to random.uniform)
        """
        if retry_count < 1:
            raise ValueError("retry_count must be at least 1")
        self.retry_count = retry_count
        self.min_backoff = min_backoff
        self.max_backoff = max_backoff
        self.delta_backoff = delta_backoff
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.uniform
        self._wait = wait_randomized_exponential(self)

    @classmethod
    def from_config(cls, config: RetryConfig, sleep: SleepFunc | None = None) -> "RetryPolicy":
        """Build a policy from the retry section of the configuration."""
        return cls(
            retry_count=config.retry_count,
            min_backoff=config.min_backoff,
            max_backoff=config.max_backoff,
            delta_backoff=config.delta_backoff,
            sleep=sleep,
        )

    def compute_delay(self, attempt: int) -> float:
        """Compute the backoff after the given zero-based failed attempt."""
        growth = (2**attempt - 1) * self._rng(0.8, 1.2) * self.delta_backoff
        return min(self.min_backoff + growth, self.max_backoff)

    async def run(
        self,
        action: Callable[[], Awaitable[T]],
        resource_type: Any,
        resource_name: str | None = None,
        prelude: Callable[[], Awaitable[Any]] | None = None,
        ignore_not_found: bool = False,
    ) -> T | None:
        """Run a remote operation under the retry policy.

        Args:
            action: Zero-argument coroutine function performing the remote call
            resource_type: Type of resource the call targets (for logging)
            resource_name: Name of resource the call targets (for logging)
            prelude: Compensating action awaited before every retry, used to
                remove a partially created resource. Its failures are logged
                and never stop the retry.
            ignore_not_found: Return None when the provider reports the
                resource does not exist

        Returns:
            The action's result, or None for an ignored not-found response

        Raises:
            RetryExhaustedError: If every attempt failed with a retryable error
            Exception: Any non-retryable error, unchanged, on first occurrence
        """
        errors: list[BaseException] = []

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_count),
            wait=self._wait,
            retry=retry_if_exception(is_retryable),
            sleep=self._sleep,
            before_sleep=self._log_retry(resource_type, resource_name),
            reraise=False,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1 and prelude is not None:
                        await self._run_prelude(prelude, resource_type, resource_name)
                    try:
                        return await action()
                    except NotFoundError:
                        if ignore_not_found:
                            logger.debug(
                                "resource_not_found_ignored",
                                resource_type=str(resource_type),
                                resource_name=resource_name,
                            )
                            return None
                        raise
                    except Exception as e:
                        errors.append(e)
                        raise
        except RetryError as e:
            logger.error(
                "retry_exhausted",
                resource_type=str(resource_type),
                resource_name=resource_name,
                attempts=len(errors),
            )
            raise RetryExhaustedError(
                f"Operation on {resource_type} {resource_name or ''}".rstrip(),
                errors=errors,
                resource_type=str(resource_type),
                resource_name=resource_name,
            ) from e.last_attempt.exception()

        # AsyncRetrying always returns or raises from inside the loop
        raise RuntimeError("Unexpected retry loop exit")

    async def _run_prelude(
        self,
        prelude: Callable[[], Awaitable[Any]],
        resource_type: Any,
        resource_name: str | None,
    ) -> None:
        """Run a compensating action, logging instead of raising on failure."""
        try:
            await prelude()
        except Exception as e:
            logger.warning(
                "compensating_action_failed",
                resource_type=str(resource_type),
                resource_name=resource_name,
                error=str(e),
            )

    @staticmethod
    def _log_retry(resource_type: Any, resource_name: str | None) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            error = outcome.exception() if outcome is not None else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.info(
                "retry_attempt",
                resource_type=str(resource_type),
                resource_name=resource_name,
                attempt=retry_state.attempt_number,
                delay_seconds=round(delay, 2),
                error=str(error),
            )

        return before_sleep
