"""
Operation Executor - policy-aware retries around a single unit of work.

Each attempt runs under a timeout. Failed attempts are retried with fixed
or exponential backoff while attempts remain, unless the observed error
rate crosses the policy's abort threshold first.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

import structlog

from speichr.core.errors import ErrorCode, OperationFailure, to_operation_failure
from speichr.core.models import BackoffStrategy, OperationStatus
from speichr.core.orchestration.telemetry import TelemetryRecorder
from speichr.core.schemas import ConnectionProfile, RetryPolicy
from speichr.core.utils import clamp_float, clamp_int

logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_TIMEOUT_MS = 5000
MIN_TIMEOUT_MS = 100
DEFAULT_RETRY_MAX_ATTEMPTS = 1
DEFAULT_RETRY_BACKOFF_MS = 250
DEFAULT_RETRY_ABORT_ON_ERROR_RATE = 1.0


@dataclass
class ExecutionOutcome(Generic[T]):
    """Result of a successful run."""
    result: T
    attempts: int
    duration_ms: int


def resolve_retry_policy(
    profile: ConnectionProfile,
    override: Optional[RetryPolicy] = None,
) -> RetryPolicy:
    """
    Retry policy for one call.

    An explicit override wins (clamped to sane bounds); otherwise the
    connection's stored defaults; otherwise the hard-coded fallbacks.
    """
    if override is not None:
        return RetryPolicy(
            max_attempts=clamp_int(override.max_attempts, 1, 10, DEFAULT_RETRY_MAX_ATTEMPTS),
            backoff_ms=clamp_int(override.backoff_ms, 0, 120_000, DEFAULT_RETRY_BACKOFF_MS),
            backoff_strategy=override.backoff_strategy,
            abort_on_error_rate=clamp_float(
                override.abort_on_error_rate, 0, 1, DEFAULT_RETRY_ABORT_ON_ERROR_RATE
            ),
        )

    return RetryPolicy(
        max_attempts=clamp_int(profile.retry_max_attempts, 1, 10, DEFAULT_RETRY_MAX_ATTEMPTS),
        backoff_ms=clamp_int(profile.retry_backoff_ms, 0, 120_000, DEFAULT_RETRY_BACKOFF_MS),
        backoff_strategy=profile.retry_backoff_strategy or BackoffStrategy.FIXED,
        abort_on_error_rate=clamp_float(
            profile.retry_abort_on_error_rate, 0, 1, DEFAULT_RETRY_ABORT_ON_ERROR_RATE
        ),
    )


def backoff_delay_ms(policy: RetryPolicy, attempt: int) -> int:
    """Delay before the attempt after `attempt` (1-based)."""
    if policy.backoff_strategy == BackoffStrategy.FIXED:
        return policy.backoff_ms
    return policy.backoff_ms * 2 ** max(0, attempt - 1)


class OperationExecutor:
    """
    Runs units of work under a connection's timeout and retry policy.

    Args:
        telemetry: Recorder for terminal outcomes; None disables recording
        sleep: Coroutine used for backoff waits
    """

    def __init__(
        self,
        telemetry: Optional[TelemetryRecorder] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.telemetry = telemetry
        self._sleep = sleep

    async def run(
        self,
        profile: ConnectionProfile,
        action: str,
        key_or_pattern: str,
        work: Callable[[], Awaitable[T]],
        retry_policy: Optional[RetryPolicy] = None,
        suppress_telemetry: bool = False,
    ) -> ExecutionOutcome[T]:
        """
        Execute `work` with retries.

        Returns:
            ExecutionOutcome with the result and the attempts it took

        Raises:
            OperationFailure: last failure, with details["attempts"] set
        """
        started = time.perf_counter()
        timeout_ms = max(MIN_TIMEOUT_MS, profile.timeout_ms or DEFAULT_TIMEOUT_MS)
        policy = retry_policy or resolve_retry_policy(profile)

        attempts = 0
        error_count = 0
        last_failure: Optional[OperationFailure] = None

        while attempts < policy.max_attempts:
            attempts += 1
            try:
                result = await self._attempt(work, timeout_ms)
            except Exception as e:
                error_count += 1
                last_failure = to_operation_failure(e).with_attempts(attempts)

                if attempts >= policy.max_attempts or not last_failure.retryable:
                    break

                error_rate = error_count / attempts
                if error_rate > policy.abort_on_error_rate:
                    last_failure = OperationFailure(
                        ErrorCode.CONNECTION_FAILED,
                        f'Operation "{action}" aborted by retry policy.',
                        False,
                        {
                            "abortOnErrorRate": policy.abort_on_error_rate,
                            "observedErrorRate": round(error_rate, 3),
                            "attempts": attempts,
                        },
                    )
                    logger.warning(
                        "operation_aborted_by_policy",
                        connection_id=profile.id,
                        action=action,
                        attempts=attempts,
                        error_rate=round(error_rate, 3),
                    )
                    break

                delay_ms = backoff_delay_ms(policy, attempts)
                logger.debug(
                    "operation_retry_scheduled",
                    connection_id=profile.id,
                    action=action,
                    attempt=attempts,
                    delay_ms=delay_ms,
                    error=last_failure.message,
                )
                if delay_ms > 0:
                    await self._sleep(delay_ms / 1000)
                continue

            duration_ms = self._elapsed_ms(started)
            if self.telemetry and not suppress_telemetry:
                await self.telemetry.record_operation(
                    profile, action, key_or_pattern, duration_ms,
                    OperationStatus.SUCCESS, attempts,
                )
            return ExecutionOutcome(result=result, attempts=attempts, duration_ms=duration_ms)

        failure = last_failure or OperationFailure(
            ErrorCode.INTERNAL_ERROR,
            f'Operation "{action}" failed unexpectedly.',
            False,
            {"attempts": attempts},
        )
        duration_ms = self._elapsed_ms(started)
        if self.telemetry and not suppress_telemetry:
            await self.telemetry.record_operation(
                profile, action, key_or_pattern, duration_ms,
                OperationStatus.ERROR, attempts, failure,
            )
        raise failure

    @staticmethod
    async def _attempt(work: Callable[[], Awaitable[T]], timeout_ms: int) -> T:
        try:
            return await asyncio.wait_for(work(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise OperationFailure(
                ErrorCode.TIMEOUT,
                f"Operation timed out after {timeout_ms}ms.",
                True,
            ) from None

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return round((time.perf_counter() - started) * 1000)
