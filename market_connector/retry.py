"""
Market Connector - Retry Executor.

============================================================
PURPOSE
============================================================
Bounded, classified retries around a single fallible request.

CLASSIFICATION:
- TIMEOUT  -> wait 100ms * 2^(attempt-1), then retry
- CONNECT  -> wait 500ms * 2^(attempt-1), then retry
- FATAL    -> stop immediately, surface the error unwrapped

Any failure on the last permitted attempt is fatal. With
retries disabled exactly one attempt is made.

Each call is independent: attempt counters never persist
between calls.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from market_connector.exceptions import (
    ConfigError,
    ConnectFailureError,
    RequestTimeoutError,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


class FailureKind(Enum):
    """Retry classification of a failed attempt."""

    TIMEOUT = "TIMEOUT"
    CONNECT = "CONNECT"
    FATAL = "FATAL"


def default_classifier(error: BaseException) -> FailureKind:
    """
    Classify a failure raised by the request executor.

    The request executor is responsible for translating its
    client library's errors into RequestTimeoutError or
    ConnectFailureError; everything else is fatal, including
    RateLimitExceeded (the caller decides how to back off).
    """
    if isinstance(error, (RequestTimeoutError, asyncio.TimeoutError)):
        return FailureKind.TIMEOUT
    if isinstance(error, ConnectFailureError):
        return FailureKind.CONNECT
    return FailureKind.FATAL


# ============================================================
# RETRY POLICY
# ============================================================

@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration for one-shot requests.

    Attributes:
        max_attempts: Total attempts including the first (>= 1)
        timeout_base_delay: Base backoff in seconds for timeouts
        connect_base_delay: Base backoff in seconds for connect failures
        enabled: When False, exactly one attempt is made
        classify: Maps an exception to a FailureKind
    """

    max_attempts: int = 4
    timeout_base_delay: float = 0.1
    connect_base_delay: float = 0.5
    enabled: bool = True
    classify: Callable[[BaseException], FailureKind] = default_classifier

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigError(
                f"max_attempts must be >= 1, got {self.max_attempts}",
                config_key="max_attempts",
            )
        if self.timeout_base_delay < 0 or self.connect_base_delay < 0:
            raise ConfigError("Backoff delays must be >= 0", config_key="base_delay")

    @classmethod
    def from_retries(cls, max_retries: int, enabled: bool = True) -> "RetryPolicy":
        """Build a policy from a 'retries beyond the first attempt' count."""
        return cls(max_attempts=max_retries + 1, enabled=enabled)

    def backoff_for(self, kind: FailureKind, attempt: int) -> float:
        """Delay in seconds after failed attempt number `attempt` (1-based)."""
        if kind == FailureKind.TIMEOUT:
            return self.timeout_base_delay * (2 ** (attempt - 1))
        if kind == FailureKind.CONNECT:
            return self.connect_base_delay * (2 ** (attempt - 1))
        return 0.0


# ============================================================
# RETRY EXECUTOR
# ============================================================

class RetryExecutor:
    """
    Runs a fresh attempt from a factory until success, a fatal
    failure, or exhaustion of the attempt budget.

    Usage:
        executor = RetryExecutor(RetryPolicy(max_attempts=4))
        response = await executor.execute(lambda: session_get(url))
    """

    def __init__(
        self,
        policy: RetryPolicy = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._policy = policy or RetryPolicy()
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def execute(self, attempt_factory: Callable[[], Awaitable[T]]) -> T:
        """
        Execute with retries.

        Args:
            attempt_factory: Returns a new awaitable per attempt

        Returns:
            Result of the first successful attempt

        Raises:
            The underlying error of the final failed attempt
        """
        if not self._policy.enabled:
            return await attempt_factory()

        max_attempts = self._policy.max_attempts
        attempt = 0

        while True:
            attempt += 1
            try:
                return await attempt_factory()
            except Exception as e:
                kind = self._policy.classify(e)

                if kind == FailureKind.FATAL:
                    raise

                if attempt >= max_attempts:
                    logger.warning(
                        f"Giving up after {attempt} attempts: {e}"
                    )
                    raise

                delay = self._policy.backoff_for(kind, attempt)
                logger.warning(
                    f"{kind.value} failure, retrying in {delay:.2f}s "
                    f"(attempt {attempt}/{max_attempts}): {e}"
                )
                await self._sleep(delay)
