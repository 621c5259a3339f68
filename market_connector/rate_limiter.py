"""
Market Connector - Admission Gate.

============================================================
PURPOSE
============================================================
Throttles outbound requests so a shared request budget
(default: 1200 requests per 60 seconds) is never exceeded.

ALGORITHM:
GCRA (generic cell rate algorithm), the virtual-scheduling
form of a token bucket. The only state is the theoretical
arrival time (TAT) of the next conforming request, kept in
integer nanoseconds and advanced lazily on each call. No
background refill task exists.

    emission_interval T = 1 / refill_rate
    tolerance         τ = (depth - 1) * T
    request at t conforms iff max(TAT, t) - t <= τ
    on admission      TAT = max(TAT, t) + T

CONCURRENCY:
- Accrual and reservation happen in one critical section
  guarded by a threading.Lock with O(1) hold time.
- The lock is never held across an await.
- acquire() reserves its slot *before* sleeping, so two
  callers can never be admitted into the same slot.

============================================================
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from market_connector.exceptions import ConfigError


logger = logging.getLogger(__name__)

NANOS_PER_SECOND = 1_000_000_000


# ============================================================
# RATE BUDGET
# ============================================================

@dataclass(frozen=True)
class RateBudget:
    """
    Immutable rate budget.

    Attributes:
        capacity: Maximum tokens held by the bucket
        refill_rate: Tokens added per second
        burst: Extra tokens allowed on top of capacity
    """

    capacity: int
    refill_rate: float
    burst: int = 0

    def __post_init__(self) -> None:
        if self.capacity <= 0:
            raise ConfigError(
                f"Rate budget capacity must be > 0, got {self.capacity}",
                config_key="capacity",
            )
        if not self.refill_rate > 0:
            raise ConfigError(
                f"Rate budget refill rate must be > 0, got {self.refill_rate}",
                config_key="refill_rate",
            )
        if self.burst < 0:
            raise ConfigError(
                f"Rate budget burst must be >= 0, got {self.burst}",
                config_key="burst",
            )
        if self.emission_interval_ns <= 0:
            raise ConfigError(
                f"Refill rate {self.refill_rate}/s is too high: "
                f"inter-token interval rounds to zero",
                config_key="refill_rate",
            )

    @classmethod
    def per_minute(cls, requests: int, burst: int = 0) -> "RateBudget":
        """Budget of `requests` per 60-second window."""
        return cls(capacity=requests, refill_rate=requests / 60.0, burst=burst)

    @classmethod
    def per_second(cls, requests: int, burst: int = 0) -> "RateBudget":
        """Budget of `requests` per second."""
        return cls(capacity=requests, refill_rate=float(requests), burst=burst)

    @property
    def depth(self) -> int:
        """Bucket depth (capacity plus burst allowance)."""
        return self.capacity + self.burst

    @property
    def emission_interval_ns(self) -> int:
        """Nanoseconds between two tokens."""
        return int(NANOS_PER_SECOND / self.refill_rate)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "capacity": self.capacity,
            "refill_rate": self.refill_rate,
            "burst": self.burst,
        }


DEFAULT_RATE_BUDGET_REQUESTS_PER_MINUTE = 1200


# ============================================================
# PERMIT
# ============================================================

@dataclass(frozen=True)
class Permit:
    """
    Proof that one request was admitted.

    Permits are never released: the budget they consumed
    is returned implicitly as time advances.
    """

    admitted_at_ns: int
    waited_ns: int = 0

    @property
    def waited_seconds(self) -> float:
        """Time spent waiting for admission."""
        return self.waited_ns / NANOS_PER_SECOND


# ============================================================
# ADMISSION GATE
# ============================================================

@dataclass
class AdmissionGate:
    """
    Token-bucket admission control shared by concurrent callers.

    Share one explicit instance between every client that draws
    on the same server-side quota.

    Example:
        gate = AdmissionGate(RateBudget.per_minute(1200))
        await gate.acquire()
        if gate.try_acquire():
            ...
    """

    budget: RateBudget = field(
        default_factory=lambda: RateBudget.per_minute(DEFAULT_RATE_BUDGET_REQUESTS_PER_MINUTE)
    )
    clock: Callable[[], int] = time.monotonic_ns
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    _tat_ns: Optional[int] = field(default=None, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.budget, RateBudget):
            raise ConfigError("budget must be a RateBudget", config_key="budget")
        self._interval_ns = self.budget.emission_interval_ns
        self._tolerance_ns = (self.budget.depth - 1) * self._interval_ns

    # --------------------------------------------------------
    # CRITICAL SECTION
    # --------------------------------------------------------

    def _reserve(self, wait_allowed: bool) -> Optional[int]:
        """
        Accrue and reserve in one step.

        Returns nanoseconds the caller must wait before its
        reserved slot (0 = admitted now), or None if waiting
        was not allowed and the budget is exhausted.
        """
        with self._lock:
            now = self.clock()
            tat = now if self._tat_ns is None else max(self._tat_ns, now)
            wait_ns = tat - self._tolerance_ns - now
            if wait_ns > 0 and not wait_allowed:
                return None
            self._tat_ns = tat + self._interval_ns
            return max(wait_ns, 0)

    # --------------------------------------------------------
    # PUBLIC API
    # --------------------------------------------------------

    async def acquire(self) -> Permit:
        """
        Wait until one unit of budget is available, then return.

        The slot is reserved before sleeping; a cancelled waiter
        forfeits its slot.
        """
        wait_ns = self._reserve(wait_allowed=True)
        if wait_ns:
            logger.debug(f"Admission delayed by {wait_ns / 1e6:.1f}ms")
            await self.sleep(wait_ns / NANOS_PER_SECOND)
        return Permit(admitted_at_ns=self.clock(), waited_ns=wait_ns)

    def try_acquire(self) -> Optional[Permit]:
        """Admit immediately or return None without waiting."""
        wait_ns = self._reserve(wait_allowed=False)
        if wait_ns is None:
            return None
        return Permit(admitted_at_ns=self.clock())

    def get_wait_time(self) -> float:
        """Seconds until the next request would be admitted (0 if now)."""
        with self._lock:
            now = self.clock()
            if self._tat_ns is None:
                return 0.0
            wait_ns = max(self._tat_ns, now) - self._tolerance_ns - now
        return max(wait_ns, 0) / NANOS_PER_SECOND

    def available_permits(self) -> int:
        """Number of requests that could be admitted right now."""
        with self._lock:
            now = self.clock()
            if self._tat_ns is None:
                return self.budget.depth
            backlog_ns = max(self._tat_ns - now, 0)
        free_ns = self._tolerance_ns + self._interval_ns - backlog_ns
        return max(0, min(self.budget.depth, free_ns // self._interval_ns))
