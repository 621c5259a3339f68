"""
Admission Gate Tests.

============================================================
PURPOSE
============================================================
Token-bucket admission under a controlled clock.

TEST CATEGORIES:
- Budget validation
- Immediate admission (try_acquire)
- Waiting admission (acquire) and slot reservation
- Long-run admission bound

============================================================
"""

import asyncio

import pytest

from market_connector.exceptions import ConfigError
from market_connector.rate_limiter import (
    NANOS_PER_SECOND,
    AdmissionGate,
    RateBudget,
)


class FakeClock:
    """Monotonic nanosecond clock advanced by hand."""

    def __init__(self) -> None:
        self.now = 0

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(round(seconds * NANOS_PER_SECOND))


def make_gate(budget: RateBudget, advance_on_sleep: bool = True):
    clock = FakeClock()
    sleeps = []

    async def sleep(delay: float) -> None:
        sleeps.append(delay)
        if advance_on_sleep:
            clock.advance(delay)

    return AdmissionGate(budget, clock=clock, sleep=sleep), clock, sleeps


# ============================================================
# BUDGET TESTS
# ============================================================

class TestRateBudget:
    """Tests for RateBudget."""

    def test_per_minute(self):
        budget = RateBudget.per_minute(1200)

        assert budget.capacity == 1200
        assert budget.refill_rate == pytest.approx(20.0)
        assert budget.emission_interval_ns == 50_000_000

    def test_per_second_with_burst(self):
        budget = RateBudget.per_second(10, burst=5)

        assert budget.depth == 15

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"capacity": 0, "refill_rate": 1.0},
            {"capacity": -3, "refill_rate": 1.0},
            {"capacity": 5, "refill_rate": 0.0},
            {"capacity": 5, "refill_rate": -1.0},
            {"capacity": 5, "refill_rate": 1.0, "burst": -1},
        ],
    )
    def test_invalid_budget_rejected(self, kwargs):
        with pytest.raises(ConfigError):
            RateBudget(**kwargs)

    def test_default_gate_budget(self):
        gate = AdmissionGate()

        assert gate.budget == RateBudget.per_minute(1200)


# ============================================================
# TRY_ACQUIRE TESTS
# ============================================================

class TestTryAcquire:
    """Tests for non-blocking admission."""

    def test_capacity_then_refill(self):
        """Five admitted, sixth refused, sixth admitted after one interval."""
        gate, clock, _ = make_gate(RateBudget(capacity=5, refill_rate=5.0))

        for _ in range(5):
            assert gate.try_acquire() is not None
        assert gate.try_acquire() is None

        clock.advance(0.2)

        assert gate.try_acquire() is not None
        assert gate.try_acquire() is None

    def test_refused_attempt_consumes_nothing(self):
        gate, clock, _ = make_gate(RateBudget(capacity=1, refill_rate=1.0))

        assert gate.try_acquire() is not None
        for _ in range(10):
            assert gate.try_acquire() is None

        clock.advance(1.0)
        assert gate.try_acquire() is not None

    def test_burst_extends_depth(self):
        gate, _, _ = make_gate(RateBudget(capacity=2, refill_rate=1.0, burst=1))

        admitted = [gate.try_acquire() for _ in range(4)]

        assert [p is not None for p in admitted] == [True, True, True, False]

    def test_available_permits(self):
        gate, clock, _ = make_gate(RateBudget(capacity=5, refill_rate=5.0))

        assert gate.available_permits() == 5
        gate.try_acquire()
        gate.try_acquire()
        assert gate.available_permits() == 3

        clock.advance(0.2)
        assert gate.available_permits() == 4

    def test_wait_time(self):
        gate, _, _ = make_gate(RateBudget(capacity=2, refill_rate=10.0))

        assert gate.get_wait_time() == 0.0
        gate.try_acquire()
        gate.try_acquire()
        assert gate.get_wait_time() == pytest.approx(0.1)


# ============================================================
# ACQUIRE TESTS
# ============================================================

class TestAcquire:
    """Tests for waiting admission."""

    @pytest.mark.asyncio
    async def test_acquire_waits_for_next_token(self):
        gate, _, sleeps = make_gate(RateBudget(capacity=5, refill_rate=5.0))

        for _ in range(5):
            permit = await gate.acquire()
            assert permit.waited_ns == 0

        permit = await gate.acquire()

        assert sleeps == [pytest.approx(0.2)]
        assert permit.waited_seconds == pytest.approx(0.2)

    @pytest.mark.asyncio
    async def test_concurrent_waiters_get_distinct_slots(self):
        """Slots are reserved before sleeping, so waits are spaced by one interval."""
        gate, _, sleeps = make_gate(
            RateBudget(capacity=2, refill_rate=10.0),
            advance_on_sleep=False,
        )

        permits = await asyncio.gather(*(gate.acquire() for _ in range(10)))

        waits = sorted(p.waited_seconds for p in permits)
        expected = [0.0, 0.0] + [0.1 * i for i in range(1, 9)]
        assert waits == [pytest.approx(w) for w in expected]
        assert len(sleeps) == 8

    @pytest.mark.asyncio
    async def test_admissions_bounded_in_any_window(self):
        """
        At most depth + W * rate admissions in any window of length W.

        The initial burst of depth permits counts on top of the refill
        rate, so this is looser than capacity-per-window (DESIGN.md, 1).
        """
        budget = RateBudget(capacity=5, refill_rate=5.0)
        gate, clock, _ = make_gate(budget)

        admitted = []
        for i in range(60):
            permit = await gate.acquire()
            admitted.append(permit.admitted_at_ns)
            if i % 7 == 0:
                clock.advance(0.05)

        window_ns = NANOS_PER_SECOND
        bound = budget.depth + int(budget.refill_rate * 1.0)
        for i, start in enumerate(admitted):
            in_window = [t for t in admitted[i:] if t < start + window_ns]
            assert len(in_window) <= bound
