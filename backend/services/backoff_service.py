"""Adaptive polling interval for the remote-change monitor.

The state is an immutable value threaded through the scheduler; the policy is
a pure function of (state, outcome) so it can be tested without timers.
Jitter is applied separately to the returned base delay.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, replace
from enum import StrEnum

JITTER_FRACTION = 0.15
RATE_LIMIT_FACTOR = 2.0
TRANSIENT_FACTOR = 1.5


class PollOutcome(StrEnum):
    """Result of one poll iteration, as seen by the backoff policy."""

    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass(frozen=True)
class BackoffPolicy:
    """Constants of the backoff policy (seconds)."""

    regular_interval: float = 300.0
    initial_backoff: float = 60.0
    max_backoff: float = 3600.0


@dataclass(frozen=True)
class BackoffState:
    """Current backoff interval in seconds. Never persisted."""

    current: float

    @classmethod
    def initial(cls, policy: BackoffPolicy) -> BackoffState:
        return cls(current=policy.initial_backoff)


def _shrink(current: float, policy: BackoffPolicy) -> float:
    return max(current / 2, policy.regular_interval)


def next_interval(
    state: BackoffState, outcome: PollOutcome, policy: BackoffPolicy
) -> tuple[BackoffState, float]:
    """Advance the backoff state and return it with the un-jittered next delay.

    - Rate limited: double the interval, capped at ``max_backoff``.
    - Other failures: once far above the regular interval, halve back toward it;
      otherwise grow mildly (x1.5), capped at twice the regular interval.
    - Success: halve back toward the regular interval while still above twice
      it; otherwise reset to the initial floor and poll at the regular interval.
    """
    high_water = policy.regular_interval * 2

    if outcome is PollOutcome.RATE_LIMITED:
        current = min(state.current * RATE_LIMIT_FACTOR, policy.max_backoff)
        return replace(state, current=current), current

    if outcome is PollOutcome.TRANSIENT_FAILURE:
        if state.current > high_water:
            current = _shrink(state.current, policy)
        else:
            current = min(state.current * TRANSIENT_FACTOR, high_water)
        return replace(state, current=current), current

    if state.current > high_water:
        current = _shrink(state.current, policy)
        return replace(state, current=current), current
    return BackoffState.initial(policy), policy.regular_interval


def apply_jitter(delay: float, rng: random.Random | None = None) -> float:
    """Randomize ``delay`` by +/-15% so independent installs do not poll in lockstep."""
    generator = rng if rng is not None else random
    factor = 1 - JITTER_FRACTION + 2 * JITTER_FRACTION * generator.random()
    return delay * factor
