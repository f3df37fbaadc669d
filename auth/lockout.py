"""
auth/lockout.py -- Failed-login lockout state machine.

States:
  OPEN         no block; credentials are checked.
  LOCKED_TEMP  lockout_until is in the future; refused with remaining seconds.
  LOCKED_PERM  is_locked is set by an administrator; refused unconditionally,
               checked before anything else.

Everything here is a pure function of (state, outcome, now, policy). The
store persists the returned state with a compare-and-swap so concurrent
failures against one account cannot lose an increment (see
UserStore.apply_lockout_transition and AuthService.login).

Escalation:
  On a failure, attempts = stored + 1. When attempts reaches the threshold, a
  lock duration is picked from the tier table and the stored counter is
  clamped back to the threshold.

  "clamped"     tier index = min(attempts - threshold, len(tiers) - 1), where
                attempts is derived from the clamped stored counter. Repeated
                violations therefore saturate at the second tier.
  "progressive" tier index comes from the unclamped violation count, so every
                further failure walks one tier up, to the last one.

Layer rule: stdlib only.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from auth.models import User
    from core.config import Settings

ESCALATION_CLAMPED = "clamped"
ESCALATION_PROGRESSIVE = "progressive"


class LockState(str, Enum):
    OPEN = "open"
    LOCKED_TEMP = "locked_temp"
    LOCKED_PERM = "locked_perm"


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int = 5
    tiers: tuple[int, ...] = (30, 60, 300, 900, 3600)
    escalation: str = ESCALATION_CLAMPED

    def __post_init__(self) -> None:
        if self.threshold < 1:
            raise ValueError("lockout threshold must be at least 1")
        if not self.tiers:
            raise ValueError("lockout tiers must not be empty")
        if self.escalation not in (ESCALATION_CLAMPED, ESCALATION_PROGRESSIVE):
            raise ValueError(f"unknown escalation mode: {self.escalation!r}")

    @classmethod
    def from_settings(cls, settings: Settings) -> LockoutPolicy:
        return cls(
            threshold=settings.lockout_threshold,
            tiers=tuple(settings.lockout_tiers_seconds),
            escalation=settings.lockout_escalation,
        )

    def tier_for(self, count: int) -> int:
        """Lock duration in seconds for a failure count at or above the threshold."""
        index = min(count - self.threshold, len(self.tiers) - 1)
        return self.tiers[max(index, 0)]


@dataclass(frozen=True)
class LockoutState:
    """The slice of the user record the state machine reads and writes."""

    failed_attempts: int = 0
    lockout_until: datetime | None = None
    violations: int = 0
    is_locked: bool = False


@dataclass(frozen=True)
class Gate:
    """Result of checking an account before credentials are verified."""

    state: LockState
    remaining_seconds: int = 0

    @property
    def is_open(self) -> bool:
        return self.state is LockState.OPEN


def state_of(user: User) -> LockoutState:
    return LockoutState(
        failed_attempts=user.failed_login_attempts,
        lockout_until=user.lockout_until,
        violations=user.lockout_violations,
        is_locked=user.is_locked,
    )


def remaining_seconds(lockout_until: datetime, now: datetime) -> int:
    """Whole seconds left in a lock window, rounded up."""
    return math.ceil((lockout_until - now).total_seconds())


def evaluate_gate(state: LockoutState, now: datetime) -> Gate:
    """Decide whether an attempt may proceed to credential verification.

    Never changes counters: a refused attempt leaves the record untouched.
    """
    if state.is_locked:
        return Gate(LockState.LOCKED_PERM)
    if state.lockout_until is not None and state.lockout_until > now:
        return Gate(LockState.LOCKED_TEMP, remaining_seconds(state.lockout_until, now))
    return Gate(LockState.OPEN)


def apply_outcome(state: LockoutState, succeeded: bool, now: datetime, policy: LockoutPolicy) -> LockoutState:
    """Return the state to persist after a credential check on an OPEN account."""
    if succeeded:
        return reset(state)

    attempts = state.failed_attempts + 1
    violations = state.violations + 1
    if attempts < policy.threshold:
        return replace(state, failed_attempts=attempts, lockout_until=None, violations=violations)

    count = violations if policy.escalation == ESCALATION_PROGRESSIVE else attempts
    duration = policy.tier_for(count)
    return replace(
        state,
        failed_attempts=policy.threshold,
        lockout_until=now + timedelta(seconds=duration),
        violations=violations,
    )


def reset(state: LockoutState) -> LockoutState:
    """Clear the counter and any temporary lock. The admin lock is untouched."""
    return replace(state, failed_attempts=0, lockout_until=None, violations=0)
