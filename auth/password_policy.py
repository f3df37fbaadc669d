"""
auth/password_policy.py -- Password strength, reuse history and expiry.

Pattern: Policy object. PasswordPolicy holds the constants (read once from
Settings) and exposes pure checks. It never touches the store; AuthService
loads and persists PasswordHistory values around these checks.

Rules:
  - length in [min_length, max_length]
  - at least one uppercase, lowercase, digit and special character
    (each rule can be switched off in configuration)
  - not an exact match for a known-weak password
  - not a bcrypt match for any hash in the last `history_size` passwords
  - expired once now > password_changed_at + max_age_days

validate_strength() reports every violated rule, not just the first, so the
client can show the full list at once.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from auth.models import PasswordHistory
from auth.tokens import verify_password

if TYPE_CHECKING:
    from core.config import Settings

SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"

_UPPER_RE = re.compile(r"[A-Z]")
_LOWER_RE = re.compile(r"[a-z]")
_DIGIT_RE = re.compile(r"[0-9]")
_SPECIAL_RE = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")

DENY_LIST: frozenset[str] = frozenset(
    {
        "Password123!",
        "Admin123!",
        "Welcome123!",
        "Changeme123!",
        "Aa@123456789",
    }
)


@dataclass(frozen=True)
class StrengthResult:
    valid: bool
    violations: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 12
    max_length: int = 128
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_digit: bool = True
    require_special: bool = True
    max_age_days: int = 90
    history_size: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> PasswordPolicy:
        return cls(
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
            require_uppercase=settings.password_require_uppercase,
            require_lowercase=settings.password_require_lowercase,
            require_digit=settings.password_require_digit,
            require_special=settings.password_require_special,
            max_age_days=settings.password_max_age_days,
            history_size=settings.password_history_size,
        )

    # ------------------------------------------------------------------
    # Strength
    # ------------------------------------------------------------------

    def validate_strength(self, password: str) -> StrengthResult:
        violations: list[str] = []
        if len(password) < self.min_length:
            violations.append(f"Password must be at least {self.min_length} characters long.")
        if len(password) > self.max_length:
            violations.append(f"Password must not exceed {self.max_length} characters.")
        if self.require_uppercase and not _UPPER_RE.search(password):
            violations.append("Password must contain at least one uppercase letter.")
        if self.require_lowercase and not _LOWER_RE.search(password):
            violations.append("Password must contain at least one lowercase letter.")
        if self.require_digit and not _DIGIT_RE.search(password):
            violations.append("Password must contain at least one digit.")
        if self.require_special and not _SPECIAL_RE.search(password):
            violations.append("Password must contain at least one special character.")
        if password in DENY_LIST:
            violations.append("Password is too common. Choose a different one.")
        return StrengthResult(valid=not violations, violations=violations)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def empty_history(self) -> PasswordHistory:
        return PasswordHistory(window=self.history_size)

    def is_in_history(self, history: PasswordHistory, candidate: str) -> bool:
        """True if candidate verifies against any stored hash.

        Only one-way verification is used; hashes are never compared to each
        other. Costs one bcrypt check per stored hash, up to the window size.
        """
        return any(verify_password(candidate, old_hash) for old_hash in history)

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    @property
    def max_age(self) -> timedelta:
        return timedelta(days=self.max_age_days)

    def next_expiry(self, password_changed_at: datetime) -> datetime:
        return password_changed_at + self.max_age

    def is_expired(self, password_changed_at: datetime | None, now: datetime) -> bool:
        # Records that never had a changed-at stamp are not forced through a change.
        if password_changed_at is None:
            return False
        return now > self.next_expiry(password_changed_at)

    def describe(self) -> dict:
        """Public view of the policy constants for GET /auth/password-policy."""
        return {
            "min_length": self.min_length,
            "max_length": self.max_length,
            "require_uppercase": self.require_uppercase,
            "require_lowercase": self.require_lowercase,
            "require_digit": self.require_digit,
            "require_special": self.require_special,
            "special_characters": SPECIAL_CHARACTERS,
            "max_age_days": self.max_age_days,
            "history_size": self.history_size,
        }
