"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; the store, policy engine and service do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime

ROLE_ADMIN = "admin"
ROLE_USER = "user"

DEFAULT_HISTORY_WINDOW = 5


@dataclass(frozen=True)
class PasswordHistory:
    """Bounded, newest-first sequence of previously used bcrypt hashes.

    Persisted as a JSON list of strings. from_json() is strict: anything that
    is not a list of strings raises ValueError. Legacy shapes (a bare hash, or
    garbage) are normalised once by UserStore.migrate_password_history() at
    startup, so strict parsing is safe at request time.
    """

    hashes: tuple[str, ...] = ()
    window: int = DEFAULT_HISTORY_WINDOW

    def __post_init__(self) -> None:
        if self.window < 1:
            raise ValueError("history window must be at least 1")
        if len(self.hashes) > self.window:
            object.__setattr__(self, "hashes", tuple(self.hashes[: self.window]))

    def record(self, new_hash: str) -> PasswordHistory:
        """Return a new history with new_hash prepended, truncated to the window."""
        return PasswordHistory(hashes=(new_hash, *self.hashes)[: self.window], window=self.window)

    def to_json(self) -> str:
        return json.dumps(list(self.hashes))

    @classmethod
    def from_json(cls, raw: str | None, window: int = DEFAULT_HISTORY_WINDOW) -> PasswordHistory:
        if raw is None or raw == "":
            return cls(window=window)
        data = json.loads(raw)
        if not isinstance(data, list) or not all(isinstance(h, str) for h in data):
            raise ValueError("password history must be a JSON list of hash strings")
        return cls(hashes=tuple(data), window=window)

    def __len__(self) -> int:
        return len(self.hashes)

    def __iter__(self):
        return iter(self.hashes)


@dataclass
class User:
    """A local account protected by the lockout state machine.

    failed_login_attempts is clamped to the lockout threshold in storage.
    lockout_violations is the unclamped count of consecutive failures, used
    only by the progressive escalation mode.

    is_locked is the administrator lock. It is independent of the counter and
    lockout_until, and always wins over them.
    """

    username: str
    hashed_password: str
    role: str = ROLE_USER
    id: int | None = None
    failed_login_attempts: int = 0
    lockout_until: datetime | None = None
    lockout_violations: int = 0
    is_locked: bool = False
    password_changed_at: datetime | None = None
    password_history: PasswordHistory = field(default_factory=PasswordHistory)
    email: str | None = None
    full_name: str | None = None
    phone: str | None = None
    receive_login_alerts: bool = True
    created_at: str | None = None
    last_login_notification: str | None = None
