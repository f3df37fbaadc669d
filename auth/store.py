"""
auth/store.py -- SQLAlchemy Core persistence layer for user accounts.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user is the mapper. Service and route
code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  Lockout counters are written with a compare-and-swap UPDATE
  (apply_lockout_transition): the WHERE clause repeats the values the caller
  read, so two concurrent failed logins cannot both write "attempts + 1" over
  the same base value. The loser sees rowcount == 0 and re-reads.

  change_password() writes hash, changed-at, counter reset and the new history
  in a single UPDATE guarded by the previous hash, so two concurrent changes
  cannot interleave their history writes.

Errors:
  Every call goes through _connect(), which turns IntegrityError into
  ConflictError and any other SQLAlchemyError into StoreError (logged with
  full detail here; the client sees a generic message).

DB path: auth/loginguard_auth.db unless DATABASE_URL is set.

Schema migration notes:
  lockout_violations and last_login_notification are added via ALTER TABLE
  ADD COLUMN so existing DBs are upgraded on first startup.

  migrate_password_history() is a one-time normalisation of legacy history
  values (bare hash strings or unparseable data) into JSON lists.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    inspect,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import ConflictError, StoreError
from auth.lockout import LockoutState
from auth.models import DEFAULT_HISTORY_WINDOW, ROLE_ADMIN, PasswordHistory, User

logger = logging.getLogger("loginguard.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'loginguard_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("lockout_until", String(40)),  # ISO 8601 UTC, NULL = no temporary lock
    Column("lockout_violations", Integer, nullable=False, server_default="0"),
    Column("is_locked", Integer, nullable=False, server_default="0"),
    Column("password_changed_at", String(40)),
    Column("password_history", Text),  # JSON list, newest first
    Column("email", String(255)),
    Column("full_name", String(255)),
    Column("phone", String(50)),
    Column("receive_login_alerts", Integer, nullable=False, server_default="1"),
    Column("created_at", String(40), nullable=False),
    Column("last_login_notification", String(40)),
)

# Columns added after the first release; _ensure_columns() backfills them.
_ADDED_COLUMNS = {
    "lockout_violations": "INTEGER NOT NULL DEFAULT 0",
    "last_login_notification": "TEXT",
}

_PROFILE_FIELDS = {"full_name", "email", "phone"}
_ADMIN_FIELDS = {"username", "role"}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value: datetime | None) -> str | None:
    return value.astimezone(timezone.utc).isoformat() if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _looks_like_bcrypt(value: str) -> bool:
    return value.startswith(("$2a$", "$2b$", "$2y$")) and len(value) == 60


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User accounts.

    Usage:
        store = UserStore()
        uid = store.create_user(User(username="alice", hashed_password=hash_password("...")))
        user = store.get_by_username("alice")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, history_window: int = DEFAULT_HISTORY_WINDOW) -> None:
        self.history_window = history_window
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._ensure_columns()

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        """Yield a transactional connection, committing on clean exit.

        IntegrityError -> ConflictError; any other SQLAlchemyError -> StoreError.
        """
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError as exc:
            raise ConflictError("A user with that username already exists.") from exc
        except SQLAlchemyError as exc:
            logger.exception("Credential store failure")
            raise StoreError("Credential store unavailable.") from exc

    def _ensure_columns(self) -> None:
        """Add columns introduced after the first schema version.

        The inspector check runs before the migration so DBs that already have
        the column do not fail on a duplicate ALTER TABLE.
        """
        existing_cols = {col["name"] for col in inspect(self.engine).get_columns("users")}
        with self.engine.begin() as conn:
            for name, ddl in _ADDED_COLUMNS.items():
                if name not in existing_cols:
                    conn.execute(text(f"ALTER TABLE users ADD COLUMN {name} {ddl}"))  # noqa: S608
                    logger.info("Migrated users table: added column %s", name)

    def migrate_password_history(self) -> int:
        """Normalise legacy password_history values into JSON lists.

        Legacy rows may hold a bare bcrypt hash or data that does not parse.
        A bare hash becomes a one-element list; anything else becomes an empty
        list and is logged. Idempotent. Returns the number of rows rewritten.
        """
        migrated = 0
        with self._connect() as conn:
            rows = conn.execute(select(_users.c.id, _users.c.password_history)).fetchall()
            for row in rows:
                raw = row.password_history
                if raw is None:
                    continue
                try:
                    history = PasswordHistory.from_json(raw, window=self.history_window)
                    if history.to_json() == raw:
                        continue
                except ValueError:
                    if _looks_like_bcrypt(raw):
                        history = PasswordHistory(hashes=(raw,), window=self.history_window)
                    else:
                        logger.warning("Discarding unreadable password history for user id=%s", row.id)
                        history = PasswordHistory(window=self.history_window)
                conn.execute(_users.update().where(_users.c.id == row.id).values(password_history=history.to_json()))
                migrated += 1
        if migrated:
            logger.info("Password history migration rewrote %d row(s)", migrated)
        return migrated

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def count_admins(self) -> int:
        with self._connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.role == ROLE_ADMIN)
            ).scalar()
        return result or 0

    def has_admin(self) -> bool:
        """Return True if at least one admin account exists (bootstrap check)."""
        return self.count_admins() > 0

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return self._row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return self._row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users, newest first. Admin-only operation."""
        with self._connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.id.desc())).fetchall()
        return [self._row_to_user(r) for r in rows]

    def email_in_use(self, email: str, exclude_user_id: int | None = None) -> bool:
        query = select(func.count()).select_from(_users).where(_users.c.email == email)
        if exclude_user_id is not None:
            query = query.where(_users.c.id != exclude_user_id)
        with self._connect() as conn:
            return (conn.execute(query).scalar() or 0) > 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises ConflictError if the username already exists.
        """
        with self._connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    failed_login_attempts=0,
                    lockout_until=None,
                    lockout_violations=0,
                    is_locked=1 if user.is_locked else 0,
                    password_changed_at=_to_iso(user.password_changed_at),
                    password_history=user.password_history.to_json(),
                    email=user.email,
                    full_name=user.full_name,
                    phone=user.phone,
                    receive_login_alerts=1 if user.receive_login_alerts else 0,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def apply_lockout_transition(self, user_id: int, expected: LockoutState, new: LockoutState) -> bool:
        """Compare-and-swap the lockout columns.

        Writes `new` only if the row still holds exactly `expected` (including
        the admin lock flag). Returns False when another request got there
        first; the caller must re-read and re-evaluate.
        """
        expected_until = _to_iso(expected.lockout_until)
        until_clause = (
            _users.c.lockout_until.is_(None) if expected_until is None else _users.c.lockout_until == expected_until
        )
        stmt = (
            _users.update()
            .where(
                (_users.c.id == user_id)
                & (_users.c.failed_login_attempts == expected.failed_attempts)
                & (_users.c.lockout_violations == expected.violations)
                & (_users.c.is_locked == (1 if expected.is_locked else 0))
                & until_clause
            )
            .values(
                failed_login_attempts=new.failed_attempts,
                lockout_until=_to_iso(new.lockout_until),
                lockout_violations=new.violations,
            )
        )
        with self._connect() as conn:
            result = conn.execute(stmt)
        return result.rowcount == 1

    def change_password(
        self,
        user_id: int,
        new_hash: str,
        changed_at: datetime,
        history: PasswordHistory,
        expected_hash: str | None = None,
    ) -> bool:
        """Store a new password and reset the lockout counters in one statement.

        When expected_hash is given the write only lands if the stored hash is
        still that value. Returns True if a row was updated.
        """
        condition = _users.c.id == user_id
        if expected_hash is not None:
            condition = condition & (_users.c.hashed_password == expected_hash)
        with self._connect() as conn:
            result = conn.execute(
                _users.update()
                .where(condition)
                .values(
                    hashed_password=new_hash,
                    password_changed_at=_to_iso(changed_at),
                    failed_login_attempts=0,
                    lockout_until=None,
                    lockout_violations=0,
                    password_history=history.to_json(),
                )
            )
        return result.rowcount > 0

    def update_password_history(self, user_id: int, history: PasswordHistory) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(password_history=history.to_json())
            )
        return result.rowcount > 0

    def set_locked(self, user_id: int, locked: bool) -> bool:
        """Set or clear the administrator lock. Counters are left alone."""
        with self._connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(is_locked=1 if locked else 0))
        return result.rowcount > 0

    def update_user(self, user_id: int, **fields) -> bool:
        """Update admin-editable fields (username, role).

        Unknown keys raise ValueError rather than being silently ignored.
        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _ADMIN_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if not fields:
            return False
        with self._connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def update_profile(self, user_id: int, **fields) -> bool:
        """Update self-service profile fields (full_name, email, phone)."""
        unknown = set(fields) - _PROFILE_FIELDS
        if unknown:
            raise ValueError(f"Unknown profile fields: {unknown!r}")
        if not fields:
            return False
        with self._connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def set_login_alerts(self, user_id: int, enabled: bool) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(receive_login_alerts=1 if enabled else 0)
            )
        return result.rowcount > 0

    def stamp_login_notification(self, user_id: int, when: datetime) -> None:
        """Record when the last login alert was delivered."""
        with self._connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login_notification=_to_iso(when)))

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user record. Returns True if deleted, False if not found."""
        with self._connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Row mapper (Data Mapper pattern)
    # ------------------------------------------------------------------

    def _row_to_user(self, row) -> User:
        return User(
            id=row.id,
            username=row.username,
            hashed_password=row.hashed_password,
            role=row.role,
            failed_login_attempts=row.failed_login_attempts,
            lockout_until=_parse_ts(row.lockout_until),
            lockout_violations=row.lockout_violations,
            is_locked=bool(row.is_locked),
            password_changed_at=_parse_ts(row.password_changed_at),
            password_history=self._load_history(row.id, row.password_history),
            email=row.email,
            full_name=row.full_name,
            phone=row.phone,
            receive_login_alerts=bool(row.receive_login_alerts),
            created_at=row.created_at,
            last_login_notification=row.last_login_notification,
        )

    def _load_history(self, user_id: int, raw: str | None) -> PasswordHistory:
        """Parse a stored history value, failing open to an empty history.

        migrate_password_history() leaves only valid JSON lists behind, so this
        fallback fires only for data written outside the application. Reuse
        checking is a secondary control: an unreadable history must not lock the
        user out of changing their password.
        """
        try:
            return PasswordHistory.from_json(raw, window=self.history_window)
        except (ValueError, json.JSONDecodeError):
            logger.warning("Password history for user id=%s is unreadable; treating it as empty", user_id)
            return PasswordHistory(window=self.history_window)
