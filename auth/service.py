"""
auth/service.py -- Login, registration, password lifecycle and admin actions.

AuthService is the only place that combines the lockout state machine, the
password policy, the credential store, the token issuer and the login alert
dispatcher. Routes call it and translate nothing: every failure is raised as
an auth.errors.AuthError subclass and mapped to HTTP by api/main.py.

Blocking work (SQLAlchemy, bcrypt) runs in the thread pool via
run_in_threadpool so a slow hash never stalls the event loop.

Login sequence:
  1. Unknown username -> burn one bcrypt verify, generic 401 [C1].
  2. evaluate_gate(): admin lock -> PermanentLockError; live temporary lock
     -> TemporaryLockError(remaining). Neither touches counters.
  3. Verify the password, compute the next lockout state, persist it with a
     compare-and-swap. A lost race re-reads the row and starts again from 2.
  4. Failure that opened a lock -> TemporaryLockError; other failure -> 401.
  5. Success -> mint a token, schedule the login alert, return.
"""

from __future__ import annotations

import logging
import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from starlette.concurrency import run_in_threadpool

from auth.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PasswordExpiredError,
    PermanentLockError,
    StoreError,
    TemporaryLockError,
    ValidationError,
)
from auth.lockout import LockoutPolicy, LockState, apply_outcome, evaluate_gate, remaining_seconds, state_of
from auth.models import ROLE_ADMIN, ROLE_USER, User
from auth.notify import LoginAlert, NotificationDispatcher
from auth.password_policy import PasswordPolicy
from auth.store import UserStore
from auth.tokens import (
    burn_verify,
    create_access_token,
    decode_access_token,
    hash_password,
    snapshot_matches,
    verify_password,
)

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("loginguard.auth")
audit_logger = logging.getLogger("loginguard.audit")

USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,30}$")
BAD_CREDENTIALS = "Invalid username or password."
ROLES = (ROLE_ADMIN, ROLE_USER)

# Paths on which an expired password does not block the request.
EXPIRY_EXEMPT_MARKERS = ("change-password", "logout")

_MAX_CAS_RETRIES = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LoginResult:
    token: str
    user: User


class AuthService:
    def __init__(
        self,
        store: UserStore,
        policy: PasswordPolicy,
        lockout: LockoutPolicy,
        dispatcher: NotificationDispatcher | None = None,
        *,
        login_alerts_enabled: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.policy = policy
        self.lockout = lockout
        self.dispatcher = dispatcher
        self.login_alerts_enabled = login_alerts_enabled
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        store: UserStore,
        settings: Settings,
        dispatcher: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> AuthService:
        return cls(
            store,
            PasswordPolicy.from_settings(settings),
            LockoutPolicy.from_settings(settings),
            dispatcher,
            login_alerts_enabled=settings.login_alerts_enabled,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require_user(self, user_id: int) -> User:
        user = await run_in_threadpool(self.store.get_by_id, user_id)
        if user is None:
            raise NotFoundError("User not found.")
        return user

    def _check_strength(self, password: str, message: str) -> None:
        result = self.policy.validate_strength(password)
        if not result.valid:
            raise ValidationError(message, result.violations, error_code="weak_password")

    def _new_account(self, username: str, password_hash: str, role: str) -> User:
        return User(
            username=username,
            hashed_password=password_hash,
            role=role,
            password_changed_at=self.clock(),
            password_history=self.policy.empty_history().record(password_hash),
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(self, username: str, password: str) -> int:
        """Create a self-service account. Never issues a token."""
        if not USERNAME_RE.match(username):
            raise ValidationError(
                "Username must be 3-30 characters: letters, digits or underscore.",
                error_code="invalid_username",
            )
        self._check_strength(password, "Password is not strong enough.")
        if await run_in_threadpool(self.store.get_by_username, username) is not None:
            raise ConflictError("A user with that username already exists.")
        password_hash = await run_in_threadpool(hash_password, password)
        user_id = await run_in_threadpool(self.store.create_user, self._new_account(username, password_hash, ROLE_USER))
        logger.info("Registered user %s (id=%s)", username, user_id)
        return user_id

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self, username: str, password: str, ip: str = "unknown", browser: str = "unknown") -> LoginResult:
        user = await run_in_threadpool(self.store.get_by_username, username)
        if user is None:
            await run_in_threadpool(burn_verify, password)
            raise AuthenticationError(BAD_CREDENTIALS)

        verified: bool | None = None
        verified_hash: str | None = None
        for _ in range(_MAX_CAS_RETRIES):
            now = self.clock()
            state = state_of(user)
            gate = evaluate_gate(state, now)
            if gate.state is LockState.LOCKED_PERM:
                logger.info("Login refused for %s: administrator lock", user.username)
                raise PermanentLockError()
            if gate.state is LockState.LOCKED_TEMP:
                logger.info("Login refused for %s: locked for %ds", user.username, gate.remaining_seconds)
                raise TemporaryLockError(gate.remaining_seconds)

            if verified is None or verified_hash != user.hashed_password:
                verified = await run_in_threadpool(verify_password, password, user.hashed_password)
                verified_hash = user.hashed_password

            new_state = apply_outcome(state, verified, now, self.lockout)
            if new_state == state:
                break
            if await run_in_threadpool(self.store.apply_lockout_transition, user.id, state, new_state):
                break
            logger.debug("Lockout update for %s lost a race; re-reading", user.username)
            user = await run_in_threadpool(self.store.get_by_id, user.id)
            if user is None:
                raise AuthenticationError(BAD_CREDENTIALS)
        else:
            raise StoreError("Could not record login attempt under contention.")

        if not verified:
            if new_state.lockout_until is not None:
                remaining = remaining_seconds(new_state.lockout_until, now)
                logger.warning(
                    "Account %s temporarily locked for %ds after %d consecutive failures",
                    user.username,
                    remaining,
                    new_state.violations,
                )
                raise TemporaryLockError(remaining)
            logger.info("Failed login for %s (%d/%d)", user.username, new_state.failed_attempts, self.lockout.threshold)
            raise AuthenticationError(BAD_CREDENTIALS)

        token = create_access_token(user.id, user.username, user.role, user.password_changed_at)
        logger.info("User %s logged in", user.username)
        self._notify_login(user, now, ip, browser)
        return LoginResult(token=token, user=user)

    def _notify_login(self, user: User, now: datetime, ip: str, browser: str) -> None:
        """Schedule the login alert. Never raises into the login response."""
        if self.dispatcher is None or not self.login_alerts_enabled:
            return
        if not user.email or not user.receive_login_alerts:
            logger.debug("Login alert skipped for %s", user.username)
            return
        try:
            self.dispatcher.dispatch(
                LoginAlert(
                    user_id=user.id,
                    email=user.email,
                    username=user.username,
                    login_time=now,
                    ip=ip,
                    browser=browser,
                )
            )
        except RuntimeError:
            logger.exception("Could not schedule login alert for %s", user.username)

    # ------------------------------------------------------------------
    # Session checks
    # ------------------------------------------------------------------

    async def resolve_session(self, token: str, path: str) -> User:
        """Turn a bearer token into the live user record.

        Freshness always comes from the store: a token minted before the last
        password change is rejected, an admin lock applies immediately, and an
        expired password blocks everything except change-password and logout.
        """
        payload = decode_access_token(token)
        if payload is None:
            raise AuthenticationError("Invalid or expired token.", error_code="unauthorized")
        user = await run_in_threadpool(self.store.get_by_id, payload["user_id"])
        if user is None:
            raise AuthenticationError("Invalid or expired token.", error_code="unauthorized")
        if not snapshot_matches(payload, user.password_changed_at):
            raise AuthenticationError("Session is no longer valid. Sign in again.", error_code="session_stale")
        if user.is_locked:
            raise PermanentLockError()
        if not any(marker in path for marker in EXPIRY_EXEMPT_MARKERS):
            if self.policy.is_expired(user.password_changed_at, self.clock()):
                raise PasswordExpiredError(redirect_to="/profile")
        return user

    # ------------------------------------------------------------------
    # Password lifecycle
    # ------------------------------------------------------------------

    async def is_in_history(self, user_id: int, candidate: str) -> bool:
        """True if candidate matches any of the user's recent passwords.

        Fails open: if the history cannot be loaded the change is allowed and
        the failure is logged. Reuse checking must not take password changes
        down with the store.
        """
        try:
            user = await run_in_threadpool(self.store.get_by_id, user_id)
        except StoreError:
            logger.warning("Password history unavailable for user id=%s; skipping reuse check", user_id)
            return False
        if user is None:
            return False
        return await run_in_threadpool(self.policy.is_in_history, user.password_history, candidate)

    async def record_history(self, user_id: int, new_hash: str) -> None:
        """Prepend new_hash to the stored history and persist it."""
        user = await self._require_user(user_id)
        await run_in_threadpool(self.store.update_password_history, user_id, user.password_history.record(new_hash))

    async def change_password(self, user_id: int, old_password: str, new_password: str) -> datetime:
        """Self-service change. Returns the new expiry timestamp."""
        self._check_strength(new_password, "New password is not strong enough.")
        user = await self._require_user(user_id)
        if not await run_in_threadpool(verify_password, old_password, user.hashed_password):
            raise ValidationError("Current password is incorrect.", error_code="wrong_password")
        if await self.is_in_history(user_id, new_password):
            message = f"New password must differ from your last {self.policy.history_size} passwords."
            raise ValidationError(message, [message], error_code="password_reused")

        new_hash = await run_in_threadpool(hash_password, new_password)
        now = self.clock()
        updated = await run_in_threadpool(
            self.store.change_password,
            user_id,
            new_hash,
            now,
            user.password_history.record(new_hash),
            user.hashed_password,
        )
        if not updated:
            raise ConflictError("Password was changed by another request. Try again.")
        logger.info("User %s changed their password", user.username)
        return self.policy.next_expiry(now)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def get_profile(self, user_id: int) -> User:
        return await self._require_user(user_id)

    async def update_profile(self, user_id: int, **fields) -> User:
        email = fields.get("email")
        if email and await run_in_threadpool(self.store.email_in_use, email, user_id):
            raise ConflictError("That email address is already used by another account.")
        await run_in_threadpool(lambda: self.store.update_profile(user_id, **fields))
        return await self._require_user(user_id)

    async def set_login_alerts(self, user_id: int, enabled: bool) -> None:
        if not await run_in_threadpool(self.store.set_login_alerts, user_id, enabled):
            raise NotFoundError("User not found.")

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def list_users(self) -> list[User]:
        return await run_in_threadpool(self.store.list_users)

    async def create_user(self, actor: User, username: str, password: str, role: str = ROLE_USER) -> User:
        if role not in ROLES:
            raise ValidationError(f"Role must be one of {', '.join(ROLES)}.", error_code="invalid_role")
        self._check_strength(password, "Password is not strong enough.")
        if await run_in_threadpool(self.store.get_by_username, username) is not None:
            raise ConflictError("A user with that username already exists.")
        password_hash = await run_in_threadpool(hash_password, password)
        user_id = await run_in_threadpool(self.store.create_user, self._new_account(username, password_hash, role))
        audit_logger.info("%s -> Create %s (ID %s)", actor.username, username, user_id)
        return await self._require_user(user_id)

    async def update_user(self, actor: User, user_id: int, username: str, role: str) -> User:
        if role not in ROLES:
            raise ValidationError(f"Role must be one of {', '.join(ROLES)}.", error_code="invalid_role")
        target = await self._require_user(user_id)
        if target.role == ROLE_ADMIN and role != ROLE_ADMIN:
            if await run_in_threadpool(self.store.count_admins) <= 1:
                raise ValidationError("At least one admin account must remain.", error_code="last_admin")
        existing = await run_in_threadpool(self.store.get_by_username, username)
        if existing is not None and existing.id != user_id:
            raise ConflictError("A user with that username already exists.")
        await run_in_threadpool(lambda: self.store.update_user(user_id, username=username, role=role))
        audit_logger.info("%s -> Update ID %s (%s)", actor.username, user_id, username)
        return await self._require_user(user_id)

    async def set_locked(self, actor: User, user_id: int, locked: bool) -> None:
        if locked and actor.id == user_id:
            raise ValidationError("You cannot lock your own account.", error_code="self_lock")
        if not await run_in_threadpool(self.store.set_locked, user_id, locked):
            raise NotFoundError("User not found.")
        audit_logger.info("%s -> %s ID %s", actor.username, "Lock" if locked else "Unlock", user_id)

    async def reset_password(self, actor: User, user_id: int, new_password: str) -> None:
        """Admin reset: new hash, new changed-at, counters cleared, history updated."""
        self._check_strength(new_password, "New password is not strong enough.")
        target = await self._require_user(user_id)
        new_hash = await run_in_threadpool(hash_password, new_password)
        await run_in_threadpool(
            self.store.change_password,
            user_id,
            new_hash,
            self.clock(),
            target.password_history.record(new_hash),
        )
        audit_logger.info("%s -> ResetPassword %s (ID %s)", actor.username, target.username, user_id)

    async def delete_user(self, actor: User, user_id: int) -> None:
        if actor.id == user_id:
            raise ValidationError("You cannot delete your own account.", error_code="self_delete")
        target = await self._require_user(user_id)
        await run_in_threadpool(self.store.delete_user, user_id)
        audit_logger.info("%s -> Delete %s (ID %s)", actor.username, target.username, user_id)

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    def ensure_admin(self, configured_password: str = "") -> str | None:
        """Create the default "admin" account when no admin exists.

        Runs synchronously from the app lifespan before requests are served.
        Returns the username created, or None if nothing was created. A
        configured password must satisfy the policy; with none configured a
        random strong one is generated and logged once the account exists.
        If a non-admin account already holds the name "admin" the bootstrap
        is skipped with an error log and the service starts without an admin.
        """
        if self.store.has_admin():
            return None
        if self.store.get_by_username("admin") is not None:
            logger.error('No admin account exists and the username "admin" is taken; default admin not created.')
            return None
        generated = not configured_password
        password = configured_password
        if generated:
            password = f"{secrets.token_urlsafe(16)}Aa1!"
        else:
            result = self.policy.validate_strength(password)
            if not result.valid:
                raise ValueError("DEFAULT_ADMIN_PASSWORD violates the password policy: " + "; ".join(result.violations))
        try:
            self.store.create_user(self._new_account("admin", hash_password(password), ROLE_ADMIN))
        except ConflictError:
            logger.error('Default admin not created: username "admin" was taken concurrently.')
            return None
        if generated:
            logger.warning("Generated bootstrap admin password: %s -- change it after first login.", password)
        logger.warning("Default admin created (username: admin). Change its password immediately.")
        return "admin"
