"""
tests/test_service.py -- AuthService behaviour against a real store and a fake clock.

Covers:
  - login(): lockout scenario end to end, generic 401, admin lock, CAS retries
  - resolve_session(): stale tokens, expired passwords, exempt paths
  - password lifecycle: reuse window, wrong old password, fail-open history
  - administration guards and default admin bootstrap
  - login alerts scheduled only for opted-in users with an email
"""

from __future__ import annotations

from datetime import timedelta

import pytest

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
from auth.lockout import LockoutPolicy
from auth.models import ROLE_ADMIN
from auth.notify import NotificationDispatcher
from auth.password_policy import PasswordPolicy
from auth.service import AuthService
from auth.tokens import verify_password
from tests.conftest import ADMIN_PASSWORD, STRONG_PASSWORD, RecordingNotifier, add_user, run

WRONG = "Wrong-Horse-99!"


def _fail_login(service: AuthService, username: str = "alice") -> Exception:
    with pytest.raises((AuthenticationError, TemporaryLockError)) as excinfo:
        run(service.login(username, WRONG))
    return excinfo.value


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_register_seeds_history(self, service, store) -> None:
        uid = run(service.register("alice", STRONG_PASSWORD))
        user = store.get_by_id(uid)
        assert user.role == "user"
        assert user.password_history.hashes == (user.hashed_password,)
        assert user.password_changed_at == service.clock()

    def test_weak_password_lists_violations(self, service) -> None:
        with pytest.raises(ValidationError) as excinfo:
            run(service.register("alice", "short"))
        assert excinfo.value.error_code == "weak_password"
        assert excinfo.value.violations

    @pytest.mark.parametrize("username", ["ab", "has space", "x" * 31, "semi;colon"])
    def test_bad_username(self, service, username: str) -> None:
        with pytest.raises(ValidationError) as excinfo:
            run(service.register(username, STRONG_PASSWORD))
        assert excinfo.value.error_code == "invalid_username"

    def test_duplicate_username(self, service) -> None:
        run(service.register("alice", STRONG_PASSWORD))
        with pytest.raises(ConflictError):
            run(service.register("alice", STRONG_PASSWORD))


# ---------------------------------------------------------------------------
# Login and lockout
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success_returns_token(self, service, store) -> None:
        add_user(store)
        result = run(service.login("alice", STRONG_PASSWORD))
        assert result.token
        assert result.user.username == "alice"

    def test_unknown_user_gets_generic_message(self, service, store) -> None:
        add_user(store)
        with pytest.raises(AuthenticationError) as unknown:
            run(service.login("nobody", WRONG))
        wrong = _fail_login(service)
        assert unknown.value.message == wrong.message

    def test_lockout_scenario(self, service, store, clock) -> None:
        add_user(store)
        for _ in range(4):
            assert isinstance(_fail_login(service), AuthenticationError)
        fifth = _fail_login(service)
        assert isinstance(fifth, TemporaryLockError)
        assert fifth.remaining_seconds == 30

        clock.advance(10)
        with pytest.raises(TemporaryLockError) as excinfo:
            run(service.login("alice", STRONG_PASSWORD))
        assert 0 < excinfo.value.remaining_seconds < 30

        clock.advance(excinfo.value.remaining_seconds + 1)
        run(service.login("alice", STRONG_PASSWORD))
        user = store.get_by_username("alice")
        assert user.failed_login_attempts == 0
        assert user.lockout_until is None

    def test_locked_login_does_not_touch_counters(self, service, store) -> None:
        add_user(store)
        for _ in range(5):
            _fail_login(service)
        before = store.get_by_username("alice")
        _fail_login(service)
        after = store.get_by_username("alice")
        assert (after.failed_login_attempts, after.lockout_until) == (before.failed_login_attempts, before.lockout_until)

    def test_violation_after_expiry_escalates(self, service, store, clock) -> None:
        add_user(store)
        for _ in range(5):
            _fail_login(service)
        clock.advance(31)
        err = _fail_login(service)
        assert isinstance(err, TemporaryLockError)
        assert err.remaining_seconds == 60
        assert store.get_by_username("alice").failed_login_attempts == 5

    def test_admin_lock_beats_correct_password(self, service, store) -> None:
        user = add_user(store)
        store.set_locked(user.id, True)
        with pytest.raises(PermanentLockError):
            run(service.login("alice", STRONG_PASSWORD))
        after = store.get_by_id(user.id)
        assert after.failed_login_attempts == 0
        assert after.lockout_until is None

    def test_success_resets_partial_counter(self, service, store) -> None:
        add_user(store)
        for _ in range(3):
            _fail_login(service)
        run(service.login("alice", STRONG_PASSWORD))
        assert store.get_by_username("alice").failed_login_attempts == 0

    def test_lost_race_is_retried_from_fresh_state(self, service, store, monkeypatch) -> None:
        user = add_user(store)
        real = store.apply_lockout_transition
        calls = {"n": 0}

        def racing(user_id, expected, new):
            calls["n"] += 1
            if calls["n"] == 1:
                # Another request records its failure first.
                assert real(user_id, expected, new)
                return False
            return real(user_id, expected, new)

        monkeypatch.setattr(store, "apply_lockout_transition", racing)
        _fail_login(service)
        assert calls["n"] == 2
        assert store.get_by_id(user.id).failed_login_attempts == 2

    def test_endless_contention_raises_store_error(self, service, store, monkeypatch) -> None:
        add_user(store)
        monkeypatch.setattr(store, "apply_lockout_transition", lambda *args: False)
        with pytest.raises(StoreError):
            run(service.login("alice", WRONG))

    def test_progressive_escalation_from_settings(self, store, clock) -> None:
        service = AuthService(store, PasswordPolicy(), LockoutPolicy(escalation="progressive"), clock=clock)
        add_user(store)
        for _ in range(5):
            _fail_login(service)
        seen = []
        for _ in range(3):
            clock.advance(3601)
            seen.append(_fail_login(service).remaining_seconds)
        assert seen == [60, 300, 900]


# ---------------------------------------------------------------------------
# Session resolution
# ---------------------------------------------------------------------------


class TestResolveSession:
    def test_valid_token(self, service, store) -> None:
        add_user(store)
        token = run(service.login("alice", STRONG_PASSWORD)).token
        assert run(service.resolve_session(token, "/api/auth/profile")).username == "alice"

    def test_garbage_token(self, service) -> None:
        with pytest.raises(AuthenticationError) as excinfo:
            run(service.resolve_session("not-a-jwt", "/api/auth/profile"))
        assert excinfo.value.error_code == "unauthorized"

    def test_token_goes_stale_after_password_change(self, service, store, clock) -> None:
        user = add_user(store, password_changed_at=clock.now)
        token = run(service.login("alice", STRONG_PASSWORD)).token
        clock.advance(5)
        run(service.change_password(user.id, STRONG_PASSWORD, "Fresh-Horse-77!"))
        with pytest.raises(AuthenticationError) as excinfo:
            run(service.resolve_session(token, "/api/auth/profile"))
        assert excinfo.value.error_code == "session_stale"

    def test_admin_lock_applies_to_live_tokens(self, service, store) -> None:
        user = add_user(store)
        token = run(service.login("alice", STRONG_PASSWORD)).token
        store.set_locked(user.id, True)
        with pytest.raises(PermanentLockError):
            run(service.resolve_session(token, "/api/auth/profile"))

    def test_expired_password_blocks_all_but_exempt_paths(self, service, store, clock) -> None:
        add_user(store, password_changed_at=clock.now)
        token = run(service.login("alice", STRONG_PASSWORD)).token
        clock.advance(timedelta(days=91).total_seconds())

        with pytest.raises(PasswordExpiredError) as excinfo:
            run(service.resolve_session(token, "/api/auth/profile"))
        assert excinfo.value.detail == {"redirect_to": "/profile"}

        for path in ("/api/auth/change-password", "/api/auth/logout"):
            assert run(service.resolve_session(token, path)).username == "alice"

    def test_expiry_boundary(self, service, store, clock) -> None:
        add_user(store, password_changed_at=clock.now)
        token = run(service.login("alice", STRONG_PASSWORD)).token
        clock.advance(timedelta(days=90).total_seconds())
        run(service.resolve_session(token, "/api/auth/profile"))


# ---------------------------------------------------------------------------
# Password lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.usefixtures("fast_hashing")
class TestChangePassword:
    def test_change_returns_next_expiry(self, service, store, clock) -> None:
        user = add_user(store)
        expiry = run(service.change_password(user.id, STRONG_PASSWORD, "Fresh-Horse-77!"))
        assert expiry == clock.now + timedelta(days=90)
        stored = store.get_by_id(user.id)
        assert verify_password("Fresh-Horse-77!", stored.hashed_password)
        assert len(stored.password_history) == 2

    def test_reuse_of_initial_password_rejected(self, service, store) -> None:
        uid = run(service.register("alice", STRONG_PASSWORD))
        run(service.change_password(uid, STRONG_PASSWORD, "Fresh-Horse-77!"))
        with pytest.raises(ValidationError) as excinfo:
            run(service.change_password(uid, "Fresh-Horse-77!", STRONG_PASSWORD))
        assert excinfo.value.error_code == "password_reused"
        assert verify_password("Fresh-Horse-77!", store.get_by_id(uid).hashed_password)

    def test_password_outside_window_is_accepted(self, service, store) -> None:
        uid = run(service.register("alice", STRONG_PASSWORD))
        current = STRONG_PASSWORD
        for i in range(1, 6):
            nxt = f"Rotation-Pass-{i}!"
            run(service.change_password(uid, current, nxt))
            current = nxt
        run(service.change_password(uid, current, STRONG_PASSWORD))

    def test_wrong_old_password(self, service, store) -> None:
        user = add_user(store)
        with pytest.raises(ValidationError) as excinfo:
            run(service.change_password(user.id, WRONG, "Fresh-Horse-77!"))
        assert excinfo.value.error_code == "wrong_password"

    def test_weak_new_password(self, service, store) -> None:
        user = add_user(store)
        with pytest.raises(ValidationError) as excinfo:
            run(service.change_password(user.id, STRONG_PASSWORD, "weak"))
        assert excinfo.value.error_code == "weak_password"

    def test_change_clears_lockout_counters(self, service, store) -> None:
        user = add_user(store)
        for _ in range(3):
            _fail_login(service)
        run(service.change_password(user.id, STRONG_PASSWORD, "Fresh-Horse-77!"))
        assert store.get_by_id(user.id).failed_login_attempts == 0

    def test_history_lookup_fails_open(self, service, store, monkeypatch) -> None:
        user = add_user(store)

        def broken(user_id):
            raise StoreError("Credential store unavailable.")

        monkeypatch.setattr(store, "get_by_id", broken)
        assert run(service.is_in_history(user.id, STRONG_PASSWORD)) is False

    def test_record_history(self, service, store) -> None:
        user = add_user(store)
        run(service.record_history(user.id, "$2b$12$" + "x" * 53))
        assert len(store.get_by_id(user.id).password_history) == 2

    def test_record_history_unknown_user(self, service) -> None:
        with pytest.raises(NotFoundError):
            run(service.record_history(404, "hash"))

    def test_concurrent_change_loses_with_conflict(self, service, store, monkeypatch) -> None:
        user = add_user(store)
        monkeypatch.setattr(store, "change_password", lambda *args, **kwargs: False)
        with pytest.raises(ConflictError):
            run(service.change_password(user.id, STRONG_PASSWORD, "Fresh-Horse-77!"))


# ---------------------------------------------------------------------------
# Profile and administration
# ---------------------------------------------------------------------------


class TestProfileAndAdmin:
    def test_email_must_be_unique(self, service, store) -> None:
        add_user(store, "bob", email="shared@example.com")
        alice = add_user(store)
        with pytest.raises(ConflictError):
            run(service.update_profile(alice.id, email="shared@example.com"))

    def test_update_profile(self, service, store) -> None:
        alice = add_user(store)
        updated = run(service.update_profile(alice.id, full_name="Alice Liddell", email="alice@example.com"))
        assert updated.full_name == "Alice Liddell"
        assert updated.email == "alice@example.com"

    def test_admin_cannot_lock_or_delete_self(self, service, store) -> None:
        admin = add_user(store, "boss", ADMIN_PASSWORD, role=ROLE_ADMIN)
        with pytest.raises(ValidationError):
            run(service.set_locked(admin, admin.id, True))
        with pytest.raises(ValidationError):
            run(service.delete_user(admin, admin.id))

    def test_reset_password_clears_lock_counters(self, service, store) -> None:
        admin = add_user(store, "boss", ADMIN_PASSWORD, role=ROLE_ADMIN)
        alice = add_user(store)
        for _ in range(5):
            _fail_login(service)
        run(service.reset_password(admin, alice.id, "Reset-Horse-55!"))
        run(service.login("alice", "Reset-Horse-55!"))

    def test_last_admin_cannot_be_demoted(self, service, store) -> None:
        admin = add_user(store, "boss", ADMIN_PASSWORD, role=ROLE_ADMIN)
        with pytest.raises(ValidationError) as excinfo:
            run(service.update_user(admin, admin.id, "boss", "user"))
        assert excinfo.value.error_code == "last_admin"
        assert store.count_admins() == 1

    def test_demotion_allowed_while_another_admin_remains(self, service, store) -> None:
        admin = add_user(store, "boss", ADMIN_PASSWORD, role=ROLE_ADMIN)
        deputy = add_user(store, "deputy", ADMIN_PASSWORD, role=ROLE_ADMIN)
        assert run(service.update_user(admin, deputy.id, "deputy", "user")).role == "user"
        assert store.count_admins() == 1

    def test_invalid_role_rejected(self, service, store) -> None:
        admin = add_user(store, "boss", ADMIN_PASSWORD, role=ROLE_ADMIN)
        with pytest.raises(ValidationError):
            run(service.create_user(admin, "carol", STRONG_PASSWORD, role="root"))

    def test_missing_user(self, service, store) -> None:
        admin = add_user(store, "boss", ADMIN_PASSWORD, role=ROLE_ADMIN)
        with pytest.raises(NotFoundError):
            run(service.set_locked(admin, 404, True))
        with pytest.raises(NotFoundError):
            run(service.delete_user(admin, 404))


class TestEnsureAdmin:
    def test_generates_admin_once(self, service, store) -> None:
        assert service.ensure_admin() == "admin"
        assert store.has_admin()
        assert service.ensure_admin() is None

    def test_configured_password_is_used(self, service) -> None:
        service.ensure_admin(ADMIN_PASSWORD)
        assert run(service.login("admin", ADMIN_PASSWORD)).user.role == ROLE_ADMIN

    def test_weak_configured_password_refused(self, service, store) -> None:
        with pytest.raises(ValueError):
            service.ensure_admin("admin")
        assert not store.has_admin()

    def test_taken_admin_username_is_skipped(self, service, store, caplog) -> None:
        holder = add_user(store, "admin")
        with caplog.at_level("WARNING", logger="loginguard.auth"):
            assert service.ensure_admin() is None
        assert "Generated bootstrap admin password" not in caplog.text
        assert not store.has_admin()
        assert store.get_by_id(holder.id).role == "user"

    def test_password_logged_only_after_insert(self, service, store, caplog, monkeypatch) -> None:
        def taken(user):
            raise ConflictError("A user with that username already exists.")

        monkeypatch.setattr(store, "create_user", taken)
        with caplog.at_level("WARNING", logger="loginguard.auth"):
            assert service.ensure_admin() is None
        assert "Generated bootstrap admin password" not in caplog.text

    def test_generated_password_is_logged(self, service, caplog) -> None:
        with caplog.at_level("WARNING", logger="loginguard.auth"):
            service.ensure_admin()
        assert "Generated bootstrap admin password" in caplog.text

    def test_sole_admin_keeps_role_across_restart(self, service, store) -> None:
        admin = add_user(store, "admin", ADMIN_PASSWORD, role=ROLE_ADMIN)
        with pytest.raises(ValidationError) as excinfo:
            run(service.update_user(admin, admin.id, "admin", "user"))
        assert excinfo.value.error_code == "last_admin"
        assert store.get_by_id(admin.id).role == ROLE_ADMIN
        assert service.ensure_admin() is None


# ---------------------------------------------------------------------------
# Login alerts
# ---------------------------------------------------------------------------


class TestLoginAlerts:
    def _service(self, store, clock, notifier, **kwargs) -> tuple[AuthService, NotificationDispatcher]:
        dispatcher = NotificationDispatcher(notifier, store, max_attempts=1, backoff_seconds=0)
        return AuthService(store, PasswordPolicy(), LockoutPolicy(), dispatcher, clock=clock, **kwargs), dispatcher

    def _login_and_drain(self, service, dispatcher) -> None:
        async def scenario():
            await service.login("alice", STRONG_PASSWORD, ip="203.0.113.9", browser="pytest")
            await dispatcher.drain()

        run(scenario())

    def test_alert_sent_and_stamped(self, store, clock) -> None:
        notifier = RecordingNotifier()
        service, dispatcher = self._service(store, clock, notifier)
        user = add_user(store, email="alice@example.com")
        self._login_and_drain(service, dispatcher)
        assert [a.ip for a in notifier.sent] == ["203.0.113.9"]
        assert store.get_by_id(user.id).last_login_notification is not None

    def test_no_email_no_alert(self, store, clock) -> None:
        notifier = RecordingNotifier()
        service, dispatcher = self._service(store, clock, notifier)
        add_user(store)
        self._login_and_drain(service, dispatcher)
        assert notifier.sent == []

    def test_opted_out_no_alert(self, store, clock) -> None:
        notifier = RecordingNotifier()
        service, dispatcher = self._service(store, clock, notifier)
        add_user(store, email="alice@example.com", receive_login_alerts=False)
        self._login_and_drain(service, dispatcher)
        assert notifier.sent == []

    def test_globally_disabled(self, store, clock) -> None:
        notifier = RecordingNotifier()
        service, dispatcher = self._service(store, clock, notifier, login_alerts_enabled=False)
        add_user(store, email="alice@example.com")
        self._login_and_drain(service, dispatcher)
        assert notifier.sent == []
