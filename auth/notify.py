"""
auth/notify.py -- Login alert side channel.

Pattern: fire-and-forget with an owner. The login route calls
NotificationDispatcher.dispatch(), which schedules a detached asyncio.Task
and returns immediately. The task retries delivery with exponential backoff
and logs every outcome. Nothing it does can change the login response that
triggered it: delivery errors are captured and logged, never raised.

The dispatcher keeps a reference to every pending task (asyncio only holds
weak references, so an unowned task can be garbage-collected mid-flight) and
cancels whatever is still pending on shutdown via aclose().

SmtpLoginNotifier is a thin smtplib transport. With no SMTP host configured it
logs the alert instead of sending (dev mode), so local runs work unchanged.
The dispatcher counts a dev-mode alert as skipped: it is not a delivery and
last_login_notification is not stamped.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import html
import logging
import smtplib
import ssl
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import TYPE_CHECKING, Protocol

from starlette.concurrency import run_in_threadpool

if TYPE_CHECKING:
    from auth.store import UserStore
    from core.config import Settings

logger = logging.getLogger("loginguard.notify")


@dataclass(frozen=True)
class LoginAlert:
    user_id: int
    email: str
    username: str
    login_time: datetime
    ip: str
    browser: str


class LoginNotifier(Protocol):
    # False means send() only logs the alert (no transport configured).
    is_configured: bool

    def send(self, alert: LoginAlert) -> bool: ...


def _redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class SmtpLoginNotifier:
    """Deliver login alerts over SMTP. Blocking; run it off the event loop."""

    def __init__(
        self,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "",
        timeout: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> SmtpLoginNotifier:
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.smtp_from,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(self, alert: LoginAlert) -> tuple[str, str]:
        when = alert.login_time.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        text_body = (
            f"Hello {alert.username},\n\n"
            f"A new sign-in to your account was detected.\n\n"
            f"Time:    {when}\n"
            f"IP:      {alert.ip}\n"
            f"Browser: {alert.browser}\n\n"
            "If this was not you, change your password immediately."
        )
        html_body = (
            f"<p>Hello {html.escape(alert.username)},</p>"
            "<p>A new sign-in to your account was detected.</p>"
            "<ul>"
            f"<li>Time: {html.escape(when)}</li>"
            f"<li>IP: {html.escape(alert.ip)}</li>"
            f"<li>Browser: {html.escape(alert.browser)}</li>"
            "</ul>"
            "<p>If this was not you, change your password immediately.</p>"
        )
        return text_body, html_body

    def send(self, alert: LoginAlert) -> bool:
        """Send one alert. Raises on transport failure so the dispatcher can retry."""
        text_body, html_body = self._render(alert)
        subject = f"New sign-in - {alert.username}"
        if not self.is_configured:
            logger.info("Login alert (dev mode, not sent) to=%s subject=%r", _redact_email(alert.email), subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = alert.email
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
            if self.smtp_use_tls:
                server.starttls(context=ssl.create_default_context())
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, [alert.email], msg.as_string())
        logger.info("Login alert sent to %s", _redact_email(alert.email))
        return True


class NotificationDispatcher:
    """Own the detached delivery tasks for login alerts.

    Args:
        notifier:        Transport with a blocking send(alert) -> bool.
        store:           Used to stamp last_login_notification on success.
                         Optional; stamping failures are logged only.
        max_attempts:    Total delivery attempts per alert.
        backoff_seconds: Delay before the second attempt; doubles each retry.
        sleep:           Injected for tests.
    """

    def __init__(
        self,
        notifier: LoginNotifier,
        store: UserStore | None = None,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], object] = asyncio.sleep,
    ) -> None:
        self.notifier = notifier
        self.store = store
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()
        self.delivered = 0
        self.failed = 0
        self.skipped = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, alert: LoginAlert) -> asyncio.Task:
        """Schedule delivery and return at once. Must be called from the event loop."""
        task = asyncio.get_running_loop().create_task(self._deliver(alert), name=f"login-alert-{alert.user_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, alert: LoginAlert) -> bool:
        delay = self.backoff_seconds
        for attempt in range(1, self.max_attempts + 1):
            try:
                sent = await run_in_threadpool(self.notifier.send, alert)
            except Exception as exc:  # transport errors are advisory; never propagate
                logger.warning(
                    "Login alert attempt %d/%d for user id=%s failed: %s",
                    attempt,
                    self.max_attempts,
                    alert.user_id,
                    exc,
                )
                sent = False
            if sent and not self.notifier.is_configured:
                # Logged only; nothing reached the user, so nothing to stamp.
                self.skipped += 1
                return False
            if sent:
                self.delivered += 1
                await self._stamp(alert)
                return True
            if attempt < self.max_attempts:
                await self._sleep(delay)
                delay *= 2
        self.failed += 1
        logger.error("Login alert for user id=%s abandoned after %d attempts", alert.user_id, self.max_attempts)
        return False

    async def _stamp(self, alert: LoginAlert) -> None:
        if self.store is None:
            return
        try:
            await run_in_threadpool(self.store.stamp_login_notification, alert.user_id, alert.login_time)
        except Exception:
            logger.exception("Could not record login alert delivery for user id=%s", alert.user_id)

    async def drain(self) -> None:
        """Wait for every pending delivery to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel pending deliveries. Called from the app lifespan on shutdown."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d pending login alert(s) on shutdown", len(tasks))
