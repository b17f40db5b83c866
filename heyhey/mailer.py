import asyncio
import logging
import smtplib
from email.message import EmailMessage

from .config import (
    APP_URL,
    PASSWORD_RESET_TTL_SECONDS,
    SMTP_FROM,
    SMTP_HOST,
    SMTP_PASS,
    SMTP_PORT,
    SMTP_TIMEOUT_SECONDS,
    SMTP_USE_SSL,
    SMTP_USER,
)

log = logging.getLogger(__name__)


def describe_duration(seconds: int) -> str:
    """Human wording for a link lifetime, e.g. 3600 -> '1 hour', 1800 -> '30 minutes'."""
    seconds = max(60, int(seconds))
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds % size == 0:
            n = seconds // size
            return f"{n} {unit}" if n == 1 else f"{n} {unit}s"
    n = round(seconds / 60)
    return "1 minute" if n == 1 else f"{n} minutes"


class Mailer:
    """SMTP sender; blocking smtplib calls run in the default executor."""

    def __init__(self, host: str | None = None):
        self.host = SMTP_HOST if host is None else host

    @property
    def configured(self) -> bool:
        return bool(self.host)

    def _send_sync(self, msg: EmailMessage) -> None:
        if SMTP_USE_SSL:
            server: smtplib.SMTP = smtplib.SMTP_SSL(self.host, SMTP_PORT, timeout=SMTP_TIMEOUT_SECONDS)
        else:
            server = smtplib.SMTP(self.host, SMTP_PORT, timeout=SMTP_TIMEOUT_SECONDS)
        with server:
            if not SMTP_USE_SSL:
                server.ehlo()
                if server.has_extn("starttls"):
                    server.starttls()
                    server.ehlo()
            if SMTP_USER:
                server.login(SMTP_USER, SMTP_PASS)
            server.send_message(msg)

    async def send(self, to: str, subject: str, text: str, html: str | None = None) -> bool:
        if not self.configured:
            log.warning("SMTP not configured; skipping email to %s (%s)", to, subject)
            return False
        msg = EmailMessage()
        msg["From"] = SMTP_FROM or SMTP_USER
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(text)
        if html:
            msg.add_alternative(html, subtype="html")
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send_sync, msg)
        except (smtplib.SMTPException, OSError) as exc:
            log.error("Email to %s failed: %s", to, exc)
            return False
        return True

    async def send_password_reset(self, to: str, token: str, ttl_seconds: int | None = None) -> bool:
        link = f"{APP_URL}/reset-password?token={token}"
        valid_for = describe_duration(PASSWORD_RESET_TTL_SECONDS if ttl_seconds is None else ttl_seconds)
        text = (
            "We received a request to reset your HeyHey password.\n\n"
            f"Open this link to choose a new password (valid for {valid_for}):\n{link}\n\n"
            "If you did not request this, you can ignore this email."
        )
        html = (
            "<p>We received a request to reset your HeyHey password.</p>"
            f'<p><a href="{link}">Reset your password</a> (valid for {valid_for}).</p>'
            "<p>If you did not request this, you can ignore this email.</p>"
        )
        return await self.send(to, "Reset your HeyHey password", text, html)
