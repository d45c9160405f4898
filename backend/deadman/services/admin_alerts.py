"""
Operator escalation for delivery and decryption failures.

Severity levels:
- critical: disclosure or decryption failures (a recipient will not get the secret)
- high: reminder failures after more than 3 retries
- medium: reminder failures with 3 or fewer retries
- low: everything else (verification, admin channel)

notify_admin() is fire-and-forget: it persists the alert in its own session, emails
ADMIN_EMAIL when configured, and never raises into the sweep.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from deadman.config import settings
from deadman.db.session import async_session_maker
from deadman.db.types import utcnow
from deadman.models.admin_notification import AdminNotification
from deadman.models.enums import Channel
from deadman.services.notifications import Dispatcher, Message, get_dispatcher, safe_send
from deadman.services.templates import admin_alert_message

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


EMAIL_TYPE_REMINDER = "reminder"
EMAIL_TYPE_DISCLOSURE = "disclosure"
EMAIL_TYPE_DECRYPTION = "decryption"


def calculate_severity(email_type: str, retry_count: int = 0) -> Severity:
    if email_type in (EMAIL_TYPE_DISCLOSURE, EMAIL_TYPE_DECRYPTION):
        return Severity.CRITICAL
    if email_type == EMAIL_TYPE_REMINDER and retry_count > 3:
        return Severity.HIGH
    if email_type == EMAIL_TYPE_REMINDER:
        return Severity.MEDIUM
    return Severity.LOW


@dataclass
class AdminAlert:
    email_type: str
    error_message: str
    secret_title: str | None = None
    secret_id: str | None = None
    recipient: str | None = None
    retry_count: int = 0
    severity: Severity | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def resolved_severity(self) -> Severity:
        return self.severity or calculate_severity(self.email_type, self.retry_count)


async def notify_admin(alert: AdminAlert, dispatcher: Dispatcher | None = None) -> None:
    severity = alert.resolved_severity()
    subject, text = admin_alert_message(
        severity=severity.value,
        email_type=alert.email_type,
        error_message=alert.error_message,
        secret_title=alert.secret_title,
        recipient=alert.recipient,
        retry_count=alert.retry_count,
        timestamp=alert.timestamp,
    )
    log = logger.error if severity == Severity.CRITICAL else logger.warning
    log("Admin alert [%s] %s: %s", severity.value, alert.email_type, alert.error_message)

    try:
        async with async_session_maker() as session:
            session.add(
                AdminNotification(
                    type=alert.email_type,
                    severity=severity.value,
                    title=subject,
                    message=text,
                    details={
                        "secret_id": alert.secret_id,
                        "recipient": alert.recipient,
                        "retry_count": alert.retry_count,
                    },
                )
            )
            await session.commit()
    except Exception as e:
        logger.exception("Admin alert: failed to persist notification: %s", e)

    if not settings.admin_email:
        return
    result = await safe_send(
        dispatcher or get_dispatcher(),
        Message(channel=Channel.EMAIL, to=settings.admin_email, subject=subject, text=text),
    )
    if not result.success:
        logger.warning("Admin alert: email to operator failed: %s", result.error)
