"""Plain-text and HTML bodies for reminder, disclosure and admin alert messages."""

from __future__ import annotations

import html as html_mod
import math
from datetime import datetime, timedelta

from deadman.models.enums import ReminderType

DAY_MILESTONES = {ReminderType.PERCENT_25, ReminderType.PERCENT_50, ReminderType.DAYS_7, ReminderType.DAYS_3}


def format_time_remaining(reminder_type: ReminderType | str, remaining: timedelta) -> str:
    """Days for the early milestones, hours for the last day."""
    seconds = max(remaining.total_seconds(), 0)
    try:
        rtype = ReminderType(reminder_type)
    except ValueError:
        rtype = None
    if rtype is None or rtype in DAY_MILESTONES:
        days = math.ceil(seconds / 86400)
        return f"{days} day" if days == 1 else f"{days} days"
    hours = math.ceil(seconds / 3600)
    return f"{hours} hour" if hours == 1 else f"{hours} hours"


def _format_deadline(deadline: datetime) -> str:
    return deadline.strftime("%A, %B %d, %Y at %H:%M UTC")


def build_check_in_url(site_url: str, token: str) -> str:
    return f"{site_url.rstrip('/')}/check-in?token={token}"


def reminder_message(
    *,
    owner_name: str | None,
    secret_title: str,
    reminder_type: ReminderType | str,
    deadline: datetime,
    now: datetime,
    check_in_url: str,
) -> tuple[str, str, str]:
    """Return (subject, text, html) for an owner reminder. Never includes secret content."""
    remaining = format_time_remaining(reminder_type, deadline - now)
    greeting = f"Hi {owner_name}," if owner_name else "Hi,"
    subject = f'Reminder: "{secret_title}" needs a check-in within {remaining}'
    text = (
        f"{greeting}\n\n"
        f'Your secret "{secret_title}" will be disclosed to its recipients in {remaining} '
        f"({_format_deadline(deadline)}) unless you check in.\n\n"
        f"Check in now: {check_in_url}\n\n"
        "If you did not expect this message, you can ignore it."
    )
    html = (
        f"<p>{html_mod.escape(greeting)}</p>"
        f"<p>Your secret <strong>{html_mod.escape(secret_title)}</strong> will be disclosed to its recipients "
        f"in <strong>{html_mod.escape(remaining)}</strong> ({html_mod.escape(_format_deadline(deadline))}) "
        "unless you check in.</p>"
        f'<p><a href="{html_mod.escape(check_in_url, quote=True)}">Check in now</a></p>'
    )
    return subject, text, html


def disclosure_message(
    *,
    recipient_name: str,
    sender: str,
    secret_title: str,
    content: str,
) -> tuple[str, str, str]:
    subject = f"Important message from {sender}"
    text = (
        f"Dear {recipient_name},\n\n"
        f"{sender} set up this message to be delivered to you if they stopped checking in. "
        "They have not checked in, so it is being sent now.\n\n"
        f"Title: {secret_title}\n\n"
        f"{content}\n"
    )
    html = (
        f"<p>Dear {html_mod.escape(recipient_name)},</p>"
        f"<p>{html_mod.escape(sender)} set up this message to be delivered to you if they stopped checking in. "
        "They have not checked in, so it is being sent now.</p>"
        f"<h3>{html_mod.escape(secret_title)}</h3>"
        f'<pre style="white-space: pre-wrap">{html_mod.escape(content)}</pre>'
    )
    return subject, text, html


def admin_alert_message(
    *,
    severity: str,
    email_type: str,
    error_message: str,
    secret_title: str | None,
    recipient: str | None,
    retry_count: int,
    timestamp: datetime,
) -> tuple[str, str]:
    """Return (subject, text) for an escalation to the operator."""
    label = secret_title or email_type
    subject = f"[{severity.upper()}] Delivery Failure - {label}"
    lines = [
        f"Delivery Failure - {severity.upper()}",
        "",
        f"Severity: {severity.upper()}",
        f"Type: {email_type}",
    ]
    if secret_title:
        lines.append(f"Secret: {secret_title}")
    if recipient:
        lines.append(f"Recipient: {recipient}")
    lines += [
        f"Retry Count: {retry_count}",
        f"Timestamp: {timestamp.isoformat()}",
        "",
        "Error Message:",
        error_message,
    ]
    return subject, "\n".join(lines)
