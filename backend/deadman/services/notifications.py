"""
Notification dispatch for reminders, disclosures and admin alerts.

Every dispatcher returns a DispatchResult instead of raising: the engine decides
what to do with a failure from `success` / `retryable`. Providers: Resend for email,
Telnyx for SMS, and a console dispatcher used when no provider key is configured.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Protocol

import httpx

from deadman.config import settings
from deadman.models.enums import Channel
from deadman.services.http_client import get_http_client

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
TELNYX_URL = "https://api.telnyx.com/v2/messages"

JITTER_FACTOR = 0.5

# Telnyx rejects longer bodies; longer messages go out as numbered parts
SMS_MAX_CHARS = 1600

PERMANENT_PATTERNS = (
    "invalid email",
    "email does not exist",
    "domain not found",
    "recipient rejected",
    "401",
    "403",
    "unauthorized",
    "forbidden",
    "invalid api key",
    "blocked recipient",
    "mailbox not found",
    "user unknown",
    "invalid phone",
    "no contact",
)

TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "rate limit",
    "service unavailable",
    "temporarily unavailable",
    "network error",
    "502",
    "503",
    "504",
    "econnrefused",
    "etimedout",
    "connection reset",
    "connection refused",
)


@dataclass(frozen=True)
class Message:
    channel: Channel
    to: str
    subject: str
    text: str
    html: str | None = None
    idempotency_key: str | None = None


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    retryable: bool = False
    error: str | None = None


class Dispatcher(Protocol):
    async def send(self, message: Message) -> DispatchResult: ...


def classify_failure(error_message: str) -> str:
    """Return "permanent" or "transient". Unknown errors are transient (safer to retry)."""
    lowered = (error_message or "").lower()
    if any(p in lowered for p in PERMANENT_PATTERNS):
        return "permanent"
    if any(p in lowered for p in TRANSIENT_PATTERNS):
        return "transient"
    return "transient"


def is_retryable_http_status(status_code: int) -> bool:
    return status_code in (408, 425, 429) or status_code >= 500


def calculate_backoff_delay(
    attempt: int,
    base_delay: float | None = None,
    max_delay: float | None = None,
    rng: random.Random | None = None,
) -> float:
    """min(2^(attempt-1) * base, max) + jitter in [0, base * 0.5). attempt is 1-indexed."""
    base = settings.retry_base_delay_seconds if base_delay is None else base_delay
    cap = settings.retry_max_delay_seconds if max_delay is None else max_delay
    exponential = (2 ** max(attempt - 1, 0)) * base
    jitter = (rng or random).random() * base * JITTER_FACTOR
    return min(exponential, cap) + jitter


def split_sms(text: str, limit: int = SMS_MAX_CHARS) -> list[str]:
    """
    Split text into ordered parts of at most `limit` chars, each prefixed "(i/n) ".
    Parts are cut at fixed offsets so concatenating their bodies gives back the text exactly.
    """
    if len(text) <= limit:
        return [text]
    parts = 1
    while True:
        body = limit - len(f"({parts}/{parts}) ")
        needed = -(-len(text) // body)
        if needed <= parts:
            break
        parts = needed
    chunks = [text[i : i + body] for i in range(0, len(text), body)]
    return [f"({i}/{len(chunks)}) {chunk}" for i, chunk in enumerate(chunks, start=1)]


def _result_from_response(provider: str, response: httpx.Response) -> DispatchResult:
    if response.status_code < 400:
        return DispatchResult(success=True)
    error = f"{provider} error: {response.status_code} {response.text[:500]}"
    return DispatchResult(success=False, retryable=is_retryable_http_status(response.status_code), error=error)


class ResendEmailDispatcher:
    def __init__(self, api_key: str, from_email: str):
        self.api_key = api_key
        self.from_email = from_email

    async def send(self, message: Message) -> DispatchResult:
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        if message.idempotency_key:
            headers["Idempotency-Key"] = message.idempotency_key
        payload = {
            "from": self.from_email,
            "to": [message.to],
            "subject": message.subject,
            "text": message.text,
        }
        if message.html:
            payload["html"] = message.html
        try:
            response = await get_http_client().post(RESEND_URL, headers=headers, json=payload)
        except httpx.HTTPError as e:
            return DispatchResult(success=False, retryable=True, error=f"Resend network error: {e!r}")
        return _result_from_response("Resend", response)


class TelnyxSmsDispatcher:
    def __init__(self, api_key: str, from_number: str):
        self.api_key = api_key
        self.from_number = from_number

    async def send(self, message: Message) -> DispatchResult:
        """Send every part in order; success only when all parts were accepted."""
        parts = split_sms(message.text)
        for i, part in enumerate(parts, start=1):
            try:
                response = await get_http_client().post(
                    TELNYX_URL,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={"from": self.from_number, "to": message.to, "text": part},
                )
            except httpx.HTTPError as e:
                return DispatchResult(
                    success=False, retryable=True, error=f"Telnyx network error on part {i}/{len(parts)}: {e!r}"
                )
            result = _result_from_response("Telnyx", response)
            if not result.success:
                if len(parts) > 1:
                    result = DispatchResult(
                        success=False, retryable=result.retryable, error=f"{result.error} (part {i}/{len(parts)})"
                    )
                return result
        return DispatchResult(success=True)


class ConsoleDispatcher:
    """Development dispatcher: logs the envelope, never the body."""

    async def send(self, message: Message) -> DispatchResult:
        logger.info(
            "[console] would send %s to %s: %s", message.channel.value, message.to, message.subject
        )
        return DispatchResult(success=True)


class ChannelDispatcher:
    """Routes each message to the dispatcher for its channel."""

    def __init__(self, email: Dispatcher, sms: Dispatcher):
        self.email = email
        self.sms = sms

    async def send(self, message: Message) -> DispatchResult:
        if not message.to:
            return DispatchResult(success=False, retryable=False, error="No contact address for message")
        target = self.sms if message.channel == Channel.SMS else self.email
        return await target.send(message)


def get_dispatcher() -> Dispatcher:
    console = ConsoleDispatcher()
    email: Dispatcher = (
        ResendEmailDispatcher(settings.resend_api_key, settings.email_from) if settings.resend_api_key else console
    )
    sms: Dispatcher = (
        TelnyxSmsDispatcher(settings.telnyx_api_key, settings.telnyx_from_number)
        if settings.telnyx_api_key and settings.telnyx_from_number
        else console
    )
    return ChannelDispatcher(email=email, sms=sms)


async def safe_send(dispatcher: Dispatcher, message: Message) -> DispatchResult:
    """Call dispatcher.send and turn unexpected exceptions into a classified failure."""
    try:
        return await dispatcher.send(message)
    except Exception as e:
        error = f"{type(e).__name__}: {e}"
        logger.warning("Dispatcher raised for %s message: %s", message.channel.value, error)
        return DispatchResult(success=False, retryable=classify_failure(error) == "transient", error=error)


async def send_with_retries(
    dispatcher: Dispatcher,
    message: Message,
    max_attempts: int,
) -> tuple[DispatchResult, int]:
    """
    Send with in-process retries and exponential backoff.
    Stops on success or a non-retryable failure. Returns (last result, attempts made).
    """
    attempts = 0
    result = DispatchResult(success=False, retryable=True, error="not attempted")
    while attempts < max(1, max_attempts):
        attempts += 1
        result = await safe_send(dispatcher, message)
        if result.success or not result.retryable:
            break
        if attempts < max_attempts:
            delay = calculate_backoff_delay(attempts)
            logger.info(
                "Send to %s failed (%s); retrying in %.1fs [%s/%s]",
                message.channel.value,
                result.error,
                delay,
                attempts,
                max_attempts,
            )
            await asyncio.sleep(delay)
    return result, attempts
