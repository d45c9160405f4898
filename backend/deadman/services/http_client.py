"""
Shared httpx.AsyncClient for the email (Resend) and SMS (Telnyx) providers.

The API opens it in lifespan; the standalone sweep script relies on the lazy
creation in get_http_client() and closes it on exit.
"""
from __future__ import annotations

import httpx

from deadman.config import settings

_http_client: httpx.AsyncClient | None = None

USER_AGENT = "deadman-switch/0.1"


def get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=settings.http_timeout_seconds,
            headers={"User-Agent": USER_AGENT},
        )
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None
