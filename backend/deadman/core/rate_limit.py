"""Shared slowapi limiter: global default per client address, tighter limits on public endpoints."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from deadman.config import settings

CHECK_IN_LIMIT = "10/minute"

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.rate_limit_default],
    enabled=settings.rate_limit_enabled,
)
