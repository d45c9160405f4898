#!/usr/bin/env python3
"""Run one sweep (overdue triggers, due reminders, stale delivery recovery) and print the summary.
For system cron. Uses DATABASE_URL, ENCRYPTION_KEY and provider keys from the environment / .env.
Usage: python scripts/run_sweep.py"""
import asyncio
import json
import logging
import sys

from deadman.db.session import engine
from deadman.services.http_client import close_http_client
from deadman.services.sweep import run_sweep

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)


async def main() -> int:
    try:
        summary = await run_sweep()
    finally:
        await close_http_client()
        await engine.dispose()
    print(json.dumps(summary.as_dict()))
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
