"""
lorabooth — core/retry.py
─────────────────────────────────────────────────────────────────
Retry with exponential backoff for transient SQLite failures.

Only connectivity / availability errors are retried. A constraint
violation or a business error goes straight back to the caller.

Usage:
    balance = await with_retry(lambda: ledger.get_balance(user_id))
─────────────────────────────────────────────────────────────────
"""

import asyncio
import logging
import sqlite3
from typing import Awaitable, Callable, Optional, TypeVar

from lorabooth.core.config import cfg
from lorabooth.core.errors import StorageTransient

logger = logging.getLogger("lorabooth.retry")

T = TypeVar("T")

TRANSIENT_MARKERS = (
    "database is locked",
    "database is busy",
    "unable to open database file",
    "disk i/o error",
)


def is_transient(exc: BaseException) -> bool:
    """True for errors that mean 'storage not available right now'."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    retries:   Optional[int]   = None,
    delay:     Optional[float] = None,
) -> T:
    """
    Run `operation` until it succeeds, retrying transient failures.

    retries=3, delay=0.2 → attempts at 0s, 0.2s, 0.6s, 1.4s.
    Raises StorageTransient once retries are exhausted.
    """
    retries = cfg.DB_RETRIES if retries is None else retries
    delay   = cfg.DB_RETRY_DELAY if delay is None else delay

    attempt = 0
    while True:
        try:
            return await operation()
        except sqlite3.OperationalError as e:
            if not is_transient(e):
                raise
            if attempt >= retries:
                logger.error(f"Storage still unavailable after {attempt + 1} attempts: {e}")
                raise StorageTransient(str(e)) from e
            wait = delay * (2 ** attempt)
            attempt += 1
            logger.warning(f"Transient storage error ({e}), retry {attempt}/{retries} in {wait:.2f}s")
            await asyncio.sleep(wait)
