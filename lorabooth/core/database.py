"""
lorabooth — core/database.py
─────────────────────────────────────────────────────────────────
Single place for:
  - DB connection helpers
  - ALL table CREATE statements (pulled from models/)
  - One init_all_tables() call on startup

Usage:
    from lorabooth.core.database import get_db, transaction, init_all_tables

    # In main.py startup:
    await init_all_tables()

    # Plain reads / single statements:
    async with get_db() as db:
        await db.execute(...)

    # Several writes that must land together:
    async with transaction() as db:
        await db.execute(...)
        await db.execute(...)
─────────────────────────────────────────────────────────────────
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import aiosqlite

from lorabooth.core.config import cfg
from lorabooth.models.credit import (
    USER_CREDITS_TABLE, CREDIT_LEDGER_TABLE, PENDING_DEBITS_TABLE,
)
from lorabooth.models.job import JOBS_TABLE, PACKS_TABLE
from lorabooth.models.transaction import TRANSACTIONS_TABLE, SUBSCRIPTIONS_TABLE

logger = logging.getLogger("lorabooth.database")

BUSY_TIMEOUT = 5.0   # seconds SQLite waits on a write lock before "database is locked"


# ─────────────────────────────────────────────
# Connection helpers
# ─────────────────────────────────────────────
@asynccontextmanager
async def get_db(db_path: Optional[str] = None):
    """
    Use instead of aiosqlite.connect() everywhere.

    async with get_db() as db:
        await db.execute(...)
    """
    async with aiosqlite.connect(db_path or cfg.DB_PATH, timeout=BUSY_TIMEOUT) as db:
        db.row_factory = aiosqlite.Row
        yield db


@asynccontextmanager
async def transaction(db_path: Optional[str] = None):
    """
    BEGIN IMMEDIATE … COMMIT, or ROLLBACK if anything inside raises.

    IMMEDIATE takes the write lock up front, so two requests touching
    the same balance or the same job row never interleave.
    """
    async with aiosqlite.connect(
        db_path or cfg.DB_PATH, timeout=BUSY_TIMEOUT, isolation_level=None
    ) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            await db.execute("ROLLBACK")
            raise
        else:
            await db.execute("COMMIT")


# ─────────────────────────────────────────────
# Init: call once on startup
# ─────────────────────────────────────────────
async def init_all_tables(db_path: Optional[str] = None):
    """
    Creates all tables. Safe to call multiple times (IF NOT EXISTS).
    """
    path = db_path or cfg.DB_PATH
    async with aiosqlite.connect(path) as db:
        await db.execute("PRAGMA journal_mode = WAL")

        await db.executescript(USER_CREDITS_TABLE + CREDIT_LEDGER_TABLE + PENDING_DEBITS_TABLE)
        logger.info("✓ Credit tables")

        await db.executescript(JOBS_TABLE + PACKS_TABLE)
        logger.info("✓ Job tables")

        await db.executescript(TRANSACTIONS_TABLE + SUBSCRIPTIONS_TABLE)
        logger.info("✓ Payment tables")

        await db.commit()

    logger.info(f"✅ Database ready → {path}")
