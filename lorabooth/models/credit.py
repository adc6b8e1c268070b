"""
lorabooth — models/credit.py
─────────────────────────────────────────────────────────────────
Credit balance, ledger and pending-debit tables + dataclasses.
No logic here — only structure.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass
from typing import Optional


# ─────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────
USER_CREDITS_TABLE = """
    CREATE TABLE IF NOT EXISTS user_credits (
        user_id    TEXT PRIMARY KEY,
        amount     INTEGER NOT NULL DEFAULT 0 CHECK (amount >= 0),
        updated_at TEXT NOT NULL
    );
"""

CREDIT_LEDGER_TABLE = """
    CREATE TABLE IF NOT EXISTS credit_ledger (
        id            TEXT PRIMARY KEY,
        user_id       TEXT NOT NULL,
        delta         INTEGER NOT NULL,
        reason        TEXT NOT NULL,
        ref_id        TEXT,
        balance_after INTEGER NOT NULL,
        created_at    TEXT NOT NULL
    );

    CREATE UNIQUE INDEX IF NOT EXISTS idx_ledger_ref_id
        ON credit_ledger(ref_id)
        WHERE ref_id IS NOT NULL;

    CREATE INDEX IF NOT EXISTS idx_ledger_user
        ON credit_ledger(user_id, created_at DESC);
"""

# Debits owed for jobs the provider already accepted
PENDING_DEBITS_TABLE = """
    CREATE TABLE IF NOT EXISTS pending_debits (
        ref_id     TEXT PRIMARY KEY,
        user_id    TEXT NOT NULL,
        amount     INTEGER NOT NULL,
        reason     TEXT NOT NULL,
        attempts   INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at TEXT NOT NULL,
        settled_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_pending_debits_open
        ON pending_debits(created_at)
        WHERE settled_at IS NULL;
"""


# ─────────────────────────────────────────────
# Dataclasses
# ─────────────────────────────────────────────
@dataclass
class UserCredit:
    user_id:    str
    amount:     int
    updated_at: str


@dataclass
class LedgerEntry:
    id:            str
    user_id:       str
    delta:         int
    reason:        str
    ref_id:        Optional[str]
    balance_after: int
    created_at:    str

    @property
    def is_credit(self) -> bool:
        return self.delta > 0

    @property
    def is_debit(self) -> bool:
        return self.delta < 0


@dataclass
class PendingDebit:
    ref_id:     str
    user_id:    str
    amount:     int
    reason:     str
    attempts:   int
    last_error: Optional[str]
    created_at: str
    settled_at: Optional[str]
