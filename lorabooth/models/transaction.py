"""
lorabooth — models/transaction.py
─────────────────────────────────────────────────────────────────
Payment transactions + subscription grants + plan catalogue.
No logic here — only structure.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass
from enum import Enum


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────
class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED  = "failed"


class Gateway(str, Enum):
    RAZORPAY = "razorpay"
    STRIPE   = "stripe"


class Plan(str, Enum):
    BASIC   = "basic"
    PREMIUM = "premium"


# Prices: rupees for Razorpay, USD cents for Stripe
PLAN_PRICES = {
    Plan.BASIC:   100,
    Plan.PREMIUM: 500,
}

CREDITS_PER_PLAN = {
    Plan.BASIC:   500,
    Plan.PREMIUM: 1000,
}


# ─────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────
TRANSACTIONS_TABLE = """
    CREATE TABLE IF NOT EXISTS transactions (
        id          TEXT PRIMARY KEY,
        user_id     TEXT NOT NULL,
        amount      INTEGER NOT NULL,
        currency    TEXT NOT NULL,
        payment_id  TEXT NOT NULL DEFAULT '',
        order_id    TEXT NOT NULL UNIQUE,
        plan        TEXT NOT NULL,
        gateway     TEXT NOT NULL,
        status      TEXT NOT NULL DEFAULT 'pending',
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_transactions_user
        ON transactions(user_id, created_at DESC);
"""

SUBSCRIPTIONS_TABLE = """
    CREATE TABLE IF NOT EXISTS subscriptions (
        id          TEXT PRIMARY KEY,
        user_id     TEXT NOT NULL,
        plan        TEXT NOT NULL,
        payment_id  TEXT NOT NULL,
        order_id    TEXT NOT NULL UNIQUE,
        created_at  TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_subscriptions_user
        ON subscriptions(user_id, created_at DESC);
"""


# ─────────────────────────────────────────────
# Dataclasses
# ─────────────────────────────────────────────
@dataclass
class Transaction:
    id:         str
    user_id:    str
    amount:     int
    currency:   str
    payment_id: str
    order_id:   str
    plan:       Plan
    gateway:    Gateway
    status:     TransactionStatus
    created_at: str
    updated_at: str

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    @property
    def is_success(self) -> bool:
        return self.status == TransactionStatus.SUCCESS


@dataclass
class Subscription:
    id:         str
    user_id:    str
    plan:       Plan
    payment_id: str
    order_id:   str
    created_at: str


def transaction_from_row(row) -> Transaction:
    return Transaction(
        id         = row["id"],
        user_id    = row["user_id"],
        amount     = int(row["amount"]),
        currency   = row["currency"],
        payment_id = row["payment_id"],
        order_id   = row["order_id"],
        plan       = Plan(row["plan"]),
        gateway    = Gateway(row["gateway"]),
        status     = TransactionStatus(row["status"]),
        created_at = row["created_at"],
        updated_at = row["updated_at"],
    )
