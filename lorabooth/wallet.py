"""
lorabooth — wallet.py
─────────────────────────────────────────────────────────────────
Credit Ledger
- Relative mutations only (amount = amount ± n), never absolute sets
- Compare-and-decrement debit: balance can't go below zero
- Idempotent per ref_id (job id, batch id, order id)
- Retries transient SQLite failures with backoff
- Pending-debit queue for jobs the provider accepted but we
  couldn't bill yet

Usage:
    ledger = CreditLedger(db_path)
    await ledger.credit(user_id, 500, REASON_PURCHASE, order_id)
    await ledger.try_debit(user_id, 20, REASON_TRAINING, job_id)
─────────────────────────────────────────────────────────────────
"""

import asyncio
import logging
import secrets
import sqlite3
from datetime import datetime, timezone
from typing import List, Optional

from lorabooth.core.config import cfg
from lorabooth.core.database import get_db, transaction
from lorabooth.core.errors import (
    DuplicateTransaction, InsufficientCredit, StorageTransient, ValidationError,
)
from lorabooth.core.retry import with_retry
from lorabooth.models.credit import LedgerEntry, PendingDebit, UserCredit

logger = logging.getLogger("lorabooth.wallet")

# Debit reasons
REASON_TRAINING   = "model_training"
REASON_IMAGE_GEN  = "image_generation"
REASON_PACK_GEN   = "pack_generation"

# Credit reasons
REASON_PURCHASE   = "plan_purchase"
REASON_REFUND     = "refund_job_failed"


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

def _new_id() -> str:
    return secrets.token_urlsafe(12)

def _check_amount(amount: int):
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError(f"Amount must be a positive integer, got {amount!r}")


# ─────────────────────────────────────────────
# CreditLedger
# ─────────────────────────────────────────────
class CreditLedger:
    """
    All balance operations.
    Each public method opens its own connection, unless the caller hands
    in `db` to make the mutation part of a wider transaction.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or cfg.DB_PATH

    # ─── Read ─────────────────────────────────

    async def get_balance(self, user_id: str) -> int:
        """Current balance. 0 if the user never had credits."""
        credit = await self.get_credit(user_id)
        return credit.amount if credit else 0

    async def get_credit(self, user_id: str) -> Optional[UserCredit]:
        async def _read():
            async with get_db(self.db_path) as db:
                async with db.execute(
                    "SELECT * FROM user_credits WHERE user_id = ?", (user_id,)
                ) as cur:
                    return await cur.fetchone()

        row = await with_retry(_read)
        if not row:
            return None
        return UserCredit(
            user_id    = row["user_id"],
            amount     = int(row["amount"]),
            updated_at = row["updated_at"],
        )

    async def get_ledger(
        self,
        user_id: str,
        limit:   int = 50,
        offset:  int = 0,
    ) -> List[LedgerEntry]:
        """Paginated ledger history for a user."""
        async with get_db(self.db_path) as db:
            async with db.execute(
                """SELECT * FROM credit_ledger
                   WHERE user_id = ?
                   ORDER BY created_at DESC
                   LIMIT ? OFFSET ?""",
                (user_id, limit, offset)
            ) as cur:
                rows = await cur.fetchall()
        return [
            LedgerEntry(
                id=r["id"], user_id=r["user_id"], delta=int(r["delta"]),
                reason=r["reason"], ref_id=r["ref_id"],
                balance_after=int(r["balance_after"]), created_at=r["created_at"],
            )
            for r in rows
        ]

    # ─── Write (inside an open transaction) ───

    async def _check_duplicate(self, db, ref_id: Optional[str]) -> bool:
        if not ref_id:
            return False
        async with db.execute(
            "SELECT 1 FROM credit_ledger WHERE ref_id = ?", (ref_id,)
        ) as cur:
            return await cur.fetchone() is not None

    async def _write_ledger(self, db, user_id: str, delta: int,
                            reason: str, ref_id: Optional[str]) -> int:
        async with db.execute(
            "SELECT amount FROM user_credits WHERE user_id = ?", (user_id,)
        ) as cur:
            row = await cur.fetchone()
        balance_after = int(row[0]) if row else 0
        try:
            await db.execute(
                """INSERT INTO credit_ledger
                   (id, user_id, delta, reason, ref_id, balance_after, created_at)
                   VALUES (?,?,?,?,?,?,?)""",
                (_new_id(), user_id, delta, reason, ref_id, balance_after, _now())
            )
        except sqlite3.IntegrityError:
            raise DuplicateTransaction(f"ref_id '{ref_id}' already applied")
        return balance_after

    async def _debit_in(self, db, user_id: str, amount: int,
                        reason: str, ref_id: Optional[str]) -> int:
        if await self._check_duplicate(db, ref_id):
            raise DuplicateTransaction(f"ref_id '{ref_id}' already debited")

        # Compare-and-decrement: the WHERE clause is the balance check
        cur = await db.execute(
            """UPDATE user_credits
               SET amount = amount - ?, updated_at = ?
               WHERE user_id = ? AND amount >= ?""",
            (amount, _now(), user_id, amount)
        )
        if cur.rowcount == 0:
            raise InsufficientCredit(f"Need {amount} credits for {reason}")

        return await self._write_ledger(db, user_id, -amount, reason, ref_id)

    async def _credit_in(self, db, user_id: str, amount: int,
                         reason: str, ref_id: Optional[str]) -> int:
        if await self._check_duplicate(db, ref_id):
            raise DuplicateTransaction(f"ref_id '{ref_id}' already credited")

        now = _now()
        await db.execute(
            """INSERT INTO user_credits (user_id, amount, updated_at)
               VALUES (?,?,?)
               ON CONFLICT(user_id) DO UPDATE SET
                   amount     = amount + excluded.amount,
                   updated_at = excluded.updated_at""",
            (user_id, amount, now)
        )
        return await self._write_ledger(db, user_id, +amount, reason, ref_id)

    # ─── Write ────────────────────────────────

    async def try_debit(
        self,
        user_id: str,
        amount:  int,
        reason:  str,
        ref_id:  Optional[str] = None,
        db=None,
    ) -> int:
        """
        Deduct credits. Returns new balance.
        Raises InsufficientCredit (balance untouched) or DuplicateTransaction.
        """
        _check_amount(amount)
        if db is not None:
            return await self._debit_in(db, user_id, amount, reason, ref_id)

        async def _run():
            async with transaction(self.db_path) as tx:
                return await self._debit_in(tx, user_id, amount, reason, ref_id)

        balance = await with_retry(_run)
        logger.info(f"Debited {amount} from {user_id} ({reason}, ref={ref_id}) → {balance}")
        return balance

    async def credit(
        self,
        user_id: str,
        amount:  int,
        reason:  str,
        ref_id:  Optional[str] = None,
        db=None,
    ) -> int:
        """
        Add credits, creating the balance row on first grant.
        Returns new balance. Raises DuplicateTransaction if ref_id was used.
        """
        _check_amount(amount)
        if db is not None:
            return await self._credit_in(db, user_id, amount, reason, ref_id)

        async def _run():
            async with transaction(self.db_path) as tx:
                return await self._credit_in(tx, user_id, amount, reason, ref_id)

        balance = await with_retry(_run)
        logger.info(f"Credited {amount} to {user_id} ({reason}, ref={ref_id}) → {balance}")
        return balance

    async def refund(self, user_id: str, amount: int, original_ref_id: str) -> int:
        """Give back a job's cost. ref_id is prefixed to keep it unique."""
        return await self.credit(user_id, amount, REASON_REFUND, f"refund_{original_ref_id}")

    # ─── Pending debits ───────────────────────

    async def queue_debit(self, user_id: str, amount: int, reason: str,
                          ref_id: str, error: str):
        """
        Remember a debit we owe but could not apply.
        The provider already accepted the job, so dropping it is not an option.
        """
        async with get_db(self.db_path) as db:
            await db.execute(
                """INSERT OR IGNORE INTO pending_debits
                   (ref_id, user_id, amount, reason, attempts, last_error, created_at)
                   VALUES (?,?,?,?,?,?,?)""",
                (ref_id, user_id, amount, reason, 1, error, _now())
            )
            await db.commit()
        logger.error(
            f"Debit queued for retry: ref={ref_id} user={user_id} "
            f"amount={amount} error={error}"
        )

    async def get_pending_debits(self, limit: int = 50) -> List[PendingDebit]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                """SELECT * FROM pending_debits
                   WHERE settled_at IS NULL
                   ORDER BY created_at ASC
                   LIMIT ?""",
                (limit,)
            ) as cur:
                rows = await cur.fetchall()
        return [
            PendingDebit(
                ref_id=r["ref_id"], user_id=r["user_id"], amount=int(r["amount"]),
                reason=r["reason"], attempts=int(r["attempts"]),
                last_error=r["last_error"], created_at=r["created_at"],
                settled_at=r["settled_at"],
            )
            for r in rows
        ]

    async def has_pending_debit(self, ref_id: str) -> bool:
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT 1 FROM pending_debits WHERE ref_id = ? AND settled_at IS NULL", (ref_id,)
            ) as cur:
                return await cur.fetchone() is not None

    async def settle_pending_debits(self, limit: int = 50) -> int:
        """
        Retry queued debits. Returns how many were settled.
        A debit that already reached the ledger counts as settled.
        """
        settled = 0
        for pending in await self.get_pending_debits(limit):
            try:
                await self.try_debit(
                    pending.user_id, pending.amount, pending.reason, pending.ref_id
                )
            except DuplicateTransaction:
                pass
            except InsufficientCredit as e:
                await self._mark_attempt(pending.ref_id, str(e))
                logger.warning(f"Pending debit {pending.ref_id} still uncovered for {pending.user_id}")
                continue
            except StorageTransient:
                logger.warning("Storage unavailable — stopping debit sweep early")
                break

            await self._mark_settled(pending.ref_id)
            settled += 1

        if settled:
            logger.info(f"Settled {settled} pending debit(s)")
        return settled

    async def _mark_attempt(self, ref_id: str, error: str):
        async with get_db(self.db_path) as db:
            await db.execute(
                """UPDATE pending_debits
                   SET attempts = attempts + 1, last_error = ?
                   WHERE ref_id = ?""",
                (error, ref_id)
            )
            await db.commit()

    async def _mark_settled(self, ref_id: str):
        async with get_db(self.db_path) as db:
            await db.execute(
                "UPDATE pending_debits SET settled_at = ? WHERE ref_id = ?",
                (_now(), ref_id)
            )
            await db.commit()


# ─────────────────────────────────────────────
# Sweeper loop (started from main.py lifespan)
# ─────────────────────────────────────────────
async def debit_sweeper(ledger: CreditLedger, interval: float = cfg.DEBIT_SWEEP_INTERVAL):
    """Periodically settle queued debits until cancelled."""
    logger.info("Debit sweeper started.")
    while True:
        try:
            await ledger.settle_pending_debits()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Debit sweep failed: {e}", exc_info=True)
        await asyncio.sleep(interval)
