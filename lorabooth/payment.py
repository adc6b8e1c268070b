"""
lorabooth — payment.py
─────────────────────────────────────────────────────────────────
Credit purchases: Razorpay (INR) + Stripe Checkout (USD)

Flow:
  1. Frontend → POST /api/payments/razorpay/order  (or /create for Stripe)
  2. We create the order with the gateway, store a PENDING transaction
  3. User pays on the gateway's checkout
  4a. Razorpay checkout handler → POST /razorpay/verify (HMAC check)
  4b. Gateway webhook           → POST /webhook | /razorpay/webhook
  5. fulfil(): pending → success + subscription + ledger credit,
     all in ONE SQLite transaction — any failure rolls back all three

Idempotency:
  - Only a PENDING transaction can be fulfilled
  - The ledger credit is keyed by order_id
  - Verify and webhook can both arrive; whoever is second is a no-op

.env:
  RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET / RAZORPAY_WEBHOOK_SECRET
  STRIPE_SECRET_KEY / STRIPE_WEBHOOK_SECRET
─────────────────────────────────────────────────────────────────
"""

import hashlib
import hmac
import json
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from lorabooth.core.config import Config, cfg
from lorabooth.core.database import get_db, transaction
from lorabooth.core.errors import (
    DuplicateTransaction, InvalidSignature, LoraboothError, NoPendingTransaction,
    ProviderUnavailable, ValidationError,
)
from lorabooth.core.retry import with_retry
from lorabooth.core.security import get_current_user
from lorabooth.models.transaction import (
    CREDITS_PER_PLAN, PLAN_PRICES, Gateway, Plan, Subscription, Transaction,
    TransactionStatus, transaction_from_row,
)
from lorabooth.wallet import CreditLedger, REASON_PURCHASE

logger = logging.getLogger("lorabooth.payment")

RAZORPAY_API = "https://api.razorpay.com/v1"
STRIPE_API   = "https://api.stripe.com/v1"

STRIPE_SIGNATURE_TOLERANCE = 300   # seconds
CHECKOUT_THEME_COLOR       = "#3399cc"


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

def _new_id() -> str:
    return secrets.token_urlsafe(12)

def parse_plan(value: Any) -> Plan:
    try:
        return Plan(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown plan: {value!r}")


def razorpay_signature(order_id: str, payment_id: str, secret: str) -> str:
    """hex HMAC-SHA256 of "<order_id>|<payment_id>"."""
    return hmac.new(
        secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256
    ).hexdigest()


def verify_stripe_signature(
    payload:    bytes,
    sig_header: str,
    secret:     str,
    tolerance:  int = STRIPE_SIGNATURE_TOLERANCE,
    now:        Optional[float] = None,
):
    """
    Stripe-Signature: t=<unix>,v1=<hex>[,v1=<hex>...]
    https://stripe.com/docs/webhooks/signatures
    """
    if not sig_header:
        raise InvalidSignature("Missing Stripe-Signature header")

    timestamp  = ""
    signatures = []
    for item in sig_header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)

    try:
        sent_at = int(timestamp)
    except ValueError:
        raise InvalidSignature("Bad Stripe signature timestamp")
    if abs((now if now is not None else time.time()) - sent_at) > tolerance:
        raise InvalidSignature("Stripe signature timestamp outside tolerance")

    signed_payload = f"{timestamp}.".encode() + payload
    expected = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()

    if not any(hmac.compare_digest(expected, s) for s in signatures):
        raise InvalidSignature("Stripe signature mismatch")


# ─────────────────────────────────────────────
# TransactionStore
# ─────────────────────────────────────────────
class TransactionStore:
    """Transactions + subscriptions. Status changes are conditional on the current status."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or cfg.DB_PATH

    async def create(self, user_id: str, amount: int, currency: str,
                     order_id: str, plan: Plan, gateway: Gateway) -> Transaction:
        now = _now()
        tx = Transaction(
            id         = _new_id(),
            user_id    = user_id,
            amount     = amount,
            currency   = currency,
            payment_id = "",
            order_id   = order_id,
            plan       = plan,
            gateway    = gateway,
            status     = TransactionStatus.PENDING,
            created_at = now,
            updated_at = now,
        )

        async def _insert():
            async with get_db(self.db_path) as db:
                await db.execute(
                    """INSERT INTO transactions
                       (id, user_id, amount, currency, payment_id, order_id, plan,
                        gateway, status, created_at, updated_at)
                       VALUES (?,?,?,?,?,?,?,?,?,?,?)""",
                    (tx.id, tx.user_id, tx.amount, tx.currency, tx.payment_id,
                     tx.order_id, tx.plan.value, tx.gateway.value, tx.status.value,
                     tx.created_at, tx.updated_at)
                )
                await db.commit()

        await with_retry(_insert)
        logger.info(f"Transaction created: {order_id} | user={user_id} | {plan.value} via {gateway.value}")
        return tx

    async def get_by_order(self, order_id: str) -> Optional[Transaction]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM transactions WHERE order_id = ?", (order_id,)
            ) as cur:
                row = await cur.fetchone()
        return transaction_from_row(row) if row else None

    async def mark_failed(self, order_id: str, payment_id: str = "") -> bool:
        async with get_db(self.db_path) as db:
            cur = await db.execute(
                """UPDATE transactions
                   SET status = ?, payment_id = ?, updated_at = ?
                   WHERE order_id = ? AND status = ?""",
                (TransactionStatus.FAILED.value, payment_id, _now(), order_id,
                 TransactionStatus.PENDING.value)
            )
            await db.commit()
        return cur.rowcount > 0

    async def list_for_user(self, user_id: str, limit: int = 20,
                            offset: int = 0) -> List[Transaction]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                """SELECT * FROM transactions
                   WHERE user_id = ?
                   ORDER BY created_at DESC
                   LIMIT ? OFFSET ?""",
                (user_id, limit, offset)
            ) as cur:
                rows = await cur.fetchall()
        return [transaction_from_row(r) for r in rows]

    async def latest_subscription(self, user_id: str) -> Optional[Subscription]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                """SELECT * FROM subscriptions
                   WHERE user_id = ?
                   ORDER BY created_at DESC
                   LIMIT 1""",
                (user_id,)
            ) as cur:
                row = await cur.fetchone()
        if not row:
            return None
        return Subscription(
            id         = row["id"],
            user_id    = row["user_id"],
            plan       = Plan(row["plan"]),
            payment_id = row["payment_id"],
            order_id   = row["order_id"],
            created_at = row["created_at"],
        )


# ─────────────────────────────────────────────
# PaymentVerifier
# ─────────────────────────────────────────────
class PaymentVerifier:

    def __init__(
        self,
        ledger: Optional[CreditLedger] = None,
        store:  Optional[TransactionStore] = None,
        config: Config = cfg,
        http:   Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.ledger = ledger or CreditLedger(config.DB_PATH)
        self.store  = store or TransactionStore(self.ledger.db_path)
        self.http   = http or httpx.AsyncClient(timeout=30)

    async def aclose(self):
        await self.http.aclose()

    # ─── Checkout creation ─────────────────────

    async def create_razorpay_order(self, user_id: str, plan: Plan,
                                    prefill: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        if not self.config.razorpay_ready:
            raise ProviderUnavailable("Razorpay not configured. Add RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET.")

        amount_paise = PLAN_PRICES[plan] * 100
        notes = {"userId": user_id, "plan": plan.value}

        try:
            resp = await self.http.post(
                f"{RAZORPAY_API}/orders",
                auth=(self.config.RAZORPAY_KEY_ID, self.config.RAZORPAY_KEY_SECRET),
                json={
                    "amount":   amount_paise,
                    "currency": "INR",
                    "receipt":  f"rcpt_{user_id[:8]}_{_new_id()}",
                    "notes":    notes,
                },
            )
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"Razorpay unreachable: {e}") from e

        if resp.status_code != 200:
            logger.error(f"Razorpay order failed [{resp.status_code}]: {resp.text[:200]}")
            raise ProviderUnavailable("Failed to create Razorpay order")

        order_id = resp.json()["id"]
        await self.store.create(user_id, PLAN_PRICES[plan], "INR", order_id, plan, Gateway.RAZORPAY)

        return {
            "key":         self.config.RAZORPAY_KEY_ID,
            "amount":      amount_paise,
            "currency":    "INR",
            "name":        "LoraBooth",
            "description": f"{plan.value.title()} plan — {CREDITS_PER_PLAN[plan]} credits",
            "order_id":    order_id,
            "prefill":     prefill or {},
            "notes":       notes,
            "theme":       {"color": CHECKOUT_THEME_COLOR},
        }

    async def create_stripe_session(self, user_id: str, plan: Plan,
                                    email: Optional[str] = None) -> Dict[str, Any]:
        if not self.config.stripe_ready:
            raise ProviderUnavailable("Stripe not configured. Add STRIPE_SECRET_KEY.")

        frontend = self.config.FRONTEND_URL.rstrip("/")
        data = {
            "mode":                 "payment",
            "client_reference_id":  user_id,
            "success_url":          f"{frontend}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url":           f"{frontend}/payment/cancel",
            "line_items[0][quantity]":                          1,
            "line_items[0][price_data][currency]":              "usd",
            "line_items[0][price_data][unit_amount]":           PLAN_PRICES[plan],
            "line_items[0][price_data][product_data][name]":    f"{plan.value.title()} plan",
            "metadata[userId]":     user_id,
            "metadata[plan]":       plan.value,
        }
        if email:
            data["customer_email"] = email

        try:
            resp = await self.http.post(
                f"{STRIPE_API}/checkout/sessions",
                headers={"Authorization": f"Bearer {self.config.STRIPE_SECRET_KEY}"},
                data=data,
            )
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"Stripe unreachable: {e}") from e

        if resp.status_code != 200:
            logger.error(f"Stripe session failed [{resp.status_code}]: {resp.text[:200]}")
            raise ProviderUnavailable("Failed to create Stripe checkout session")

        session = resp.json()
        await self.store.create(user_id, PLAN_PRICES[plan], "USD", session["id"], plan, Gateway.STRIPE)
        return {"sessionId": session["id"], "url": session.get("url")}

    # ─── Verification ──────────────────────────

    async def verify_razorpay(
        self,
        user_id:    str,
        payment_id: str,
        order_id:   str,
        signature:  str,
        plan:       Optional[Plan] = None,
    ) -> int:
        """
        Checkout-handler verification. Returns the user's balance afterwards.

        Already fulfilled          → no-op, returns balance
        No pending row for user    → NoPendingTransaction
        Plan differs from the row  → ValidationError
        HMAC mismatch              → row marked failed, InvalidSignature
        """
        if not payment_id or not order_id or not signature:
            raise ValidationError("payment_id, order_id and signature are required")
        if not self.config.RAZORPAY_KEY_SECRET:
            raise ProviderUnavailable("Razorpay not configured.")

        tx = await self.store.get_by_order(order_id)
        if tx is None or tx.user_id != user_id or tx.gateway != Gateway.RAZORPAY:
            raise NoPendingTransaction(f"No transaction for order {order_id}")
        if tx.is_success:
            logger.info(f"Order {order_id} already fulfilled — verify is a no-op")
            return await self.ledger.get_balance(user_id)
        if not tx.is_pending:
            raise NoPendingTransaction(f"Order {order_id} is {tx.status.value}")
        if plan is not None and plan != tx.plan:
            raise ValidationError(f"Plan mismatch for order {order_id}")

        expected = razorpay_signature(order_id, payment_id, self.config.RAZORPAY_KEY_SECRET)
        if not hmac.compare_digest(expected, signature):
            await self.store.mark_failed(order_id, payment_id)
            logger.warning(f"Invalid Razorpay signature for order {order_id} (user={user_id})")
            raise InvalidSignature("Invalid payment signature")

        return await self.fulfil(order_id, payment_id)

    async def fulfil(self, order_id: str, payment_id: str) -> int:
        """
        pending → success, subscription row, ledger credit — one transaction.
        Returns the owner's balance. Already fulfilled → no-op.
        """
        async def _run():
            async with transaction(self.store.db_path) as db:
                async with db.execute(
                    "SELECT * FROM transactions WHERE order_id = ?", (order_id,)
                ) as cur:
                    row = await cur.fetchone()
                if not row:
                    raise NoPendingTransaction(f"No transaction for order {order_id}")

                tx = transaction_from_row(row)
                if tx.is_success:
                    return tx, None
                if not tx.is_pending:
                    raise NoPendingTransaction(f"Order {order_id} is {tx.status.value}")

                now = _now()
                cur = await db.execute(
                    """UPDATE transactions
                       SET status = ?, payment_id = ?, updated_at = ?
                       WHERE order_id = ? AND status = ?""",
                    (TransactionStatus.SUCCESS.value, payment_id, now, order_id,
                     TransactionStatus.PENDING.value)
                )
                if cur.rowcount == 0:
                    return tx, None

                await db.execute(
                    """INSERT INTO subscriptions
                       (id, user_id, plan, payment_id, order_id, created_at)
                       VALUES (?,?,?,?,?,?)""",
                    (_new_id(), tx.user_id, tx.plan.value, payment_id, order_id, now)
                )
                balance = await self.ledger.credit(
                    tx.user_id, CREDITS_PER_PLAN[tx.plan], REASON_PURCHASE,
                    ref_id=order_id, db=db,
                )
                return tx, balance

        try:
            tx, balance = await with_retry(_run)
        except DuplicateTransaction:
            # Ledger already holds this order; the rollback left the row pending
            logger.error(f"Order {order_id} already credited but transaction was pending")
            tx = await self.store.get_by_order(order_id)
            return await self.ledger.get_balance(tx.user_id)

        if balance is None:
            logger.info(f"Order {order_id} already fulfilled — skipping")
            return await self.ledger.get_balance(tx.user_id)

        logger.info(
            f"Payment fulfilled: {order_id} | user={tx.user_id} | "
            f"+{CREDITS_PER_PLAN[tx.plan]} credits → {balance}"
        )
        return balance

    # ─── Webhooks ──────────────────────────────

    async def handle_stripe_event(self, raw: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """
        Signature first, then JSON. After a valid signature the caller
        always answers 200 so Stripe stops retrying.
        """
        secret = self.config.STRIPE_WEBHOOK_SECRET
        if not secret:
            logger.error("STRIPE_WEBHOOK_SECRET not set — refusing webhook")
            raise InvalidSignature("Stripe webhook secret not configured")
        verify_stripe_signature(raw, sig_header or "", secret)

        try:
            event = json.loads(raw)
        except ValueError:
            raise ValidationError("Invalid JSON body")
        if not isinstance(event, dict):
            raise ValidationError("Webhook body must be a JSON object")

        event_type = event.get("type")
        if event_type != "checkout.session.completed":
            return {"received": True, "status": "ignored", "type": event_type}

        session    = (event.get("data") or {}).get("object") or {}
        order_id   = session.get("id", "")
        payment_id = session.get("payment_intent") or order_id
        return await self._fulfil_from_webhook(order_id, payment_id)

    async def handle_razorpay_event(self, raw: bytes, signature: Optional[str]) -> Dict[str, Any]:
        secret = self.config.RAZORPAY_WEBHOOK_SECRET or self.config.RAZORPAY_KEY_SECRET
        if not secret:
            logger.error("Razorpay secret not set — refusing webhook")
            raise InvalidSignature("Razorpay webhook secret not configured")
        if not signature:
            raise InvalidSignature("Missing X-Razorpay-Signature header")
        expected = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature):
            raise InvalidSignature("Invalid webhook signature")

        try:
            event = json.loads(raw)
        except ValueError:
            raise ValidationError("Invalid JSON body")
        if not isinstance(event, dict):
            raise ValidationError("Webhook body must be a JSON object")

        event_type = event.get("event")
        if event_type != "payment.captured":
            return {"received": True, "status": "ignored", "event": event_type}

        entity = (((event.get("payload") or {}).get("payment") or {}).get("entity")) or {}
        return await self._fulfil_from_webhook(entity.get("order_id", ""), entity.get("id", ""))

    async def _fulfil_from_webhook(self, order_id: str, payment_id: str) -> Dict[str, Any]:
        if not order_id:
            return {"received": True, "status": "missing_order"}
        try:
            balance = await self.fulfil(order_id, payment_id)
        except NoPendingTransaction as e:
            logger.warning(f"Webhook for unknown/closed order: {e}")
            return {"received": True, "status": "order_not_found"}
        return {"received": True, "status": "ok", "credits": balance}


# ─────────────────────────────────────────────
# FastAPI Router
# ─────────────────────────────────────────────

router = APIRouter(prefix="/api/payments", tags=["payments"])


class CreatePaymentRequest(BaseModel):
    plan:    str
    gateway: str = Gateway.STRIPE.value
    email:   Optional[str] = None


class RazorpayOrderRequest(BaseModel):
    plan:  str
    name:  Optional[str] = None
    email: Optional[str] = None


class RazorpayVerifyRequest(BaseModel):
    razorpay_payment_id: Optional[str] = None
    razorpay_order_id:   Optional[str] = None
    razorpay_signature:  Optional[str] = None
    plan:                Optional[str] = None


def get_verifier(request: Request) -> PaymentVerifier:
    return request.app.state.verifier


def _http_error(e: LoraboothError) -> HTTPException:
    if e.status_code >= 500:
        logger.error(f"{type(e).__name__}: {e}")
    return HTTPException(e.status_code, str(e))


@router.post("/create")
async def create_payment(
    body:     CreatePaymentRequest,
    user_id:  str             = Depends(get_current_user),
    verifier: PaymentVerifier = Depends(get_verifier),
):
    try:
        plan = parse_plan(body.plan)
        if body.gateway == Gateway.RAZORPAY.value:
            return await verifier.create_razorpay_order(user_id, plan)
        if body.gateway == Gateway.STRIPE.value:
            return await verifier.create_stripe_session(user_id, plan, body.email)
        raise ValidationError(f"Unknown gateway: {body.gateway}")
    except LoraboothError as e:
        raise _http_error(e)


@router.post("/razorpay/order")
async def razorpay_order(
    body:     RazorpayOrderRequest,
    user_id:  str             = Depends(get_current_user),
    verifier: PaymentVerifier = Depends(get_verifier),
):
    prefill = {k: v for k, v in (("name", body.name), ("email", body.email)) if v}
    try:
        return await verifier.create_razorpay_order(user_id, parse_plan(body.plan), prefill)
    except LoraboothError as e:
        raise _http_error(e)


@router.post("/razorpay/verify")
async def razorpay_verify(
    body:     RazorpayVerifyRequest,
    user_id:  str             = Depends(get_current_user),
    verifier: PaymentVerifier = Depends(get_verifier),
):
    try:
        plan = parse_plan(body.plan) if body.plan else None
        credits = await verifier.verify_razorpay(
            user_id    = user_id,
            payment_id = body.razorpay_payment_id or "",
            order_id   = body.razorpay_order_id or "",
            signature  = body.razorpay_signature or "",
            plan       = plan,
        )
    except InvalidSignature as e:
        return JSONResponse(status_code=400, content={"success": False, "error": str(e)})
    except NoPendingTransaction as e:
        logger.error(f"Verify without pending transaction: {e}")
        return JSONResponse(status_code=500, content={"success": False, "error": "Transaction not found"})
    except LoraboothError as e:
        raise _http_error(e)
    return {"success": True, "credits": credits}


@router.post("/webhook")
async def stripe_webhook(
    request:          Request,
    stripe_signature: Optional[str]   = Header(None),
    verifier:         PaymentVerifier = Depends(get_verifier),
):
    raw = await request.body()
    try:
        return await verifier.handle_stripe_event(raw, stripe_signature)
    except InvalidSignature as e:
        logger.warning(f"Stripe webhook rejected: {e}")
        raise HTTPException(400, "Invalid Stripe webhook signature")
    except LoraboothError as e:
        raise _http_error(e)


@router.post("/razorpay/webhook")
async def razorpay_webhook(
    request:              Request,
    x_razorpay_signature: Optional[str]   = Header(None),
    verifier:             PaymentVerifier = Depends(get_verifier),
):
    raw = await request.body()
    try:
        return await verifier.handle_razorpay_event(raw, x_razorpay_signature)
    except InvalidSignature as e:
        logger.warning(f"Razorpay webhook rejected: {e}")
        raise HTTPException(400, "Invalid webhook signature")
    except LoraboothError as e:
        raise _http_error(e)


@router.get("/credits")
async def get_credits(
    user_id:  str             = Depends(get_current_user),
    verifier: PaymentVerifier = Depends(get_verifier),
):
    credit = await verifier.ledger.get_credit(user_id)
    return {
        "credits":     credit.amount if credit else 0,
        "lastUpdated": credit.updated_at if credit else None,
    }


@router.get("/subscription")
async def get_subscription(
    user_id:  str             = Depends(get_current_user),
    verifier: PaymentVerifier = Depends(get_verifier),
):
    sub = await verifier.store.latest_subscription(user_id)
    if not sub:
        return {"subscription": None}
    return {
        "subscription": {
            "plan":      sub.plan.value,
            "orderId":   sub.order_id,
            "paymentId": sub.payment_id,
            "createdAt": sub.created_at,
        }
    }


@router.get("/transactions")
async def get_transactions(
    limit:    int             = Query(20, le=100),
    offset:   int             = Query(0, ge=0),
    user_id:  str             = Depends(get_current_user),
    verifier: PaymentVerifier = Depends(get_verifier),
):
    txs = await verifier.store.list_for_user(user_id, limit, offset)
    return {
        "transactions": [
            {
                "id":        t.id,
                "amount":    t.amount,
                "currency":  t.currency,
                "plan":      t.plan.value,
                "gateway":   t.gateway.value,
                "status":    t.status.value,
                "orderId":   t.order_id,
                "paymentId": t.payment_id,
                "createdAt": t.created_at,
            }
            for t in txs
        ]
    }
