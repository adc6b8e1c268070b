import base64
import hashlib
import hmac
import json
import time

import httpx
import pytest

from lorabooth.core.database import get_db
from lorabooth.core.errors import (
    InvalidSignature, NoPendingTransaction, ProviderUnavailable, ValidationError,
)
from lorabooth.models.transaction import Gateway, Plan, TransactionStatus
from lorabooth.payment import (
    PaymentVerifier, TransactionStore, parse_plan, razorpay_signature, verify_stripe_signature,
)


class FakeGateways:
    """Razorpay + Stripe HTTP behind one MockTransport."""

    def __init__(self):
        self.requests = []
        self.status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status != 200:
            return httpx.Response(self.status, json={"error": "down"})
        if request.url.host == "api.razorpay.com":
            return httpx.Response(200, json={"id": f"order_{len(self.requests)}", "status": "created"})
        return httpx.Response(200, json={"id": f"cs_test_{len(self.requests)}", "url": "https://checkout.stripe.com/x"})


@pytest.fixture
def gateways():
    return FakeGateways()


@pytest.fixture
def verifier(ledger, test_config, gateways):
    test_config.DB_PATH = ledger.db_path
    return PaymentVerifier(
        ledger,
        TransactionStore(ledger.db_path),
        config = test_config,
        http   = httpx.AsyncClient(transport=httpx.MockTransport(gateways)),
    )


async def _order(verifier, plan=Plan.BASIC, user_id="user_1") -> str:
    order = await verifier.create_razorpay_order(user_id, plan)
    return order["order_id"]


async def _count(db_path, table):
    async with get_db(db_path) as db:
        async with db.execute(f"SELECT COUNT(*) FROM {table}") as cur:
            return (await cur.fetchone())[0]


# ─────────────────────────────────────────────
# Order creation
# ─────────────────────────────────────────────
@pytest.mark.asyncio
async def test_razorpay_order_payload(verifier, gateways):
    order = await verifier.create_razorpay_order("user_1", Plan.PREMIUM, {"email": "a@b.c"})

    assert order["key"] == "rzp_test_key"
    assert order["amount"] == 50000
    assert order["currency"] == "INR"
    assert order["theme"] == {"color": "#3399cc"}
    assert order["prefill"] == {"email": "a@b.c"}
    assert order["notes"] == {"userId": "user_1", "plan": "premium"}

    [req] = gateways.requests
    assert req.headers["Authorization"].startswith("Basic ")
    assert json.loads(req.content)["amount"] == 50000

    tx = await verifier.store.get_by_order(order["order_id"])
    assert tx.status == TransactionStatus.PENDING
    assert tx.gateway == Gateway.RAZORPAY
    assert tx.amount == 500


@pytest.mark.asyncio
async def test_gateway_failure_stores_nothing(verifier, gateways, ledger):
    gateways.status = 502
    with pytest.raises(ProviderUnavailable):
        await verifier.create_razorpay_order("user_1", Plan.BASIC)
    assert await _count(ledger.db_path, "transactions") == 0


@pytest.mark.asyncio
async def test_stripe_session_creates_pending_transaction(verifier, gateways):
    session = await verifier.create_stripe_session("user_1", Plan.BASIC, "a@b.c")

    assert session["sessionId"].startswith("cs_test_")
    [req] = gateways.requests
    assert req.headers["Authorization"] == "Bearer sk_test_123"
    form = dict(pair.split("=", 1) for pair in req.content.decode().split("&"))
    assert form["mode"] == "payment"
    assert form["line_items%5B0%5D%5Bprice_data%5D%5Bunit_amount%5D"] == "100"

    tx = await verifier.store.get_by_order(session["sessionId"])
    assert tx.gateway == Gateway.STRIPE
    assert tx.currency == "USD"


def test_parse_plan():
    assert parse_plan("Basic") is Plan.BASIC
    with pytest.raises(ValidationError):
        parse_plan("gold")


# ─────────────────────────────────────────────
# Razorpay verification
# ─────────────────────────────────────────────
@pytest.mark.asyncio
async def test_valid_signature_grants_credits_once(verifier, ledger, test_config):
    order_id = await _order(verifier)
    sig = razorpay_signature(order_id, "pay_1", test_config.RAZORPAY_KEY_SECRET)

    assert await verifier.verify_razorpay("user_1", "pay_1", order_id, sig, Plan.BASIC) == 500
    # replay after success is a no-op
    assert await verifier.verify_razorpay("user_1", "pay_1", order_id, sig, Plan.BASIC) == 500

    tx = await verifier.store.get_by_order(order_id)
    assert tx.status == TransactionStatus.SUCCESS
    assert tx.payment_id == "pay_1"
    assert await _count(ledger.db_path, "subscriptions") == 1
    assert (await verifier.store.latest_subscription("user_1")).plan == Plan.BASIC


def test_expected_signature_is_hmac_of_order_and_payment(test_config):
    expected = hmac.new(
        b"rzp_test_secret", b"order_9|pay_9", hashlib.sha256
    ).hexdigest()
    assert razorpay_signature("order_9", "pay_9", test_config.RAZORPAY_KEY_SECRET) == expected


@pytest.mark.asyncio
async def test_single_character_change_fails_and_marks_transaction(verifier, ledger, test_config):
    order_id = await _order(verifier)
    sig = razorpay_signature(order_id, "pay_1", test_config.RAZORPAY_KEY_SECRET)
    forged = sig[:-1] + ("0" if sig[-1] != "0" else "1")

    with pytest.raises(InvalidSignature):
        await verifier.verify_razorpay("user_1", "pay_1", order_id, forged)

    assert (await verifier.store.get_by_order(order_id)).status == TransactionStatus.FAILED
    assert await ledger.get_balance("user_1") == 0

    # a failed order can't be rescued later
    with pytest.raises(NoPendingTransaction):
        await verifier.verify_razorpay("user_1", "pay_1", order_id, sig)


@pytest.mark.asyncio
async def test_verify_without_transaction(verifier, test_config):
    sig = razorpay_signature("order_ghost", "pay_1", test_config.RAZORPAY_KEY_SECRET)
    with pytest.raises(NoPendingTransaction):
        await verifier.verify_razorpay("user_1", "pay_1", "order_ghost", sig)


@pytest.mark.asyncio
async def test_verify_for_another_users_order(verifier, test_config):
    order_id = await _order(verifier, user_id="user_1")
    sig = razorpay_signature(order_id, "pay_1", test_config.RAZORPAY_KEY_SECRET)
    with pytest.raises(NoPendingTransaction):
        await verifier.verify_razorpay("user_2", "pay_1", order_id, sig)


@pytest.mark.asyncio
async def test_plan_mismatch_is_rejected(verifier, ledger, test_config):
    order_id = await _order(verifier, plan=Plan.BASIC)
    sig = razorpay_signature(order_id, "pay_1", test_config.RAZORPAY_KEY_SECRET)

    with pytest.raises(ValidationError):
        await verifier.verify_razorpay("user_1", "pay_1", order_id, sig, Plan.PREMIUM)
    assert await ledger.get_balance("user_1") == 0


@pytest.mark.asyncio
async def test_fulfil_rolls_back_everything_on_failure(verifier, ledger, monkeypatch):
    order_id = await _order(verifier)

    async def broken_credit(*args, **kwargs):
        raise RuntimeError("ledger exploded")

    monkeypatch.setattr(ledger, "credit", broken_credit)
    with pytest.raises(RuntimeError):
        await verifier.fulfil(order_id, "pay_1")

    assert (await verifier.store.get_by_order(order_id)).status == TransactionStatus.PENDING
    assert await _count(ledger.db_path, "subscriptions") == 0
    assert await ledger.get_balance("user_1") == 0


# ─────────────────────────────────────────────
# Stripe webhook
# ─────────────────────────────────────────────
def _stripe_header(body: bytes, secret: str, ts: int = None) -> str:
    ts = ts if ts is not None else int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


@pytest.mark.asyncio
async def test_stripe_checkout_completed_fulfils(verifier, ledger, test_config):
    session = await verifier.create_stripe_session("user_1", Plan.PREMIUM)
    body = json.dumps({
        "type": "checkout.session.completed",
        "data": {"object": {"id": session["sessionId"], "payment_intent": "pi_1"}},
    }).encode()
    header = _stripe_header(body, test_config.STRIPE_WEBHOOK_SECRET)

    result = await verifier.handle_stripe_event(body, header)
    assert result["status"] == "ok"
    assert await ledger.get_balance("user_1") == 1000

    # Stripe retries: no double credit
    await verifier.handle_stripe_event(body, header)
    assert await ledger.get_balance("user_1") == 1000


@pytest.mark.asyncio
async def test_stripe_bad_signature_is_rejected(verifier, ledger):
    body = json.dumps({"type": "checkout.session.completed", "data": {"object": {"id": "cs_x"}}}).encode()
    with pytest.raises(InvalidSignature):
        await verifier.handle_stripe_event(body, _stripe_header(body, "whsec_wrong"))
    with pytest.raises(InvalidSignature):
        await verifier.handle_stripe_event(body, None)


@pytest.mark.asyncio
async def test_stripe_other_events_are_ignored(verifier, test_config):
    body = json.dumps({"type": "payment_intent.created"}).encode()
    result = await verifier.handle_stripe_event(body, _stripe_header(body, test_config.STRIPE_WEBHOOK_SECRET))
    assert result["status"] == "ignored"


@pytest.mark.asyncio
async def test_stripe_unknown_session_is_acknowledged(verifier, test_config):
    body = json.dumps({
        "type": "checkout.session.completed", "data": {"object": {"id": "cs_unknown"}},
    }).encode()
    result = await verifier.handle_stripe_event(body, _stripe_header(body, test_config.STRIPE_WEBHOOK_SECRET))
    assert result == {"received": True, "status": "order_not_found"}


@pytest.mark.asyncio
async def test_stripe_webhook_refused_without_secret(verifier, ledger, test_config):
    session = await verifier.create_stripe_session("user_1", Plan.PREMIUM)
    body = json.dumps({
        "type": "checkout.session.completed",
        "data": {"object": {"id": session["sessionId"], "payment_intent": "pi_1"}},
    }).encode()
    test_config.STRIPE_WEBHOOK_SECRET = ""

    with pytest.raises(InvalidSignature):
        await verifier.handle_stripe_event(body, None)
    with pytest.raises(InvalidSignature):
        await verifier.handle_stripe_event(body, _stripe_header(body, "whsec_anything"))

    assert await ledger.get_balance("user_1") == 0
    tx = await verifier.store.get_by_order(session["sessionId"])
    assert tx.status == TransactionStatus.PENDING


@pytest.mark.asyncio
async def test_stripe_non_object_body_is_a_validation_error(verifier, test_config):
    body = b"[]"
    with pytest.raises(ValidationError):
        await verifier.handle_stripe_event(body, _stripe_header(body, test_config.STRIPE_WEBHOOK_SECRET))


def test_stripe_signature_tolerance():
    body = b"{}"
    stale = _stripe_header(body, "whsec_x", ts=int(time.time()) - 3600)
    with pytest.raises(InvalidSignature):
        verify_stripe_signature(body, stale, "whsec_x")
    verify_stripe_signature(body, _stripe_header(body, "whsec_x"), "whsec_x")


# ─────────────────────────────────────────────
# Razorpay webhook
# ─────────────────────────────────────────────
@pytest.mark.asyncio
async def test_razorpay_payment_captured_fulfils(verifier, ledger, test_config):
    order_id = await _order(verifier)
    body = json.dumps({
        "event":   "payment.captured",
        "payload": {"payment": {"entity": {"id": "pay_7", "order_id": order_id, "amount": 10000}}},
    }).encode()
    sig = hmac.new(test_config.RAZORPAY_WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()

    result = await verifier.handle_razorpay_event(body, sig)
    assert result["credits"] == 500

    with pytest.raises(InvalidSignature):
        await verifier.handle_razorpay_event(body, base64.b64encode(b"nope").decode())


@pytest.mark.asyncio
async def test_razorpay_webhook_refused_without_secret(verifier, ledger, test_config):
    order_id = await _order(verifier)
    body = json.dumps({
        "event":   "payment.captured",
        "payload": {"payment": {"entity": {"id": "pay_8", "order_id": order_id}}},
    }).encode()
    test_config.RAZORPAY_WEBHOOK_SECRET = ""
    test_config.RAZORPAY_KEY_SECRET     = ""

    with pytest.raises(InvalidSignature):
        await verifier.handle_razorpay_event(body, None)
    assert await ledger.get_balance("user_1") == 0


@pytest.mark.asyncio
async def test_razorpay_non_object_body_is_a_validation_error(verifier, test_config):
    body = b'"payment.captured"'
    sig = hmac.new(test_config.RAZORPAY_WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()
    with pytest.raises(ValidationError):
        await verifier.handle_razorpay_event(body, sig)
