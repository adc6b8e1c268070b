"""
Shared fixtures: a fresh SQLite file per test, a ledger on it, and a
Replicate client whose HTTP goes to an in-process fake.
"""

import httpx
import pytest
import pytest_asyncio

from lorabooth.core.config import Config
from lorabooth.core.database import init_all_tables
from lorabooth.inference import ReplicateClient
from lorabooth.wallet import CreditLedger
from tests.helpers import FakeReplicate


@pytest.fixture
def fake_replicate():
    return FakeReplicate()


@pytest.fixture
def replicate_http(fake_replicate):
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_replicate))


@pytest.fixture
def provider(replicate_http):
    return ReplicateClient(
        api_token        = "r8_test",
        webhook_base_url = "http://hooks.example.com/",
        poll_interval    = 0.01,
        max_wait         = 1.0,
        http             = replicate_http,
    )


# ─────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────
@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "lorabooth-test.db")


@pytest_asyncio.fixture
async def db(db_path):
    await init_all_tables(db_path)
    return db_path


@pytest_asyncio.fixture
async def ledger(db):
    return CreditLedger(db)


@pytest.fixture
def test_config(db_path):
    config = Config()
    config.DB_PATH                  = db_path
    config.REPLICATE_API_TOKEN      = "r8_test"
    config.WEBHOOK_BASE_URL         = "hooks.example.com"
    config.REPLICATE_WEBHOOK_SECRET = ""
    config.PREVIEW_POLL_INTERVAL    = 0.01
    config.PREVIEW_MAX_WAIT         = 1.0
    config.DEBIT_SWEEP_INTERVAL     = 3600
    config.REFUND_FAILED_JOBS       = False
    config.RAZORPAY_KEY_ID          = "rzp_test_key"
    config.RAZORPAY_KEY_SECRET      = "rzp_test_secret"
    config.RAZORPAY_WEBHOOK_SECRET  = "rzp_hook_secret"
    config.STRIPE_SECRET_KEY        = "sk_test_123"
    config.STRIPE_WEBHOOK_SECRET    = "whsec_stripe_test"
    return config
