"""
lorabooth — main.py
─────────────────────────────────────────────────────────────────
Central entry point. All routers mount here.

Start server:
    uvicorn lorabooth.main:app --reload --port 8080

File map:
    jobs.py      → /pre-signed-url, /ai/*, /pack/*, /models, /image/*, /model/*
    webhooks.py  → /replicate/webhook/{train,image}
    payment.py   → /api/payments/*
    wallet.py    → service only   (no direct routes)
    inference.py → service only   (Replicate client, built once here)
─────────────────────────────────────────────────────────────────
"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lorabooth import __version__
from lorabooth.core.config import Config, cfg
from lorabooth.core.database import init_all_tables
from lorabooth.inference import ReplicateClient
from lorabooth.jobs import JobGateway, router as jobs_router
from lorabooth.payment import PaymentVerifier, router as payment_router
from lorabooth.wallet import CreditLedger, debit_sweeper
from lorabooth.webhooks import WebhookReconciler, router as webhook_router

# ── Logging ───────────────────────────────────
logging.basicConfig(
    level   = logging.INFO,
    format  = "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt = "%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("lorabooth.main")


# ─────────────────────────────────────────────
# App factory
# ─────────────────────────────────────────────
def create_app(
    config:        Config = cfg,
    provider_http: Optional[httpx.AsyncClient] = None,
    payment_http:  Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Build the app. Tests pass their own Config and mock HTTP clients;
    production uses the module-level `app` below.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"🚀 lorabooth starting {config!r}")

        await init_all_tables(config.DB_PATH)

        # One provider client for the whole process
        cancel   = asyncio.Event()
        ledger   = CreditLedger(config.DB_PATH)
        provider = ReplicateClient.from_config(config, http=provider_http)
        verifier = PaymentVerifier(ledger, config=config, http=payment_http)

        app.state.config     = config
        app.state.ledger     = ledger
        app.state.gateway    = JobGateway(provider, ledger, config.DB_PATH, config)
        app.state.reconciler = WebhookReconciler.from_config(provider, ledger, config, cancel)
        app.state.verifier   = verifier

        if not config.replicate_ready:
            logger.warning("⚠️  REPLICATE_API_TOKEN not set — job submission will fail")

        sweeper = asyncio.create_task(debit_sweeper(ledger, config.DEBIT_SWEEP_INTERVAL))
        logger.info("✅ lorabooth is live.")

        yield  # App runs here

        logger.info("lorabooth shutting down.")
        cancel.set()   # stops any preview poll in flight
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        await provider.aclose()
        await verifier.aclose()

    app = FastAPI(
        title       = "lorabooth API",
        description = "LoRA training, image generation and credit billing",
        version     = __version__,
        docs_url    = "/docs"  if not config.is_production else None,
        redoc_url   = "/redoc" if not config.is_production else None,
        lifespan    = lifespan,
    )

    # ── CORS ──────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins     = [config.FRONTEND_URL],
        allow_credentials = True,
        allow_methods     = ["*"],
        allow_headers     = ["*"],
    )

    # ── Routers ───────────────────────────────
    app.include_router(jobs_router)
    app.include_router(webhook_router)
    app.include_router(payment_router)

    # ── Health ────────────────────────────────
    @app.get("/api/health", tags=["system"])
    async def health():
        return {
            "status":    "ok",
            "app":       "lorabooth",
            "version":   __version__,
            "env":       config.ENV,
            "replicate": config.replicate_ready,
            "razorpay":  config.razorpay_ready,
            "stripe":    config.stripe_ready,
            "s3":        config.s3_ready,
        }

    # ── Global Error Handler ──────────────────
    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code = 500,
            content     = {"detail": "Internal server error."},
        )

    return app


app = create_app()


# ─────────────────────────────────────────────
# Run
# ─────────────────────────────────────────────
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "lorabooth.main:app",
        host   = "0.0.0.0",
        port   = 8080,
        reload = not cfg.is_production,
    )
