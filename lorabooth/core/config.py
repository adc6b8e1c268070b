"""
lorabooth — core/config.py
─────────────────────────────────────────────────────────────────
Single source of truth for ALL environment variables.

Nothing else calls os.getenv(). The inference client, the ledger and
the payment verifier all receive their settings from `cfg` once, at
startup.

Usage:
    from lorabooth.core.config import cfg

    print(cfg.DB_PATH)
    print(cfg.TRAIN_MODEL_CREDITS)
─────────────────────────────────────────────────────────────────
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    # ── App ───────────────────────────────────
    ENV:          str = os.getenv("ENV", "development")   # "production" in prod
    DB_PATH:      str = os.getenv("DB_PATH", "lorabooth.db")
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # ── Security ──────────────────────────────
    JWT_SECRET: str = os.getenv("JWT_SECRET", os.getenv("AUTH_JWT_KEY", "dev-secret"))
    ALGORITHM:  str = "HS256"

    # ── Replicate ─────────────────────────────
    REPLICATE_API_TOKEN:      str = os.getenv("REPLICATE_API_TOKEN", "")
    REPLICATE_BASE_URL:       str = os.getenv("REPLICATE_BASE_URL", "https://api.replicate.com/v1")
    REPLICATE_WEBHOOK_SECRET: str = os.getenv("REPLICATE_WEBHOOK_SECRET", "")
    WEBHOOK_BASE_URL:         str = os.getenv("WEBHOOK_BASE_URL", "")

    TRAINING_VERSION: str = os.getenv(
        "TRAINING_VERSION",
        "ostris/flux-dev-lora-trainer:"
        "4ffd32160efd92e956d39c5338a9b8fbafca58e03f791f6d8011f3e20e8ea6fa",
    )
    IMAGE_MODEL:   str = os.getenv("IMAGE_MODEL", "black-forest-labs/flux-1.1-pro-ultra")
    PREVIEW_PROMPT: str = "A professional headshot photo in front of a white background"

    # ── Credits / Jobs ────────────────────────
    IMAGE_GEN_CREDITS:   int  = int(os.getenv("IMAGE_GEN_CREDITS", "1"))
    TRAIN_MODEL_CREDITS: int  = int(os.getenv("TRAIN_MODEL_CREDITS", "20"))
    REFUND_FAILED_JOBS:  bool = _flag("REFUND_FAILED_JOBS")   # attempt cost is kept by default

    PREVIEW_POLL_INTERVAL: float = float(os.getenv("PREVIEW_POLL_INTERVAL", "1.0"))
    PREVIEW_MAX_WAIT:      float = float(os.getenv("PREVIEW_MAX_WAIT", "300"))
    DEBIT_SWEEP_INTERVAL:  float = float(os.getenv("DEBIT_SWEEP_INTERVAL", "30"))

    # ── Storage retry ─────────────────────────
    DB_RETRIES:     int   = 3
    DB_RETRY_DELAY: float = 0.2   # seconds, doubles each attempt

    # ── Razorpay ──────────────────────────────
    RAZORPAY_KEY_ID:         str = os.getenv("RAZORPAY_KEY_ID", "")
    RAZORPAY_KEY_SECRET:     str = os.getenv("RAZORPAY_KEY_SECRET", "")
    RAZORPAY_WEBHOOK_SECRET: str = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")

    # ── Stripe ────────────────────────────────
    STRIPE_SECRET_KEY:     str = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")

    # ── S3 (upload URLs) ──────────────────────
    AWS_ACCESS_KEY_ID:     str = os.getenv("S3_ACCESS_KEY", os.getenv("AWS_ACCESS_KEY_ID", ""))
    AWS_SECRET_ACCESS_KEY: str = os.getenv("S3_SECRET_KEY", os.getenv("AWS_SECRET_ACCESS_KEY", ""))
    AWS_REGION:            str = os.getenv("AWS_REGION", "ap-south-1")
    S3_ENDPOINT:           str = os.getenv("ENDPOINT", "")
    S3_BUCKET:             str = os.getenv("BUCKET_NAME", "")
    UPLOAD_URL_EXPIRES:    int = 60 * 5

    # ── Shortcuts ─────────────────────────────
    @property
    def is_production(self) -> bool:
        return self.ENV == "production"

    @property
    def replicate_ready(self) -> bool:
        return bool(self.REPLICATE_API_TOKEN)

    @property
    def razorpay_ready(self) -> bool:
        return bool(self.RAZORPAY_KEY_ID and self.RAZORPAY_KEY_SECRET)

    @property
    def stripe_ready(self) -> bool:
        return bool(self.STRIPE_SECRET_KEY)

    @property
    def s3_ready(self) -> bool:
        return bool(self.AWS_ACCESS_KEY_ID and self.AWS_SECRET_ACCESS_KEY and self.S3_BUCKET)

    def __repr__(self):
        return (
            f"<Config env={self.ENV} "
            f"replicate={'✓' if self.replicate_ready else '✗'} "
            f"razorpay={'✓' if self.razorpay_ready else '✗'} "
            f"stripe={'✓' if self.stripe_ready else '✗'} "
            f"s3={'✓' if self.s3_ready else '✗'}>"
        )


# Single global instance, import this everywhere
cfg = Config()
