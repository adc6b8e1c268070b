"""
lorabooth — storage/s3.py
─────────────────────────────────────────────────────────────────
S3 helper for training uploads.

The browser zips the user's photos and PUTs them straight into the
bucket; we only hand out a short-lived signed URL. The resulting
object URL becomes `zipUrl` on POST /ai/training.

Works with any S3-compatible store (set ENDPOINT for R2 / MinIO).

.env:
  S3_ACCESS_KEY=...
  S3_SECRET_KEY=...
  BUCKET_NAME=lorabooth-uploads
  ENDPOINT=                     # optional, non-AWS endpoint
  AWS_REGION=ap-south-1
─────────────────────────────────────────────────────────────────
"""

import logging
import secrets
import time
from typing import Dict

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from lorabooth.core.config import Config, cfg

logger = logging.getLogger("lorabooth.s3")

UPLOAD_PREFIX = "models"


# ─────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────
class S3Error(Exception):
    """Base S3 exception."""

class S3NotConfiguredError(S3Error):
    """Credentials or bucket missing in .env"""


# ─────────────────────────────────────────────
# S3 Client
# ─────────────────────────────────────────────
def _get_client(config: Config = cfg):
    if not config.s3_ready:
        raise S3NotConfiguredError(
            "S3 not configured! Set S3_ACCESS_KEY, S3_SECRET_KEY and BUCKET_NAME in .env"
        )

    kwargs = dict(
        region_name           = config.AWS_REGION,
        aws_access_key_id     = config.AWS_ACCESS_KEY_ID,
        aws_secret_access_key = config.AWS_SECRET_ACCESS_KEY,
    )
    if config.S3_ENDPOINT:
        kwargs["endpoint_url"] = config.S3_ENDPOINT
    return boto3.client("s3", **kwargs)


def make_upload_key() -> str:
    """models/<epoch-ms>_<random>.zip"""
    return f"{UPLOAD_PREFIX}/{int(time.time() * 1000)}_{secrets.token_hex(6)}.zip"


# ─────────────────────────────────────────────
# Upload URL
# ─────────────────────────────────────────────
def presign_upload(config: Config = cfg) -> Dict[str, str]:
    """
    Signed PUT URL for one training archive.

    Returns:
        {"url": "https://...signed...", "key": "models/1712345678901_ab12cd34ef56.zip"}
    """
    client = _get_client(config)
    key    = make_upload_key()

    try:
        url = client.generate_presigned_url(
            "put_object",
            Params    = {"Bucket": config.S3_BUCKET, "Key": key, "ContentType": "application/zip"},
            ExpiresIn = config.UPLOAD_URL_EXPIRES,
        )
    except (BotoCoreError, ClientError) as e:
        raise S3Error(f"Could not sign upload URL: {e}") from e

    logger.info(f"Upload URL issued: {key}")
    return {"url": url, "key": key}

