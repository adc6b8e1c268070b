"""
lorabooth — webhooks.py
─────────────────────────────────────────────────────────────────
Webhook Reconciler — provider callbacks → job state

    pending ──processing──▶ processing
    pending|processing ──failed/canceled──▶ failed      (terminal)
    pending|processing ──succeeded──────▶ succeeded     (terminal)

Rules:
- Unknown request id → logged, ignored (still acknowledged)
- Terminal jobs never change again; duplicate deliveries are no-ops
- One asyncio.Lock per provider request id for the whole
  read → decide → write, and every UPDATE re-checks the row is still
  open, so a second process can't double-apply either
- Training success triggers one preview image (bounded poll);
  if the preview fails, the job fails
- Refunds on failure only when REFUND_FAILED_JOBS is on

The HTTP handlers ACK immediately and reconcile in a background task.
─────────────────────────────────────────────────────────────────
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import time
import weakref
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from lorabooth.core.config import Config, cfg
from lorabooth.core.database import get_db
from lorabooth.core.errors import (
    DuplicateTransaction, InvalidSignature, MalformedCallback, ProviderUnavailable,
)
from lorabooth.core.retry import with_retry
from lorabooth.inference import ReplicateClient
from lorabooth.models.job import Job, JobKind, JobStatus, OPEN_STATUSES, job_from_row
from lorabooth.models.webhook import (
    ProviderCallback, describe, output_ref, parse_callback, parse_output,
)
from lorabooth.wallet import CreditLedger

logger = logging.getLogger("lorabooth.webhooks")

SIGNATURE_TOLERANCE = 300   # seconds


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─────────────────────────────────────────────
# Signed webhooks
# ─────────────────────────────────────────────
def sign_replicate_payload(body: bytes, webhook_id: str, timestamp: str, secret: str) -> str:
    """base64 HMAC-SHA256 of "<id>.<timestamp>.<body>" keyed by the whsec_ secret."""
    key = base64.b64decode(secret.split("_", 1)[1] if secret.startswith("whsec_") else secret)
    signed = f"{webhook_id}.{timestamp}.".encode() + body
    return base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode()


def verify_replicate_signature(
    body:      bytes,
    headers:   Mapping[str, str],
    secret:    str,
    tolerance: int = SIGNATURE_TOLERANCE,
    now:       Optional[float] = None,
):
    """
    Check the webhook-id / webhook-timestamp / webhook-signature headers.
    Raises InvalidSignature on any mismatch or a stale timestamp.
    """
    webhook_id = headers.get("webhook-id")
    timestamp  = headers.get("webhook-timestamp")
    signatures = headers.get("webhook-signature")
    if not webhook_id or not timestamp or not signatures:
        raise InvalidSignature("Missing webhook signature headers")

    try:
        sent_at = int(timestamp)
    except ValueError:
        raise InvalidSignature("Bad webhook timestamp")
    if abs((now if now is not None else time.time()) - sent_at) > tolerance:
        raise InvalidSignature("Webhook timestamp outside tolerance")

    try:
        expected = sign_replicate_payload(body, webhook_id, timestamp, secret)
    except ValueError as e:
        raise InvalidSignature(f"Unusable webhook secret: {e}")

    # "v1,<sig> v1,<sig2>": any match is enough
    candidates = [s.split(",", 1)[1] for s in signatures.split() if "," in s]
    if not any(hmac.compare_digest(expected, c) for c in candidates):
        raise InvalidSignature("Webhook signature mismatch")


# ─────────────────────────────────────────────
# WebhookReconciler
# ─────────────────────────────────────────────
class WebhookReconciler:

    def __init__(
        self,
        provider:       ReplicateClient,
        ledger:         Optional[CreditLedger] = None,
        db_path:        Optional[str] = None,
        refund_failed:  bool = False,
        webhook_secret: str = "",
        cancel:         Optional[asyncio.Event] = None,
    ):
        self.provider       = provider
        self.db_path        = db_path or cfg.DB_PATH
        self.ledger         = ledger or CreditLedger(self.db_path)
        self.refund_failed  = refund_failed
        self.webhook_secret = webhook_secret
        self.cancel         = cancel or asyncio.Event()
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @classmethod
    def from_config(cls, provider: ReplicateClient, ledger: Optional[CreditLedger] = None,
                    config: Config = cfg, cancel: Optional[asyncio.Event] = None):
        return cls(
            provider       = provider,
            ledger         = ledger,
            db_path        = config.DB_PATH,
            refund_failed  = config.REFUND_FAILED_JOBS,
            webhook_secret = config.REPLICATE_WEBHOOK_SECRET,
            cancel         = cancel,
        )

    def _lock_for(self, request_id: str) -> asyncio.Lock:
        # Entry disappears once no coroutine holds a reference
        lock = self._locks.get(request_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[request_id] = lock
        return lock

    # ─── Entry point ───────────────────────────

    async def handle(self, kind: JobKind, payload: Any) -> Optional[JobStatus]:
        """
        Apply one callback. Never raises — runs as a background task.
        Returns the job's status afterwards, or None if nothing matched.
        """
        try:
            callback = parse_callback(payload)
        except MalformedCallback as e:
            logger.warning(f"Dropping {kind.value} webhook: {e}")
            return None

        try:
            return await self._reconcile(kind, callback)
        except Exception as e:
            logger.error(
                f"Webhook processing failed ({kind.value}, {describe(payload)}): {e}",
                exc_info=True,
            )
            return None

    async def _reconcile(self, kind: JobKind, callback: ProviderCallback) -> Optional[JobStatus]:
        async with self._lock_for(callback.request_id):
            job = await self._find(callback.request_id)

            if job is None or job.kind != kind:
                logger.warning(f"No {kind.value} job for request {callback.request_id} — ignoring")
                return None

            if job.is_terminal:
                logger.info(f"Job {job.id} already {job.status.value} — duplicate callback ignored")
                return job.status

            status = callback.status
            if status is None:
                logger.warning(f"Job {job.id}: unknown provider status {callback.raw_status!r}")
                return job.status

            if status.is_intermediate:
                if job.status == JobStatus.PENDING:
                    await self._transition(job, JobStatus.PROCESSING)
                    return JobStatus.PROCESSING
                return job.status

            if status.is_failure:
                return await self._fail(job, str(callback.error or status.value))

            return await self._succeed(job, callback)

    async def _succeed(self, job: Job, callback: ProviderCallback) -> JobStatus:
        try:
            output = parse_output(callback.output, allow_nested=job.kind == JobKind.TRAINING)
        except MalformedCallback as e:
            return await self._fail(job, str(e))
        ref = output_ref(output)

        if job.kind == JobKind.IMAGE:
            await self._transition(job, JobStatus.SUCCEEDED, output_ref=ref)
            logger.info(f"Image {job.id} ready")
            return JobStatus.SUCCEEDED

        try:
            preview = await self.provider.generate_preview(ref, cancel=self.cancel)
        except ProviderUnavailable as e:
            return await self._fail(job, f"Preview generation failed: {e}", output_ref=ref)

        await self._transition(job, JobStatus.SUCCEEDED, output_ref=ref, preview_ref=preview)
        logger.info(f"Model {job.id} trained — weights and preview stored")
        return JobStatus.SUCCEEDED

    async def _fail(self, job: Job, reason: str,
                    output_ref: Optional[str] = None) -> JobStatus:
        changed = await self._transition(
            job, JobStatus.FAILED, output_ref=output_ref, fail_reason=reason[:500]
        )
        logger.warning(f"Job {job.id} failed: {reason}")

        if changed and self.refund_failed:
            await self._refund(job)
        return JobStatus.FAILED

    async def _refund(self, job: Job):
        # No refund for a debit we never collected
        if await self.ledger.has_pending_debit(job.batch_id or job.id):
            logger.warning(f"Job {job.id}: debit still pending — no refund")
            return
        try:
            await self.ledger.refund(job.user_id, job.cost, job.id)
        except DuplicateTransaction:
            logger.info(f"Job {job.id} already refunded")

    # ─── Storage ───────────────────────────────

    async def _find(self, request_id: str) -> Optional[Job]:
        async def _read():
            async with get_db(self.db_path) as db:
                async with db.execute(
                    "SELECT * FROM jobs WHERE provider_request_id = ?", (request_id,)
                ) as cur:
                    return await cur.fetchone()

        row = await with_retry(_read)
        return job_from_row(row) if row else None

    async def _transition(
        self,
        job:         Job,
        status:      JobStatus,
        output_ref:  Optional[str] = None,
        preview_ref: Optional[str] = None,
        fail_reason: Optional[str] = None,
    ) -> bool:
        """
        Conditional UPDATE — only applies while the row is still open.
        Returns False if someone else already finished the job.
        """
        async def _write():
            async with get_db(self.db_path) as db:
                cur = await db.execute(
                    f"""UPDATE jobs
                        SET status      = ?,
                            output_ref  = COALESCE(?, output_ref),
                            preview_ref = COALESCE(?, preview_ref),
                            fail_reason = COALESCE(?, fail_reason),
                            updated_at  = ?
                        WHERE id = ? AND status IN ({','.join('?' * len(OPEN_STATUSES))})""",
                    (status.value, output_ref, preview_ref, fail_reason, _now(), job.id,
                     *(s.value for s in OPEN_STATUSES))
                )
                await db.commit()
                return cur.rowcount

        if await with_retry(_write) == 0:
            logger.info(f"Job {job.id} closed concurrently — {status.value} not applied")
            return False

        logger.info(f"Job {job.id}: {job.status.value} → {status.value}")
        job.status = status
        return True


# ─────────────────────────────────────────────
# FastAPI Router
# ─────────────────────────────────────────────

router = APIRouter(prefix="/replicate/webhook", tags=["webhooks"])


def get_reconciler(request: Request) -> WebhookReconciler:
    return request.app.state.reconciler


async def _accept(
    kind:       JobKind,
    request:    Request,
    background: BackgroundTasks,
    reconciler: WebhookReconciler,
) -> dict:
    raw = await request.body()

    if reconciler.webhook_secret:
        try:
            verify_replicate_signature(raw, request.headers, reconciler.webhook_secret)
        except InvalidSignature as e:
            logger.warning(f"Rejected {kind.value} webhook: {e}")
            raise HTTPException(401, "Invalid webhook signature")

    try:
        payload = json.loads(raw)
        parse_callback(payload)
    except ValueError:
        raise HTTPException(400, {"message": "Invalid JSON body"})
    except MalformedCallback as e:
        raise HTTPException(400, {"message": str(e)})

    background.add_task(reconciler.handle, kind, payload)
    return {"message": "Webhook received"}


@router.post("/train")
async def training_webhook(
    request:    Request,
    background: BackgroundTasks,
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    return await _accept(JobKind.TRAINING, request, background, reconciler)


@router.post("/image")
async def image_webhook(
    request:    Request,
    background: BackgroundTasks,
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    return await _accept(JobKind.IMAGE, request, background, reconciler)
