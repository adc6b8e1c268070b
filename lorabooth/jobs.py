"""
lorabooth — jobs.py
─────────────────────────────────────────────────────────────────
Job Submission Gateway
- Prices work before anything leaves the building
- One provider call per unit of work (training / image / pack prompt)
- Records the job, THEN debits — an accepted provider job is never
  orphaned; a failed debit is queued, not dropped
- Packs are priced as a whole: all N covered or nothing submitted

Integrates with:
    inference.py → ReplicateClient (injected)
    wallet.py    → CreditLedger.try_debit / queue_debit
    webhooks.py  → mutates the rows created here

Usage:
    gateway = JobGateway(provider, ledger)
    job  = await gateway.submit_training(user_id, zip_url, "ravi", attrs)
    jobs = await gateway.submit_pack(user_id, pack_id, model_id)
─────────────────────────────────────────────────────────────────
"""

import asyncio
import json
import logging
import secrets
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from lorabooth.core.config import Config, cfg
from lorabooth.core.database import get_db, transaction
from lorabooth.core.errors import (
    DuplicateTransaction, InsufficientCredit, JobNotFound, LoraboothError,
    ProviderUnavailable, StorageTransient, ValidationError,
)
from lorabooth.core.retry import with_retry
from lorabooth.core.security import get_current_user
from lorabooth.inference import Prediction, ReplicateClient
from lorabooth.models.job import Job, JobKind, JobStatus, job_from_row
from lorabooth.storage.s3 import S3Error, presign_upload
from lorabooth.wallet import (
    CreditLedger, REASON_IMAGE_GEN, REASON_PACK_GEN, REASON_TRAINING,
)

logger = logging.getLogger("lorabooth.jobs")

ARCHIVE_CHECK_TIMEOUT = 10   # seconds for the HEAD request on a zip URL


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

def _new_id(prefix: str) -> str:
    return f"{prefix}_" + secrets.token_urlsafe(12)


# ─────────────────────────────────────────────
# JobGateway
# ─────────────────────────────────────────────
class JobGateway:
    """
    Submits billable work and answers job queries.
    The provider client and ledger are passed in, never built here.
    """

    def __init__(
        self,
        provider: ReplicateClient,
        ledger:   Optional[CreditLedger] = None,
        db_path:  Optional[str] = None,
        config:   Config = cfg,
    ):
        self.provider    = provider
        self.db_path     = db_path or config.DB_PATH
        self.ledger      = ledger or CreditLedger(self.db_path)
        self.image_cost  = config.IMAGE_GEN_CREDITS
        self.train_cost  = config.TRAIN_MODEL_CREDITS
        self.s3_bucket   = config.S3_BUCKET

    # ─── Submit ────────────────────────────────

    async def submit_training(
        self,
        user_id:    str,
        zip_url:    str,
        name:       str,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """
        Start a LoRA training run. Costs TRAIN_MODEL_CREDITS, charged now.
        Raises ValidationError, InsufficientCredit or ProviderUnavailable —
        in each case nothing was recorded and nothing was charged.
        """
        if not zip_url or not name or not name.strip():
            raise ValidationError("zipUrl and name are required")

        await self._ensure_credit(user_id, self.train_cost)
        await self._check_archive(zip_url)

        prediction = await self.provider.create_training(zip_url, name.strip())

        job = self._new_job(
            user_id    = user_id,
            prediction = prediction,
            kind       = JobKind.TRAINING,
            input_ref  = zip_url,
            cost       = self.train_cost,
            name       = name.strip(),
            attributes = attributes or {},
            prefix     = "mdl",
        )
        await self._record([job])
        await self._bill(user_id, self.train_cost, REASON_TRAINING, job.id)

        logger.info(f"Training job created: {job.id} | user={user_id} | request={job.provider_request_id}")
        return job

    async def submit_image(self, user_id: str, model_id: str, prompt: str) -> Job:
        """One image from a trained model. Costs IMAGE_GEN_CREDITS."""
        if not prompt or not prompt.strip():
            raise ValidationError("prompt is required")

        model = await self._get_ready_model(user_id, model_id)
        await self._ensure_credit(user_id, self.image_cost)

        prediction = await self.provider.create_image(prompt, model.output_ref)

        job = self._new_job(
            user_id    = user_id,
            prediction = prediction,
            kind       = JobKind.IMAGE,
            input_ref  = prompt,
            cost       = self.image_cost,
            model_id   = model.id,
            prefix     = "img",
        )
        await self._record([job])
        await self._bill(user_id, self.image_cost, REASON_IMAGE_GEN, job.id)

        logger.info(f"Image job created: {job.id} | user={user_id} | model={model.id}")
        return job

    async def submit_pack(self, user_id: str, pack_id: str, model_id: str) -> List[Job]:
        """
        One image per pack prompt. The whole pack is priced up front:
        balance < N × unit cost → rejected before a single provider call.

        Provider calls run concurrently. Units the provider accepted are
        recorded and billed; units it refused are dropped. If every call
        failed → ProviderUnavailable.
        """
        prompts = await self.get_pack_prompts(pack_id)
        if not prompts:
            raise ValidationError(f"Pack '{pack_id}' has no prompts")

        model = await self._get_ready_model(user_id, model_id)
        await self._ensure_credit(user_id, self.image_cost * len(prompts))

        results = await asyncio.gather(
            *(self.provider.create_image(p, model.output_ref) for p in prompts),
            return_exceptions=True,
        )

        batch_id = _new_id("batch")
        jobs: List[Job] = []
        for prompt, result in zip(prompts, results):
            if isinstance(result, BaseException):
                logger.warning(f"Pack {pack_id}: provider refused prompt '{prompt[:40]}': {result}")
                continue
            job = self._new_job(
                user_id    = user_id,
                prediction = result,
                kind       = JobKind.IMAGE,
                input_ref  = prompt,
                cost       = self.image_cost,
                model_id   = model.id,
                batch_id   = batch_id,
                prefix     = "img",
            )
            jobs.append(job)

        if not jobs:
            raise ProviderUnavailable(f"Provider rejected all {len(prompts)} pack prompts")

        await self._record(jobs)
        await self._bill(user_id, self.image_cost * len(jobs), REASON_PACK_GEN, batch_id)

        logger.info(
            f"Pack {pack_id} submitted: {len(jobs)}/{len(prompts)} images | "
            f"user={user_id} | batch={batch_id}"
        )
        return jobs

    # ─── Submit internals ──────────────────────

    def _new_job(
        self,
        user_id:    str,
        prediction: Prediction,
        kind:       JobKind,
        input_ref:  str,
        cost:       int,
        prefix:     str,
        name:       Optional[str] = None,
        model_id:   Optional[str] = None,
        batch_id:   Optional[str] = None,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Job:
        now = _now()
        return Job(
            id                  = _new_id(prefix),
            user_id             = user_id,
            provider_request_id = prediction.request_id,
            kind                = kind,
            status              = JobStatus.PENDING,
            input_ref           = input_ref,
            output_ref          = None,
            preview_ref         = None,
            model_id            = model_id,
            batch_id            = batch_id,
            name                = name,
            cost                = cost,
            fail_reason         = None,
            created_at          = now,
            updated_at          = now,
            attributes          = attributes or {},
        )

    async def _ensure_credit(self, user_id: str, cost: int):
        balance = await self.ledger.get_balance(user_id)
        if balance < cost:
            raise InsufficientCredit(f"Need {cost} credits, balance is {balance}.")

    async def _check_archive(self, zip_url: str):
        """
        Our own bucket is trusted; anything else must answer a HEAD request
        before we pay the provider to download it.
        """
        parsed = urlparse(zip_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError("zipUrl must be an http(s) URL")

        host = parsed.netloc.lower()
        if "amazonaws.com" in host or (self.s3_bucket and self.s3_bucket in zip_url):
            return

        try:
            resp = await self.provider.http.head(
                zip_url, follow_redirects=True, timeout=ARCHIVE_CHECK_TIMEOUT
            )
        except httpx.HTTPError as e:
            raise ValidationError(f"zipUrl not reachable: {e}") from e
        if resp.status_code >= 400:
            raise ValidationError(f"zipUrl not accessible: {resp.status_code}")

    async def _record(self, jobs: List[Job]):
        """Insert job rows in one transaction."""
        async def _insert():
            async with transaction(self.db_path) as db:
                await db.executemany(
                    """INSERT INTO jobs
                       (id, user_id, provider_request_id, kind, status, input_ref,
                        model_id, batch_id, name, attributes, cost, created_at, updated_at)
                       VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)""",
                    [
                        (
                            j.id, j.user_id, j.provider_request_id, j.kind.value,
                            j.status.value, j.input_ref, j.model_id, j.batch_id,
                            j.name, json.dumps(j.attributes), j.cost,
                            j.created_at, j.updated_at,
                        )
                        for j in jobs
                    ]
                )

        try:
            await with_retry(_insert)
        except (StorageTransient, sqlite3.Error):
            logger.critical(
                "Provider accepted work we could not record: "
                + ", ".join(j.provider_request_id for j in jobs)
            )
            raise

    async def _bill(self, user_id: str, amount: int, reason: str, ref_id: str):
        """
        Debit once per submission. Any failure here happens AFTER the provider
        accepted the work, so the debit is queued instead of lost.
        """
        try:
            await self.ledger.try_debit(user_id, amount, reason, ref_id)
        except DuplicateTransaction:
            logger.warning(f"Debit {ref_id} already applied — skipping")
        except (InsufficientCredit, StorageTransient, sqlite3.Error) as e:
            try:
                await self.ledger.queue_debit(user_id, amount, reason, ref_id, str(e))
            except sqlite3.Error as queue_error:
                logger.critical(
                    f"Debit lost: ref={ref_id} user={user_id} amount={amount} "
                    f"({e}; queue failed: {queue_error})"
                )

    async def _get_ready_model(self, user_id: str, model_id: str) -> Job:
        try:
            model = await self.get_user_job(user_id, model_id, JobKind.TRAINING)
        except JobNotFound:
            raise ValidationError("Model not found")
        if model.status != JobStatus.SUCCEEDED or not model.output_ref:
            raise ValidationError("Model is not ready yet")
        return model

    # ─── Read ──────────────────────────────────

    async def get_job(self, job_id: str) -> Job:
        async with get_db(self.db_path) as db:
            async with db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)) as cur:
                row = await cur.fetchone()
        if not row:
            raise JobNotFound(f"Job '{job_id}' not found.")
        return job_from_row(row)

    async def get_user_job(self, user_id: str, job_id: str,
                           kind: Optional[JobKind] = None) -> Job:
        """Same as get_job but scoped to the owner (and optionally a kind)."""
        job = await self.get_job(job_id)
        if job.user_id != user_id or (kind and job.kind != kind):
            raise JobNotFound(f"Job '{job_id}' not found.")
        return job

    async def get_model_status(self, user_id: str, model_id: str) -> Dict[str, Any]:
        model = await self.get_user_job(user_id, model_id, JobKind.TRAINING)
        return {
            "id":        model.id,
            "name":      model.name,
            "status":    model.status.value,
            "thumbnail": model.preview_ref,
            "createdAt": model.created_at,
            "updatedAt": model.updated_at,
        }

    async def list_models(self, user_id: str) -> List[Job]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                """SELECT * FROM jobs
                   WHERE user_id = ? AND kind = ?
                   ORDER BY created_at DESC""",
                (user_id, JobKind.TRAINING.value)
            ) as cur:
                rows = await cur.fetchall()
        return [job_from_row(r) for r in rows]

    async def list_images(
        self,
        user_id: str,
        ids:     Optional[List[str]] = None,
        limit:   int = 100,
        offset:  int = 0,
    ) -> List[Job]:
        """User's images, newest first, failed ones hidden."""
        query  = "SELECT * FROM jobs WHERE user_id = ? AND kind = ? AND status != ?"
        params: List[Any] = [user_id, JobKind.IMAGE.value, JobStatus.FAILED.value]

        if ids:
            query += f" AND id IN ({','.join('?' * len(ids))})"
            params.extend(ids)

        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        async with get_db(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return [job_from_row(r) for r in rows]

    async def get_pack_prompts(self, pack_id: str) -> List[str]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT prompt FROM pack_prompts WHERE pack_id = ? ORDER BY id", (pack_id,)
            ) as cur:
                rows = await cur.fetchall()
        return [r["prompt"] for r in rows]


# ─────────────────────────────────────────────
# FastAPI Router
# ─────────────────────────────────────────────

router = APIRouter(tags=["jobs"])


class TrainModelRequest(BaseModel):
    zipUrl:     str
    name:       str
    type:       str = "Man"
    age:        int = 20
    ethinicity: str = "White"
    eyeColor:   str = "Brown"
    bald:       bool = False


class GenerateImageRequest(BaseModel):
    modelId: str
    prompt:  str


class GeneratePackRequest(BaseModel):
    packId:  str
    modelId: str


def get_gateway(request: Request) -> JobGateway:
    return request.app.state.gateway


def _http_error(e: LoraboothError) -> HTTPException:
    """Client errors keep their message; server-side ones don't leak details."""
    if e.status_code >= 500:
        logger.error(f"{type(e).__name__}: {e}")
        return HTTPException(e.status_code, "Service temporarily unavailable. Please retry.")
    return HTTPException(e.status_code, str(e))


def _image_dict(job: Job) -> Dict[str, Any]:
    return {
        "id":        job.id,
        "prompt":    job.input_ref,
        "modelId":   job.model_id,
        "imageUrl":  job.output_ref or "",
        "status":    job.status.value,
        "createdAt": job.created_at,
    }


@router.get("/pre-signed-url")
async def pre_signed_url(request: Request, user_id: str = Depends(get_current_user)):
    """PUT URL for the training-images archive."""
    try:
        return presign_upload(request.app.state.config)
    except S3Error as e:
        logger.error(f"Pre-signed URL failed: {e}")
        raise HTTPException(500, "Failed to generate pre-signed URL")


@router.post("/ai/training")
async def train_model(
    body:    TrainModelRequest,
    user_id: str        = Depends(get_current_user),
    gateway: JobGateway = Depends(get_gateway),
):
    try:
        job = await gateway.submit_training(
            user_id    = user_id,
            zip_url    = body.zipUrl,
            name       = body.name,
            attributes = {
                "type":       body.type,
                "age":        body.age,
                "ethinicity": body.ethinicity,
                "eyeColor":   body.eyeColor,
                "bald":       body.bald,
            },
        )
    except LoraboothError as e:
        raise _http_error(e)
    return {"modelId": job.id}


@router.post("/ai/generate")
async def generate_image(
    body:    GenerateImageRequest,
    user_id: str        = Depends(get_current_user),
    gateway: JobGateway = Depends(get_gateway),
):
    try:
        job = await gateway.submit_image(user_id, body.modelId, body.prompt)
    except LoraboothError as e:
        raise _http_error(e)
    return {"imageId": job.id}


@router.post("/pack/generate")
async def generate_pack(
    body:    GeneratePackRequest,
    user_id: str        = Depends(get_current_user),
    gateway: JobGateway = Depends(get_gateway),
):
    try:
        jobs = await gateway.submit_pack(user_id, body.packId, body.modelId)
    except LoraboothError as e:
        raise _http_error(e)
    return {"images": [j.id for j in jobs]}


@router.get("/models")
async def list_models(
    user_id: str        = Depends(get_current_user),
    gateway: JobGateway = Depends(get_gateway),
):
    models = await gateway.list_models(user_id)
    return {
        "models": [
            {
                "id":        m.id,
                "name":      m.name,
                "status":    m.status.value,
                "thumbnail": m.preview_ref,
                "createdAt": m.created_at,
                **m.attributes,
            }
            for m in models
        ]
    }


@router.get("/image/bulk")
async def list_images(
    ids:     Optional[List[str]] = Query(None),
    limit:   int        = Query(100, le=500),
    offset:  int        = Query(0, ge=0),
    user_id: str        = Depends(get_current_user),
    gateway: JobGateway = Depends(get_gateway),
):
    images = await gateway.list_images(user_id, ids=ids, limit=limit, offset=offset)
    return {"images": [_image_dict(j) for j in images]}


@router.get("/model/status/{model_id}")
async def model_status(
    model_id: str,
    user_id:  str        = Depends(get_current_user),
    gateway:  JobGateway = Depends(get_gateway),
):
    try:
        model = await gateway.get_model_status(user_id, model_id)
    except JobNotFound:
        raise HTTPException(404, detail={"success": False, "message": "Model not found"})
    return {"success": True, "model": model}
