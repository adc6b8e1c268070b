"""Test doubles and seed helpers shared across the test modules."""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from lorabooth.core.database import get_db
from lorabooth.models.job import JobKind, JobStatus


# ─────────────────────────────────────────────
# Fake Replicate API
# ─────────────────────────────────────────────
class FakeReplicate:
    """
    httpx.MockTransport handler.

    POST  → new prediction id (pred_1, pred_2, ...) unless the prompt is
            in `reject` or `fail_all` is set
    GET   → prediction status for the preview poll
    HEAD  → `head_status` (zip archive check)
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.reject: set = set()
        self.fail_all = False
        self.head_status = 200
        self.preview_status = "succeeded"
        self.preview_output: Any = ["https://cdn.example.com/preview.png"]
        self._count = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.method == "HEAD":
            return httpx.Response(self.head_status)

        if request.method == "GET":
            pred_id = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={
                "id":     pred_id,
                "status": self.preview_status,
                "output": self.preview_output,
            })

        body = json.loads(request.content)
        prompt = body.get("input", {}).get("prompt")
        if self.fail_all or prompt in self.reject:
            return httpx.Response(500, json={"detail": "boom"})

        self._count += 1
        pred_id = f"pred_{self._count}"
        return httpx.Response(201, json={
            "id":     pred_id,
            "status": "starting",
            "urls":   {"get": f"https://api.replicate.com/v1/predictions/{pred_id}"},
        })

    @property
    def creates(self) -> List[Dict[str, Any]]:
        """JSON bodies of every prediction create call."""
        return [json.loads(r.content) for r in self.requests if r.method == "POST"]

    @property
    def preview_creates(self) -> List[Dict[str, Any]]:
        # previews are the only creates without a webhook
        return [b for b in self.creates if "webhook" not in b]


# ─────────────────────────────────────────────
# Seed helpers
# ─────────────────────────────────────────────
async def insert_job(
    db_path:             str,
    job_id:              str,
    user_id:             str = "user_1",
    provider_request_id: Optional[str] = None,
    kind:                JobKind = JobKind.TRAINING,
    status:              JobStatus = JobStatus.PENDING,
    output_ref:          Optional[str] = None,
    cost:                int = 20,
    batch_id:            Optional[str] = None,
):
    now = datetime.now(timezone.utc).isoformat()
    async with get_db(db_path) as conn:
        await conn.execute(
            """INSERT INTO jobs
               (id, user_id, provider_request_id, kind, status, input_ref, output_ref,
                batch_id, name, cost, created_at, updated_at)
               VALUES (?,?,?,?,?,?,?,?,?,?,?,?)""",
            (job_id, user_id, provider_request_id or f"req_{job_id}", kind.value,
             status.value, "https://bucket.s3.amazonaws.com/models/a.zip", output_ref,
             batch_id, "ravi", cost, now, now)
        )
        await conn.commit()


async def insert_pack(db_path: str, pack_id: str, prompts: List[str]):
    now = datetime.now(timezone.utc).isoformat()
    async with get_db(db_path) as conn:
        await conn.execute(
            "INSERT INTO packs (id, name, created_at) VALUES (?,?,?)", (pack_id, pack_id, now)
        )
        await conn.executemany(
            "INSERT INTO pack_prompts (id, pack_id, prompt) VALUES (?,?,?)",
            [(f"{pack_id}_{i:02d}", pack_id, p) for i, p in enumerate(prompts)]
        )
        await conn.commit()


async def fetch_jobs(db_path: str) -> List[Dict[str, Any]]:
    async with get_db(db_path) as conn:
        async with conn.execute("SELECT * FROM jobs ORDER BY created_at") as cur:
            return [dict(r) for r in await cur.fetchall()]
