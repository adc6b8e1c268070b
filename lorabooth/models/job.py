"""
lorabooth — models/job.py
─────────────────────────────────────────────────────────────────
Jobs (training runs + image generations) and pack prompt tables,
enums and dataclass.
─────────────────────────────────────────────────────────────────
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────
class JobKind(str, Enum):
    TRAINING = "training"
    IMAGE    = "image"


class JobStatus(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    SUCCEEDED  = "succeeded"
    FAILED     = "failed"


TERMINAL_STATUSES = (JobStatus.SUCCEEDED, JobStatus.FAILED)
OPEN_STATUSES     = (JobStatus.PENDING, JobStatus.PROCESSING)


# ─────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────
JOBS_TABLE = """
    CREATE TABLE IF NOT EXISTS jobs (
        id                  TEXT PRIMARY KEY,
        user_id             TEXT NOT NULL,
        provider_request_id TEXT NOT NULL UNIQUE,
        kind                TEXT NOT NULL,
        status              TEXT NOT NULL DEFAULT 'pending',
        input_ref           TEXT NOT NULL,          -- zip URL or prompt
        output_ref          TEXT,                   -- LoRA weights or image URL
        preview_ref         TEXT,                   -- training thumbnail
        model_id            TEXT,                   -- image jobs: training job used
        batch_id            TEXT,                   -- pack generations
        name                TEXT,
        attributes          TEXT NOT NULL DEFAULT '{}',   -- JSON
        cost                INTEGER NOT NULL,
        fail_reason         TEXT,
        created_at          TEXT NOT NULL,
        updated_at          TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_jobs_user
        ON jobs(user_id, kind, created_at DESC);
"""

PACKS_TABLE = """
    CREATE TABLE IF NOT EXISTS packs (
        id          TEXT PRIMARY KEY,
        name        TEXT NOT NULL,
        created_at  TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS pack_prompts (
        id      TEXT PRIMARY KEY,
        pack_id TEXT NOT NULL REFERENCES packs(id),
        prompt  TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_pack_prompts_pack
        ON pack_prompts(pack_id);
"""


# ─────────────────────────────────────────────
# Dataclass
# ─────────────────────────────────────────────
@dataclass
class Job:
    id:                  str
    user_id:             str
    provider_request_id: str
    kind:                JobKind
    status:              JobStatus
    input_ref:           str
    output_ref:          Optional[str]
    preview_ref:         Optional[str]
    model_id:            Optional[str]
    batch_id:            Optional[str]
    name:                Optional[str]
    cost:                int
    fail_reason:         Optional[str]
    created_at:          str
    updated_at:          str
    attributes:          Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def job_from_row(row) -> Job:
    return Job(
        id                  = row["id"],
        user_id             = row["user_id"],
        provider_request_id = row["provider_request_id"],
        kind                = JobKind(row["kind"]),
        status              = JobStatus(row["status"]),
        input_ref           = row["input_ref"],
        output_ref          = row["output_ref"],
        preview_ref         = row["preview_ref"],
        model_id            = row["model_id"],
        batch_id            = row["batch_id"],
        name                = row["name"],
        cost                = int(row["cost"]),
        fail_reason         = row["fail_reason"],
        created_at          = row["created_at"],
        updated_at          = row["updated_at"],
        attributes          = json.loads(row["attributes"]) if row["attributes"] else {},
    )
