"""Pydantic models for the jobs API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from rowqueue.db.models import JobStatus
from rowqueue.schemas.payloads import Params, Payload


class JobCreate(BaseModel):
    payload: Payload
    params: Params | None = None


class JobBulkCreate(BaseModel):
    jobs: list[JobCreate] = Field(min_length=1, max_length=1000)


class JobBulkOut(BaseModel):
    ids: list[int]


class JobOut(BaseModel):
    id: int
    status: JobStatus
    payload: dict[str, Any]
    params: dict[str, Any] | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class JobFailRequest(BaseModel):
    error: str | None = Field(default=None, max_length=2000)


class JobStats(BaseModel):
    Queued: int = 0
    Running: int = 0
    Failed: int = 0
