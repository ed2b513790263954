from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from regtruth.jobs.orchestrator import CommandType

JobStatus = Literal["queued", "claimed", "done", "dead_letter"]


class JobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    queue: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus
    attempt: int
    max_attempts: int
    priority: int
    job_key: str | None = None
    run_at: datetime
    locked_by: str | None = None
    lease_expires_at: datetime | None = None
    last_error: str | None = None
    result: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime


class DeadLetterOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    queue: str
    payload: dict[str, Any] = Field(default_factory=dict)
    error: str
    stack: str | None = None
    attempts: int
    first_failed_at: datetime
    last_failed_at: datetime
    created_at: datetime
    replayed_at: datetime | None = None
    replay_job_id: str | None = None


class ReapExpiredOut(BaseModel):
    requeued: int
    dead_lettered: int


class CommandRequest(BaseModel):
    command_type: CommandType
    run_id: str | None = Field(default=None, min_length=1, max_length=128)
    job_key: str | None = Field(default=None, min_length=1, max_length=255)


class CommandQueuedOut(BaseModel):
    job_id: str
    run_id: str
    command_type: CommandType
    status: Literal["queued"] = "queued"
