from typing import Literal

from pydantic import BaseModel, Field

from regtruth.jobs.orchestrator import CommandType

ReviewDecision = Literal["approve", "reject"]


class PipelineTriggerRequest(BaseModel):
    phases: list[CommandType] = Field(min_length=1)
    run_id: str | None = Field(default=None, min_length=1, max_length=128)


class PipelineTriggerOut(BaseModel):
    run_id: str
    status: Literal["queued"] = "queued"
    job_ids: dict[str, str]


class RuleReviewRequest(BaseModel):
    decision: ReviewDecision
    reason: str | None = Field(default=None, max_length=2000)
