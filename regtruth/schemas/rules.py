from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

RuleStatus = Literal["PENDING_REVIEW", "APPROVED", "PUBLISHED", "REJECTED"]
SnapshotKind = Literal["health-snapshot", "consolidation-audit", "full-validation"]


class RuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    concept_slug: str
    value: str
    value_type: str
    status: RuleStatus
    risk_tier: str
    authority_level: str
    confidence: float
    base_confidence: float
    source_pointer_ids: list[str] = Field(default_factory=list)
    applies_when: list[str] = Field(default_factory=list)
    overrides: list[str] = Field(default_factory=list)
    version: int
    review_notes: list[dict[str, Any]] = Field(default_factory=list)
    pending_since: datetime | None = None
    approved_by: str | None = None
    last_verified_at: datetime | None = None
    published_at: datetime | None = None
    superseded_by: str | None = None
    created_at: datetime
    updated_at: datetime


class AuditLogEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    action: str
    entity_type: str
    entity_id: str
    actor: str
    reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class HealthAlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    type: str
    severity: Literal["info", "warning", "critical"]
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class HealthSnapshotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: SnapshotKind
    run_id: str | None = None
    healthy: bool
    counts: dict[str, Any] = Field(default_factory=dict)
    alerts: list[HealthAlertOut] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
