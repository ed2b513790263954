from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

JobStatus = Literal["queued", "claimed", "done", "dead_letter"]
RuleStatus = Literal["PENDING_REVIEW", "APPROVED", "PUBLISHED", "REJECTED"]
RiskTier = Literal["T0", "T1", "T2", "T3"]
AuthorityLevel = Literal["LAW", "GUIDANCE", "PROCEDURE", "PRACTICE"]
ConflictStatus = Literal["OPEN", "RESOLVED"]
SourcePriority = Literal["CRITICAL", "HIGH", "NORMAL", "LOW"]
SnapshotKind = Literal["health-snapshot", "consolidation-audit", "full-validation"]

JOB_STATUSES = {"queued", "claimed", "done", "dead_letter"}
ACTIVE_JOB_STATUSES = {"queued", "claimed"}
RULE_STATUSES = {"PENDING_REVIEW", "APPROVED", "PUBLISHED", "REJECTED"}
RISK_TIERS = ("T0", "T1", "T2", "T3")
HUMAN_ONLY_RISK_TIERS = {"T0", "T1"}
AUTO_APPROVABLE_RISK_TIERS = {"T2", "T3"}
AUTHORITY_LEVELS = ("LAW", "GUIDANCE", "PROCEDURE", "PRACTICE")
SOURCE_PRIORITIES = ("CRITICAL", "HIGH", "NORMAL", "LOW")
DECAY_ELIGIBLE_STATUSES = {"PUBLISHED", "APPROVED"}


@dataclass(slots=True)
class MachineCredentialRecord:
    module_db_id: str
    module_id: str
    scopes: list[str]
    key_hash: str


@dataclass(slots=True)
class JobRecord:
    id: str
    queue: str
    payload: dict[str, Any]
    status: JobStatus
    attempt: int
    max_attempts: int
    priority: int
    backoff_base_seconds: int
    lease_seconds: int | None
    job_key: str | None
    run_at: datetime
    created_at: datetime
    updated_at: datetime
    locked_by: str | None = None
    lease_expires_at: datetime | None = None
    last_claimed_at: datetime | None = None
    result: dict[str, Any] | None = None
    last_error: str | None = None
    first_failed_at: datetime | None = None


@dataclass(slots=True)
class DeadLetterRecord:
    id: str
    job_id: str
    queue: str
    payload: dict[str, Any]
    error: str
    stack: str | None
    attempts: int
    first_failed_at: datetime
    last_failed_at: datetime
    created_at: datetime
    replayed_at: datetime | None = None
    replay_job_id: str | None = None


@dataclass(slots=True)
class DiscoverySource:
    id: str
    name: str
    url: str
    domain: str
    priority: SourcePriority
    active: bool = True


@dataclass(slots=True)
class Evidence:
    id: str
    source_id: str | None
    url: str
    domain: str
    raw_content: str
    content_type: str
    content_hash: str
    captured_at: datetime


@dataclass(slots=True)
class SourcePointer:
    id: str
    evidence_id: str
    concept_slug: str
    extracted_value: str
    value_type: str
    exact_quote: str
    confidence: float
    created_at: datetime


@dataclass(slots=True)
class Rule:
    id: str
    concept_slug: str
    value: str
    value_type: str
    status: RuleStatus
    risk_tier: RiskTier
    authority_level: AuthorityLevel
    confidence: float
    base_confidence: float
    source_pointer_ids: list[str]
    created_at: datetime
    updated_at: datetime
    pending_since: datetime | None = None
    applies_when: list[str] = field(default_factory=list)
    overrides: list[str] = field(default_factory=list)
    version: int = 1
    review_notes: list[dict[str, Any]] = field(default_factory=list)
    approved_by: str | None = None
    last_verified_at: datetime | None = None
    published_at: datetime | None = None
    superseded_by: str | None = None


@dataclass(slots=True)
class Conflict:
    id: str
    status: ConflictStatus
    rule_ids: list[str]
    reason: str
    created_at: datetime
    updated_at: datetime
    resolution: dict[str, Any] | None = None
    resolved_at: datetime | None = None


@dataclass(slots=True)
class Release:
    id: str
    release_key: str
    rule_ids: list[str]
    content_hash: str
    created_at: datetime


@dataclass(slots=True)
class AuditLogEntry:
    id: str
    action: str
    entity_type: str
    entity_id: str
    actor: str
    reason: str | None
    metadata: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class HealthAlert:
    type: str
    severity: Literal["info", "warning", "critical"]
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class HealthSnapshot:
    id: str
    kind: SnapshotKind
    run_id: str | None
    healthy: bool
    counts: dict[str, Any]
    alerts: list[HealthAlert]
    details: dict[str, Any]
    created_at: datetime
