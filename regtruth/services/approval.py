from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from regtruth.core.config import Settings
from regtruth.services.records import HUMAN_ONLY_RISK_TIERS, Rule

AUTO_APPROVAL_ACTOR = "system:auto-approval"


@dataclass(frozen=True, slots=True)
class ApprovalPolicy:
    min_confidence: float = 0.90
    grace_period: timedelta = timedelta(hours=24)

    @classmethod
    def from_settings(cls, settings: Settings) -> ApprovalPolicy:
        return cls(
            min_confidence=settings.auto_approve_min_confidence,
            grace_period=timedelta(hours=settings.auto_approve_grace_hours),
        )


@dataclass(slots=True)
class ApprovalDecision:
    approve: bool
    reason: str
    details: dict[str, Any] = field(default_factory=dict)


def decide(
    rule: Rule,
    now: datetime,
    *,
    has_open_conflict: bool,
    policy: ApprovalPolicy,
) -> ApprovalDecision:
    """Evaluate whether a rule may be approved without a human.

    Checks run in a fixed order and the first failing one is the reported reason.
    A refusal is a normal outcome, never an exception.
    """
    pending_since = rule.pending_since or rule.created_at
    pending_for = now - pending_since
    details: dict[str, Any] = {
        "risk_tier": rule.risk_tier,
        "confidence": rule.confidence,
        "min_confidence": policy.min_confidence,
        "pending_hours": round(pending_for.total_seconds() / 3600, 2),
        "grace_hours": round(policy.grace_period.total_seconds() / 3600, 2),
        "source_pointers": len(rule.source_pointer_ids),
        "has_open_conflict": has_open_conflict,
        "status": rule.status,
    }

    if rule.risk_tier in HUMAN_ONLY_RISK_TIERS:
        return ApprovalDecision(False, "risk_tier_requires_human_review", details)
    if rule.confidence < policy.min_confidence:
        return ApprovalDecision(False, "confidence_below_threshold", details)
    if pending_for < policy.grace_period:
        return ApprovalDecision(False, "grace_period_not_elapsed", details)
    if has_open_conflict:
        return ApprovalDecision(False, "open_conflict", details)
    if not rule.source_pointer_ids:
        return ApprovalDecision(False, "missing_source_pointers", details)
    if rule.status != "PENDING_REVIEW" or rule.superseded_by is not None:
        return ApprovalDecision(False, "not_pending_review", details)
    return ApprovalDecision(True, "eligible", details)


async def approve_if_eligible(
    repository: Any,
    rule: Rule,
    now: datetime,
    *,
    policy: ApprovalPolicy,
    actor: str = AUTO_APPROVAL_ACTOR,
) -> ApprovalDecision:
    has_open_conflict = await repository.rule_has_open_conflict(rule.id)
    decision = decide(rule, now, has_open_conflict=has_open_conflict, policy=policy)
    if decision.approve:
        await repository.transition_rule_status(
            rule_id=rule.id,
            from_statuses={"PENDING_REVIEW"},
            to_status="APPROVED",
            actor=actor,
            reason=decision.reason,
            metadata={"gate": decision.details},
        )
    return decision
