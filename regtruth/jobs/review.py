from __future__ import annotations

from typing import Any

from regtruth.jobs.context import StageContext
from regtruth.services.approval import AUTO_APPROVAL_ACTOR, ApprovalPolicy, approve_if_eligible
from regtruth.services.records import JobRecord


async def execute_review(job: JobRecord, context: StageContext) -> dict[str, Any]:
    rule = await context.repository.get_rule(job.payload["rule_id"])
    if rule.status != "PENDING_REVIEW":
        return {"rule_id": rule.id, "skipped": True, "status": rule.status}

    now = context.clock()
    decision = await approve_if_eligible(
        context.repository,
        rule,
        now,
        policy=ApprovalPolicy.from_settings(context.settings),
    )
    if not decision.approve:
        last_note = rule.review_notes[-1] if rule.review_notes else {}
        if last_note.get("kind") != "awaiting_human_review" or last_note.get("reason") != decision.reason:
            await context.repository.append_review_note(
                rule_id=rule.id,
                note={
                    "kind": "awaiting_human_review",
                    "author": AUTO_APPROVAL_ACTOR,
                    "at": now.isoformat(),
                    "reason": decision.reason,
                    "details": decision.details,
                },
            )
    return {"rule_id": rule.id, "approved": decision.approve, "reason": decision.reason}
