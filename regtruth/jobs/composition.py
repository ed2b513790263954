from __future__ import annotations

import logging
from typing import Any

from regtruth.jobs.context import StageContext
from regtruth.services.capabilities import CapabilityError
from regtruth.services.queues import REVIEW_QUEUE, EnqueueOptions
from regtruth.services.records import AUTHORITY_LEVELS, RISK_TIERS, JobRecord, Rule
from regtruth.services.repository import RepositoryNotFoundError

logger = logging.getLogger(__name__)

COMPOSER_ACTOR = "system:composer"


def _conflict_reason(rule: Rule, other: Rule) -> str:
    return f"{rule.concept_slug}: value {rule.value!r} contradicts {other.value!r}"


async def execute_composition(job: JobRecord, context: StageContext) -> dict[str, Any]:
    pointer_ids = sorted(str(item) for item in job.payload.get("pointer_ids") or [])
    if not pointer_ids:
        raise RepositoryNotFoundError("composition job has no source pointers")

    rule = await context.repository.find_rule_by_pointer_set(pointer_ids)
    created = False
    if rule is None:
        pointers = await context.repository.list_source_pointers(pointer_ids=pointer_ids)
        if len(pointers) != len(pointer_ids):
            raise RepositoryNotFoundError("source pointers not found")
        draft = await context.capabilities.compose(pointers)
        risk_tier = str(draft["risk_tier"]).upper()
        authority_level = str(draft.get("authority_level") or "PRACTICE").upper()
        if risk_tier not in RISK_TIERS or authority_level not in AUTHORITY_LEVELS:
            raise CapabilityError("composition", f"invalid risk tier {risk_tier} or authority {authority_level}")
        rule, created = await context.repository.create_rule(
            concept_slug=str(draft["concept_slug"]),
            value=str(draft["value"]),
            value_type=str(draft.get("value_type") or pointers[0].value_type),
            risk_tier=risk_tier,
            authority_level=authority_level,
            confidence=float(draft["confidence"]),
            source_pointer_ids=pointer_ids,
            applies_when=[str(item) for item in draft.get("applies_when") or []],
            overrides=[str(item) for item in draft.get("overrides") or []],
            actor=COMPOSER_ACTOR,
        )

    conflict_ids: list[str] = []
    if rule.status != "REJECTED" and rule.superseded_by is None:
        for other in await context.repository.find_conflicting_rules(rule):
            conflict, opened = await context.repository.create_conflict(
                rule_ids=[rule.id, other.id],
                reason=_conflict_reason(rule, other),
                actor=COMPOSER_ACTOR,
            )
            if opened:
                logger.info("Opened conflict_id=%s between rules %s and %s", conflict.id, rule.id, other.id)
            conflict_ids.append(conflict.id)

    review_job_id: str | None = None
    if rule.status == "PENDING_REVIEW":
        review_job_id = await context.queue.enqueue(
            REVIEW_QUEUE,
            {"rule_id": rule.id, "run_id": job.payload.get("run_id")},
            EnqueueOptions(job_key=f"review:{rule.id}"),
        )

    return {
        "rule_id": rule.id,
        "created": created,
        "conflict_ids": conflict_ids,
        "review_job_id": review_job_id,
    }
