from __future__ import annotations

import logging
from typing import Any

from regtruth.jobs.context import StageContext
from regtruth.services.queues import stable_batch_key
from regtruth.services.records import JobRecord
from regtruth.services.repository import RepositoryConflictError, release_content_hash

logger = logging.getLogger(__name__)

RELEASER_ACTOR = "system:releaser"


async def execute_release(job: JobRecord, context: StageContext) -> dict[str, Any]:
    rule_ids = sorted(str(item) for item in job.payload.get("rule_ids") or [])
    release_key = str(job.payload.get("release_key") or stable_batch_key("release", rule_ids))
    rules = await context.repository.list_rules_by_ids(rule_ids)

    release, created = await context.repository.create_release(
        release_key=release_key,
        rule_ids=rule_ids,
        content_hash=release_content_hash(rules),
    )

    published: list[str] = []
    skipped: list[str] = []
    for rule in rules:
        if rule.status != "APPROVED" or rule.superseded_by is not None or not rule.source_pointer_ids:
            skipped.append(rule.id)
            continue
        try:
            await context.repository.transition_rule_status(
                rule_id=rule.id,
                from_statuses={"APPROVED"},
                to_status="PUBLISHED",
                actor=RELEASER_ACTOR,
                reason="released",
                metadata={"release_id": release.id, "release_key": release.release_key},
            )
        except RepositoryConflictError as exc:
            logger.warning("Skipped publishing rule_id=%s in release %s: %s", rule.id, release.release_key, exc)
            skipped.append(rule.id)
            continue
        published.append(rule.id)

    logger.info(
        "Release %s created=%s published=%s skipped=%s",
        release.release_key,
        created,
        len(published),
        len(skipped),
    )
    return {
        "release_id": release.id,
        "release_key": release.release_key,
        "created": created,
        "published": published,
        "skipped": skipped,
    }
