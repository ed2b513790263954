from __future__ import annotations

import logging
from typing import Any

from regtruth.jobs.context import StageContext
from regtruth.services.capabilities import needs_ocr
from regtruth.services.queues import COMPOSE_QUEUE, EnqueueOptions, stable_batch_key
from regtruth.services.records import JobRecord, SourcePointer

logger = logging.getLogger(__name__)


def group_by_concept(pointers: list[SourcePointer]) -> dict[str, list[str]]:
    groups: dict[str, list[str]] = {}
    for pointer in pointers:
        groups.setdefault(pointer.concept_slug, []).append(pointer.id)
    return {slug: sorted(ids) for slug, ids in groups.items()}


async def execute_extraction(job: JobRecord, context: StageContext) -> dict[str, Any]:
    evidence = await context.repository.get_evidence(job.payload["evidence_id"])
    pointers = await context.repository.list_source_pointers(evidence_id=evidence.id)
    ocr_engine: str | None = None

    if pointers:
        logger.info("Evidence %s already extracted; re-enqueueing composition only", evidence.id)
    else:
        text: str | None = None
        if needs_ocr(evidence):
            text, ocr_engine = await context.capabilities.recognize_with_fallback(evidence)
        drafts = await context.capabilities.extract(evidence, text=text)
        pointers = await context.repository.create_source_pointers(evidence_id=evidence.id, pointers=drafts)

    compose_job_ids: list[str] = []
    for pointer_ids in group_by_concept(pointers).values():
        compose_job_ids.append(
            await context.queue.enqueue(
                COMPOSE_QUEUE,
                {"pointer_ids": pointer_ids, "evidence_id": evidence.id, "run_id": job.payload.get("run_id")},
                EnqueueOptions(job_key=stable_batch_key("compose", pointer_ids)),
            )
        )

    return {
        "evidence_id": evidence.id,
        "pointers": len(pointers),
        "ocr_engine": ocr_engine,
        "compose_job_ids": compose_job_ids,
    }
