from __future__ import annotations

import logging
from typing import Any

from regtruth.jobs.context import StageContext
from regtruth.services.capabilities import CapabilityError
from regtruth.services.queues import EXTRACT_QUEUE, EnqueueOptions
from regtruth.services.records import JobRecord

logger = logging.getLogger(__name__)


class DiscoveryFailedError(RuntimeError):
    """Raised when every source in a discovery batch failed to scan."""


async def execute_discovery(job: JobRecord, context: StageContext) -> dict[str, Any]:
    payload = job.payload
    run_id = payload.get("run_id")
    priority = payload.get("priority")
    sources = await context.repository.list_active_discovery_sources(priority=priority)

    scanned = 0
    failed: list[str] = []
    new_evidence = 0
    extract_job_ids: list[str] = []
    for source in sources:
        try:
            documents = await context.capabilities.scan(source, run_id=run_id)
        except CapabilityError as exc:
            logger.warning("Discovery scan failed source_id=%s url=%s: %s", source.id, source.url, exc)
            failed.append(source.id)
            continue
        scanned += 1

        for document in documents:
            evidence, created = await context.repository.create_evidence(
                source_id=source.id,
                url=str(document.get("url") or source.url),
                domain=source.domain,
                raw_content=str(document["content"]),
                content_type=str(document.get("content_type") or "text/html"),
            )
            if created:
                new_evidence += 1
            elif await context.repository.list_source_pointers(evidence_id=evidence.id, limit=1):
                continue
            extract_job_ids.append(
                await context.queue.enqueue(
                    EXTRACT_QUEUE,
                    {"evidence_id": evidence.id, "run_id": run_id},
                    EnqueueOptions(job_key=f"extract:{evidence.id}"),
                )
            )

    if sources and not scanned:
        raise DiscoveryFailedError(f"all {len(sources)} discovery sources failed for priority={priority}")

    logger.info(
        "Discovery run_id=%s priority=%s sources=%s failed=%s new_evidence=%s extract_jobs=%s",
        run_id,
        priority,
        len(sources),
        len(failed),
        new_evidence,
        len(extract_job_ids),
    )
    return {
        "sources": len(sources),
        "scanned": scanned,
        "failed_sources": failed,
        "new_evidence": new_evidence,
        "extract_job_ids": extract_job_ids,
    }
