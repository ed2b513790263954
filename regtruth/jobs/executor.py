from __future__ import annotations

import logging
from typing import Any

from regtruth.jobs.arbitration import execute_arbitration
from regtruth.jobs.composition import execute_composition
from regtruth.jobs.context import StageContext
from regtruth.jobs.discovery import execute_discovery
from regtruth.jobs.extraction import execute_extraction
from regtruth.jobs.orchestrator import Orchestrator
from regtruth.jobs.release import execute_release
from regtruth.jobs.review import execute_review
from regtruth.services.queues import (
    ARBITER_QUEUE,
    COMPOSE_QUEUE,
    DISCOVERY_QUEUE,
    EXTRACT_QUEUE,
    RELEASE_QUEUE,
    REVIEW_QUEUE,
    SCHEDULED_QUEUE,
)
from regtruth.services.records import JobRecord

logger = logging.getLogger(__name__)


class JobExecutor:
    def __init__(self, context: StageContext, *, orchestrator: Orchestrator | None = None) -> None:
        self.context = context
        self.orchestrator = orchestrator or Orchestrator(context)

    async def execute(self, job: JobRecord) -> dict[str, Any]:
        if job.queue == SCHEDULED_QUEUE:
            # Command failures are reported in the result, never retried.
            return (await self.orchestrator.handle(job.payload)).as_dict()
        if job.queue == DISCOVERY_QUEUE:
            return await execute_discovery(job, self.context)
        if job.queue == EXTRACT_QUEUE:
            return await execute_extraction(job, self.context)
        if job.queue == COMPOSE_QUEUE:
            return await execute_composition(job, self.context)
        if job.queue == REVIEW_QUEUE:
            return await execute_review(job, self.context)
        if job.queue == ARBITER_QUEUE:
            return await execute_arbitration(job, self.context)
        if job.queue == RELEASE_QUEUE:
            return await execute_release(job, self.context)

        logger.warning("No handler for queue=%s job_id=%s", job.queue, job.id)
        return {"handled": False, "queue": job.queue}
