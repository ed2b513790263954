from __future__ import annotations

from typing import Any

from regtruth.jobs.context import StageContext
from regtruth.services.arbiter import ConflictResolver
from regtruth.services.records import JobRecord


async def execute_arbitration(job: JobRecord, context: StageContext) -> dict[str, Any]:
    resolver = ConflictResolver(
        context.repository,
        context.capabilities,
        min_confidence=context.settings.arbitration_min_confidence,
        clock=context.clock,
    )
    outcome = await resolver.resolve(job.payload["conflict_id"])
    return outcome.as_dict()
