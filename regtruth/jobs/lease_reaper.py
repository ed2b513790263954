from __future__ import annotations

import logging
from typing import Any

from regtruth.services.dead_letters import DeadLetterMonitor

logger = logging.getLogger(__name__)

REAPER_ACTOR = "system:lease-reaper"


async def reap_expired_leases(
    repository: Any,
    *,
    limit: int,
    monitor: DeadLetterMonitor | None = None,
    actor: str = REAPER_ACTOR,
) -> dict[str, int]:
    counts = await repository.requeue_expired_jobs(limit=limit, actor=actor)
    if counts["requeued"] or counts["dead_lettered"]:
        logger.info(
            "Reaped expired leases requeued=%s dead_lettered=%s",
            counts["requeued"],
            counts["dead_lettered"],
        )
    if counts["dead_lettered"] and monitor is not None:
        await monitor.check(source="lease-reaper")
    return counts
