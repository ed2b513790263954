from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from regtruth.core.config import Settings
from regtruth.services.capabilities import CapabilityClient
from regtruth.services.queues import JobQueue, QueueRegistry, build_queue_registry


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class StageContext:
    """Everything a job handler may touch; workers build one per process."""

    settings: Settings
    repository: Any
    registry: QueueRegistry
    queue: JobQueue
    capabilities: Any
    clock: Callable[[], datetime] = field(default=_utcnow)


def build_stage_context(
    settings: Settings,
    repository: Any,
    *,
    registry: QueueRegistry | None = None,
    capabilities: Any | None = None,
    clock: Callable[[], datetime] | None = None,
) -> StageContext:
    registry = registry or build_queue_registry(settings)
    return StageContext(
        settings=settings,
        repository=repository,
        registry=registry,
        queue=JobQueue(repository, registry),
        capabilities=capabilities or CapabilityClient.from_settings(settings),
        clock=clock or _utcnow,
    )
