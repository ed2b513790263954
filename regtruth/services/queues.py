from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any

from regtruth.core.config import Settings

logger = logging.getLogger(__name__)

SCHEDULED_QUEUE = "scheduled"
DISCOVERY_QUEUE = "discovery"
EXTRACT_QUEUE = "extract"
COMPOSE_QUEUE = "compose"
REVIEW_QUEUE = "review"
ARBITER_QUEUE = "arbiter"
RELEASE_QUEUE = "release"

STAGE_QUEUES = (
    DISCOVERY_QUEUE,
    EXTRACT_QUEUE,
    COMPOSE_QUEUE,
    REVIEW_QUEUE,
    ARBITER_QUEUE,
    RELEASE_QUEUE,
)


@dataclass(frozen=True, slots=True)
class RateLimit:
    max_jobs: int
    window_seconds: int


@dataclass(frozen=True, slots=True)
class QueueSpec:
    name: str
    concurrency: int = 1
    max_attempts: int = 3
    backoff_base_seconds: int = 10
    lease_seconds: int = 300
    rate_limit: RateLimit | None = None


@dataclass(frozen=True, slots=True)
class EnqueueOptions:
    delay_seconds: int = 0
    priority: int = 0
    max_attempts: int | None = None
    backoff_base_seconds: int | None = None
    lease_seconds: int | None = None
    job_key: str | None = None


class UnknownQueueError(KeyError):
    """Raised when a queue name is not registered."""


class QueueRegistry:
    """Explicit set of queues a process may enqueue to or consume from."""

    def __init__(self, specs: Iterable[QueueSpec]) -> None:
        self._specs: dict[str, QueueSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: QueueSpec) -> None:
        if spec.concurrency < 1:
            raise ValueError(f"queue {spec.name} concurrency must be >= 1")
        if spec.name == SCHEDULED_QUEUE and spec.concurrency != 1:
            raise ValueError("the scheduled queue serializes dispatch and must run at concurrency 1")
        if spec.max_attempts < 1:
            raise ValueError(f"queue {spec.name} max_attempts must be >= 1")
        if spec.rate_limit is not None and (spec.rate_limit.max_jobs < 1 or spec.rate_limit.window_seconds < 1):
            raise ValueError(f"queue {spec.name} rate limit must be positive")
        self._specs[spec.name] = spec

    def get(self, name: str) -> QueueSpec:
        try:
            return self._specs[name]
        except KeyError as exc:
            raise UnknownQueueError(name) from exc

    def names(self) -> list[str]:
        return list(self._specs)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[QueueSpec]:
        return iter(self._specs.values())

    def resolve_options(self, name: str, options: EnqueueOptions | None) -> tuple[QueueSpec, EnqueueOptions]:
        spec = self.get(name)
        options = options or EnqueueOptions()
        return spec, EnqueueOptions(
            delay_seconds=max(0, options.delay_seconds),
            priority=options.priority,
            max_attempts=max(1, options.max_attempts or spec.max_attempts),
            backoff_base_seconds=max(
                0,
                options.backoff_base_seconds if options.backoff_base_seconds is not None else spec.backoff_base_seconds,
            ),
            lease_seconds=max(1, options.lease_seconds or spec.lease_seconds),
            job_key=options.job_key,
        )


def build_queue_registry(settings: Settings) -> QueueRegistry:
    def spec(name: str, **overrides: object) -> QueueSpec:
        values: dict[str, object] = {
            "name": name,
            "max_attempts": settings.job_max_attempts,
            "backoff_base_seconds": settings.job_backoff_base_seconds,
            "lease_seconds": settings.job_lease_seconds,
        }
        values.update(overrides)
        return QueueSpec(**values)  # type: ignore[arg-type]

    return QueueRegistry(
        [
            spec(SCHEDULED_QUEUE, concurrency=1),
            spec(DISCOVERY_QUEUE),
            spec(
                EXTRACT_QUEUE,
                concurrency=max(1, settings.extract_concurrency),
                rate_limit=RateLimit(
                    max_jobs=settings.extract_rate_limit_max,
                    window_seconds=settings.extract_rate_limit_window_seconds,
                ),
            ),
            spec(COMPOSE_QUEUE),
            spec(REVIEW_QUEUE),
            spec(ARBITER_QUEUE),
            spec(RELEASE_QUEUE),
        ]
    )


def compute_retry_delay_seconds(*, attempt: int, base_seconds: int) -> int:
    if base_seconds <= 0:
        return 0
    multiplier = max(0, attempt - 1)
    return base_seconds * (2**multiplier)


def stable_batch_key(prefix: str, ids: Iterable[str]) -> str:
    digest = hashlib.sha256(",".join(sorted(ids)).encode("utf-8")).hexdigest()
    return f"{prefix}:{digest[:32]}"


class JobQueue:
    """Queue operations with per-queue defaults from the registry applied."""

    def __init__(self, repository: Any, registry: QueueRegistry) -> None:
        self.repository = repository
        self.registry = registry

    async def enqueue(self, queue: str, payload: dict[str, Any], options: EnqueueOptions | None = None) -> str:
        spec, resolved = self.registry.resolve_options(queue, options)
        job_id, created = await self.repository.enqueue_job(
            queue=spec.name,
            payload=payload,
            priority=resolved.priority,
            delay_seconds=resolved.delay_seconds,
            max_attempts=resolved.max_attempts or spec.max_attempts,
            backoff_base_seconds=(
                resolved.backoff_base_seconds if resolved.backoff_base_seconds is not None else spec.backoff_base_seconds
            ),
            lease_seconds=resolved.lease_seconds,
            job_key=resolved.job_key,
        )
        if created:
            logger.info(
                "Enqueued job id=%s queue=%s delay=%ss key=%s",
                job_id,
                spec.name,
                resolved.delay_seconds,
                resolved.job_key,
            )
        else:
            logger.info("Skipped duplicate enqueue queue=%s key=%s existing=%s", spec.name, resolved.job_key, job_id)
        return job_id

    async def claim(self, queue: str, worker_id: str) -> Any:
        spec = self.registry.get(queue)
        return await self.repository.claim_next_job(
            queue=spec.name,
            worker_id=worker_id,
            default_lease_seconds=spec.lease_seconds,
            rate_limit=spec.rate_limit,
        )

    async def complete(self, job_id: str, worker_id: str, result: dict[str, Any] | None) -> Any:
        return await self.repository.complete_job(job_id=job_id, worker_id=worker_id, result=result)

    async def fail(self, job_id: str, worker_id: str, error: str, stack: str | None = None) -> Any:
        return await self.repository.fail_job(job_id=job_id, worker_id=worker_id, error=error, stack=stack)

    async def replay_dead_letter(self, dead_letter_id: str, actor: str) -> Any:
        record = await self.repository.get_dead_letter(dead_letter_id)
        spec = self.registry.get(record.queue)
        replayed = await self.repository.replay_dead_letter(
            dead_letter_id=dead_letter_id,
            actor=actor,
            max_attempts=spec.max_attempts,
            backoff_base_seconds=spec.backoff_base_seconds,
            lease_seconds=spec.lease_seconds,
        )
        logger.info(
            "Replayed dead letter id=%s queue=%s replay_job_id=%s actor=%s",
            replayed.id,
            replayed.queue,
            replayed.replay_job_id,
            actor,
        )
        return replayed
