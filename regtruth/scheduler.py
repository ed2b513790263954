from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Literal
from uuid import NAMESPACE_URL, uuid5
from zoneinfo import ZoneInfo

from opentelemetry import trace

from regtruth.core.config import Settings, get_settings
from regtruth.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from regtruth.jobs.orchestrator import CommandType, enqueue_command
from regtruth.services.queues import JobQueue, build_queue_registry
from regtruth.services.repository import get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SCHEDULER_ACTOR = "system:scheduler"

ScheduleKind = Literal["daily", "weekly", "interval"]


@dataclass(frozen=True, slots=True)
class ScheduleEntry:
    command: CommandType
    kind: ScheduleKind
    at: time = time(0, 0)
    weekday: int = 0
    every_minutes: int = 0

    def latest_slot(self, local_now: datetime) -> datetime:
        """Most recent slot at or before ``local_now`` (timezone-aware, local)."""
        midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        if self.kind == "interval":
            minutes = local_now.hour * 60 + local_now.minute
            return midnight + timedelta(minutes=minutes - minutes % self.every_minutes)

        slot = midnight.replace(hour=self.at.hour, minute=self.at.minute)
        if self.kind == "daily":
            return slot if slot <= local_now else slot - timedelta(days=1)

        slot -= timedelta(days=(local_now.weekday() - self.weekday) % 7)
        return slot if slot <= local_now else slot - timedelta(days=7)


def default_schedule(settings: Settings) -> list[ScheduleEntry]:
    return [
        ScheduleEntry(CommandType.HEALTH_SNAPSHOT, "daily", at=time(0, 0)),
        ScheduleEntry(CommandType.CONFIDENCE_DECAY, "weekly", at=time(3, 0), weekday=6),
        ScheduleEntry(CommandType.CONSOLIDATION_AUDIT, "daily", at=time(4, 0)),
        ScheduleEntry(CommandType.FULL_VALIDATION, "daily", at=time(5, 0)),
        ScheduleEntry(CommandType.DISCOVERY_RUN, "daily", at=time(6, 0)),
        ScheduleEntry(CommandType.AUTO_APPROVE_SWEEP, "interval", every_minutes=settings.auto_approve_interval_minutes),
        ScheduleEntry(CommandType.CONFLICT_SWEEP, "interval", every_minutes=settings.sweep_interval_minutes),
        ScheduleEntry(CommandType.RELEASE_SWEEP, "interval", every_minutes=settings.sweep_interval_minutes),
    ]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Scheduler:
    def __init__(
        self,
        queue: JobQueue,
        settings: Settings,
        *,
        entries: list[ScheduleEntry] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.queue = queue
        self.settings = settings
        self.entries = entries if entries is not None else default_schedule(settings)
        self.clock = clock or _utcnow
        self.zone = ZoneInfo(settings.scheduler_timezone)
        local_now = self.clock().astimezone(self.zone)
        # Slots already due at startup belong to whichever instance was running then.
        self._last_fired = {entry: entry.latest_slot(local_now) for entry in self.entries}

    async def tick(self) -> list[str]:
        local_now = self.clock().astimezone(self.zone)
        job_ids: list[str] = []
        for entry in self.entries:
            slot = entry.latest_slot(local_now)
            if slot <= self._last_fired[entry]:
                continue
            slot_key = f"{entry.command.value}:{slot.isoformat()}"
            job_id = await enqueue_command(
                self.queue,
                entry.command,
                full_validation_lease_seconds=self.settings.full_validation_lease_seconds,
                run_id=str(uuid5(NAMESPACE_URL, slot_key)),
                triggered_by=SCHEDULER_ACTOR,
                job_key=slot_key,
            )
            self._last_fired[entry] = slot
            logger.info("Scheduled %s for slot %s job_id=%s", entry.command.value, slot.isoformat(), job_id)
            job_ids.append(job_id)
        return job_ids

    async def run(self) -> None:
        logger.info("Scheduler started entries=%s timezone=%s", len(self.entries), self.settings.scheduler_timezone)
        while True:
            try:
                with tracer.start_as_current_span("scheduler.tick"):
                    await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduler tick failed")
            await asyncio.sleep(self.settings.scheduler_tick_seconds)


async def run_scheduler(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings, service_role="scheduler")
    repository = get_repository()
    scheduler = Scheduler(JobQueue(repository, build_queue_registry(settings)), settings)
    try:
        await scheduler.run()
    finally:
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_scheduler())


if __name__ == "__main__":
    main()
