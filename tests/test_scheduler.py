from __future__ import annotations

import asyncio
from datetime import datetime, time
from zoneinfo import ZoneInfo

from regtruth.jobs.orchestrator import CommandType
from regtruth.scheduler import ScheduleEntry, Scheduler, default_schedule
from regtruth.services.queues import SCHEDULED_QUEUE

ZAGREB = ZoneInfo("Europe/Zagreb")


def _scheduled(repository) -> list[str]:
    return sorted(job.payload["command_type"] for job in repository.jobs.values() if job.queue == SCHEDULED_QUEUE)


def test_latest_slot_per_schedule_kind() -> None:
    monday_morning = datetime(2026, 3, 2, 10, 7, tzinfo=ZAGREB)

    daily = ScheduleEntry(CommandType.DISCOVERY_RUN, "daily", at=time(6, 0))
    weekly = ScheduleEntry(CommandType.CONFIDENCE_DECAY, "weekly", at=time(3, 0), weekday=6)
    interval = ScheduleEntry(CommandType.CONFLICT_SWEEP, "interval", every_minutes=15)

    assert daily.latest_slot(monday_morning) == datetime(2026, 3, 2, 6, 0, tzinfo=ZAGREB)
    assert daily.latest_slot(datetime(2026, 3, 2, 5, 59, tzinfo=ZAGREB)) == datetime(2026, 3, 1, 6, 0, tzinfo=ZAGREB)
    assert weekly.latest_slot(monday_morning) == datetime(2026, 3, 1, 3, 0, tzinfo=ZAGREB)
    assert interval.latest_slot(monday_morning) == datetime(2026, 3, 2, 10, 0, tzinfo=ZAGREB)


def test_default_schedule_covers_every_recurring_command(settings) -> None:
    commands = {entry.command for entry in default_schedule(settings)}
    assert commands == {
        CommandType.HEALTH_SNAPSHOT,
        CommandType.CONFIDENCE_DECAY,
        CommandType.CONSOLIDATION_AUDIT,
        CommandType.FULL_VALIDATION,
        CommandType.DISCOVERY_RUN,
        CommandType.AUTO_APPROVE_SWEEP,
        CommandType.CONFLICT_SWEEP,
        CommandType.RELEASE_SWEEP,
    }


def test_tick_fires_each_slot_once(context, repository, settings, clock) -> None:
    scheduler = Scheduler(context.queue, settings, clock=clock)

    async def run() -> None:
        assert await scheduler.tick() == []

        clock.advance(minutes=14)
        assert await scheduler.tick() == []

        clock.advance(minutes=1)
        assert len(await scheduler.tick()) == 2
        assert await scheduler.tick() == []

    asyncio.run(run())

    assert _scheduled(repository) == ["conflict-sweep", "release-sweep"]
    job = next(iter(repository.jobs.values()))
    assert job.payload["triggered_by"] == "system:scheduler"
    assert job.job_key.endswith("T10:15:00+01:00")


def test_overnight_slots_enqueue_maintenance_commands(context, repository, settings, clock) -> None:
    entries = [entry for entry in default_schedule(settings) if entry.kind != "interval"]
    scheduler = Scheduler(context.queue, settings, entries=entries, clock=clock)

    clock.advance(hours=20)
    asyncio.run(scheduler.tick())

    assert _scheduled(repository) == [
        "consolidation-audit",
        "discovery-run",
        "full-validation",
        "health-snapshot",
    ]


def test_two_scheduler_instances_do_not_duplicate_a_slot(context, repository, settings, clock) -> None:
    entries = [ScheduleEntry(CommandType.RELEASE_SWEEP, "interval", every_minutes=15)]
    first = Scheduler(context.queue, settings, entries=entries, clock=clock)
    second = Scheduler(context.queue, settings, entries=entries, clock=clock)

    clock.advance(minutes=15)

    async def run() -> tuple[list[str], list[str]]:
        return await first.tick(), await second.tick()

    first_ids, second_ids = asyncio.run(run())

    assert first_ids == second_ids
    assert len(repository.jobs) == 1
