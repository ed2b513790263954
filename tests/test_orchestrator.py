from __future__ import annotations

import asyncio
from datetime import timedelta

from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from regtruth.jobs.orchestrator import (
    CommandType,
    Orchestrator,
    OrchestratorMetrics,
    build_command_payload,
    enqueue_command,
)
from regtruth.jobs.release import execute_release
from regtruth.services.queues import ARBITER_QUEUE, DISCOVERY_QUEUE, RELEASE_QUEUE, SCHEDULED_QUEUE, EnqueueOptions


def _orchestrator(context) -> tuple[Orchestrator, InMemoryMetricReader]:
    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    return Orchestrator(context, metrics=OrchestratorMetrics(provider.get_meter("test"))), reader


def _handle(orchestrator: Orchestrator, command: CommandType, run_id: str = "run-1"):
    return asyncio.run(orchestrator.handle(build_command_payload(command, run_id=run_id)))


def _jobs(repository, queue: str) -> list:
    return sorted((job for job in repository.jobs.values() if job.queue == queue), key=lambda job: job.run_at)


def test_discovery_run_staggers_one_job_per_populated_tier(context, repository, clock) -> None:
    async def seed() -> None:
        for index in range(3):
            await repository.create_discovery_source(
                name=f"critical-{index}", url=f"https://c{index}.hr", domain=f"c{index}.hr", priority="CRITICAL"
            )
        for index in range(9):
            await repository.create_discovery_source(
                name=f"high-{index}", url=f"https://h{index}.hr", domain=f"h{index}.hr", priority="HIGH"
            )

    asyncio.run(seed())
    orchestrator, _ = _orchestrator(context)

    result = _handle(orchestrator, CommandType.DISCOVERY_RUN)

    assert result.success is True
    assert result.data["jobs_enqueued"] == 2
    critical, high = _jobs(repository, DISCOVERY_QUEUE)
    assert critical.payload == {"run_id": "run-1", "priority": "CRITICAL"}
    assert critical.run_at == clock()
    assert high.payload["priority"] == "HIGH"
    assert high.run_at == clock() + timedelta(seconds=60)


def test_auto_approve_sweep_approves_eligible_t2_rules(context, repository, make_rule) -> None:
    rules = [make_rule(risk_tier="T2", confidence=0.92) for _ in range(5)]
    make_rule(risk_tier="T1", confidence=0.99)
    orchestrator, _ = _orchestrator(context)

    result = _handle(orchestrator, CommandType.AUTO_APPROVE_SWEEP)

    assert result.data["approved"] == 5
    assert result.data["errors"] == 0
    approvals = [entry for entry in repository.audit_log if entry.action == "rule_approved"]
    assert sorted(entry.entity_id for entry in approvals) == sorted(rule.id for rule in rules)
    assert all(entry.reason == "eligible" and "gate" in entry.metadata for entry in approvals)


def test_release_sweep_batches_at_most_twenty_rules(context, repository, make_rule) -> None:
    for index in range(25):
        make_rule(status="APPROVED", value=str(index))
    orchestrator, _ = _orchestrator(context)

    first = _handle(orchestrator, CommandType.RELEASE_SWEEP, run_id="sweep-1")
    repeated = _handle(orchestrator, CommandType.RELEASE_SWEEP, run_id="sweep-2")

    assert first.data["rules"] == 20
    assert repeated.data["job_id"] == first.data["job_id"]
    [job] = _jobs(repository, RELEASE_QUEUE)
    assert len(job.payload["rule_ids"]) == 20
    assert job.job_key == job.payload["release_key"]

    async def publish() -> None:
        claimed = await context.queue.claim(RELEASE_QUEUE, "w1")
        await context.queue.complete(claimed.id, "w1", await execute_release(claimed, context))

    asyncio.run(publish())
    follow_up = _handle(orchestrator, CommandType.RELEASE_SWEEP, run_id="sweep-3")

    assert follow_up.data["rules"] == 5


def test_conflict_sweep_enqueues_keyed_arbiter_jobs(context, repository, make_rule) -> None:
    async def seed() -> None:
        for index in range(12):
            first = make_rule(concept_slug=f"concept-{index}")
            second = make_rule(concept_slug=f"concept-{index}", value="13")
            await repository.create_conflict(rule_ids=[first.id, second.id], reason="mismatch", actor="test")

    asyncio.run(seed())
    orchestrator, _ = _orchestrator(context)

    _handle(orchestrator, CommandType.CONFLICT_SWEEP)
    _handle(orchestrator, CommandType.CONFLICT_SWEEP, run_id="run-2")

    jobs = _jobs(repository, ARBITER_QUEUE)
    assert len(jobs) == 10
    assert {job.job_key for job in jobs} == {f"arbiter:{job.payload['conflict_id']}" for job in jobs}


def test_unknown_command_is_a_successful_no_op(context, repository) -> None:
    orchestrator, reader = _orchestrator(context)

    result = asyncio.run(orchestrator.handle({"command_type": "defragment-truth", "run_id": "x", "version": 1}))

    assert result.success is True
    assert result.error is None
    assert result.data == {"ignored": True}
    assert repository.jobs == {}
    assert repository.audit_log == []
    assert repository.health_snapshots == []
    data = reader.get_metrics_data()
    points = [
        point
        for resource_metrics in data.resource_metrics
        for scope_metrics in resource_metrics.scope_metrics
        for metric in scope_metrics.metrics
        if metric.name == "regtruth.orchestrator.command.total"
        for point in metric.data.data_points
    ]
    assert [dict(point.attributes) for point in points] == [{"command_type": "unknown", "status": "success"}]


def test_declared_but_unsupported_commands_report_it(context) -> None:
    orchestrator, _ = _orchestrator(context)

    for command in (CommandType.REGRESSION_DETECTION, CommandType.FEEDBACK_REVIEW_FLAGGING):
        result = _handle(orchestrator, command)
        assert result.success is True
        assert result.data == {"supported": False, "command_type": command.value}


def test_handler_failure_is_reported_not_raised(context, monkeypatch) -> None:
    orchestrator, reader = _orchestrator(context)

    async def broken(run_id: str) -> dict:
        raise RuntimeError("store exploded")

    monkeypatch.setattr(orchestrator, "health_snapshot", broken)

    result = _handle(orchestrator, CommandType.HEALTH_SNAPSHOT)

    assert result.success is False
    assert result.error == "store exploded"
    assert result.duration_ms >= 0
    data = reader.get_metrics_data()
    histogram = [
        point
        for resource_metrics in data.resource_metrics
        for scope_metrics in resource_metrics.scope_metrics
        for metric in scope_metrics.metrics
        if metric.name == "regtruth.orchestrator.command.duration"
        for point in metric.data.data_points
    ]
    assert [dict(point.attributes) for point in histogram] == [
        {"command_type": "health-snapshot", "status": "failure"}
    ]
    assert histogram[0].count == 1


def test_health_snapshot_flags_dead_letter_backlog(context, repository, settings) -> None:
    settings.dead_letter_alert_threshold = 0

    async def seed() -> None:
        job_id = await context.queue.enqueue(ARBITER_QUEUE, {"conflict_id": "c-1"}, EnqueueOptions(max_attempts=1))
        await context.queue.claim(ARBITER_QUEUE, "w1")
        await context.queue.fail(job_id, "w1", "boom")

    asyncio.run(seed())
    orchestrator, _ = _orchestrator(context)

    result = _handle(orchestrator, CommandType.HEALTH_SNAPSHOT)

    assert result.success is True
    assert result.data["healthy"] is False
    [snapshot] = repository.health_snapshots
    assert [alert.type for alert in snapshot.alerts] == ["DEAD_LETTER_THRESHOLD_EXCEEDED"]
    assert snapshot.counts["queues"][ARBITER_QUEUE] == {"dead_letter": 1}


def test_health_snapshot_surfaces_rules_stranded_in_a_release(context, repository, make_rule) -> None:
    stranded = make_rule(status="APPROVED", approved_by="human:reviewer-1")
    orchestrator, _ = _orchestrator(context)
    _handle(orchestrator, CommandType.RELEASE_SWEEP, run_id="sweep-1")

    async def crash_after_release_record():
        claimed = await context.queue.claim(RELEASE_QUEUE, "w1")
        await repository.create_release(
            release_key=claimed.payload["release_key"],
            rule_ids=claimed.payload["rule_ids"],
            content_hash="pending",
        )
        return claimed

    claimed = asyncio.run(crash_after_release_record())
    fresh = make_rule(status="APPROVED", concept_slug="excise-fuel-rate", approved_by="human:reviewer-1")

    follow_up = _handle(orchestrator, CommandType.RELEASE_SWEEP, run_id="sweep-2")
    first = _handle(orchestrator, CommandType.HEALTH_SNAPSHOT, run_id="hs-1")

    assert follow_up.data["rules"] == 1
    [fresh_job] = [job for job in _jobs(repository, RELEASE_QUEUE) if job.id == follow_up.data["job_id"]]
    assert fresh_job.payload["rule_ids"] == [fresh.id]
    assert first.data["healthy"] is False
    assert first.data["counts"]["released_unpublished"] == 1
    [alert] = repository.health_snapshots[0].alerts
    assert alert.type == "RELEASED_RULES_UNPUBLISHED"
    assert alert.details["rule_ids"] == [stranded.id]

    async def replay() -> dict:
        return await execute_release(claimed, context)

    replayed = asyncio.run(replay())
    second = _handle(orchestrator, CommandType.HEALTH_SNAPSHOT, run_id="hs-2")

    assert replayed["published"] == [stranded.id]
    assert second.data["healthy"] is True
    assert second.data["counts"]["released_unpublished"] == 0


def test_maintenance_commands_record_snapshots(context, repository, make_rule) -> None:
    make_rule(status="PUBLISHED")
    orchestrator, _ = _orchestrator(context)

    decay = _handle(orchestrator, CommandType.CONFIDENCE_DECAY)
    audit = _handle(orchestrator, CommandType.CONSOLIDATION_AUDIT)
    validation = _handle(orchestrator, CommandType.FULL_VALIDATION)

    assert decay.data["checked"] == 1
    assert audit.data["healthy"] is True
    assert validation.data["verdict"] == "GO"
    assert [snapshot.kind for snapshot in repository.health_snapshots] == ["consolidation-audit", "full-validation"]


def test_full_validation_command_gets_extended_lease(context, repository, settings) -> None:
    async def run() -> None:
        await enqueue_command(
            context.queue,
            CommandType.FULL_VALIDATION,
            full_validation_lease_seconds=settings.full_validation_lease_seconds,
            run_id="val",
        )
        await enqueue_command(
            context.queue,
            CommandType.HEALTH_SNAPSHOT,
            full_validation_lease_seconds=settings.full_validation_lease_seconds,
            run_id="hs",
        )

    asyncio.run(run())

    leases = {job.payload["command_type"]: job.lease_seconds for job in _jobs(repository, SCHEDULED_QUEUE)}
    assert leases == {"full-validation": 1800, "health-snapshot": 300}
