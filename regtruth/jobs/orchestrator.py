from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Any
from uuid import uuid4

from opentelemetry import metrics, trace

from regtruth.jobs.context import StageContext
from regtruth.services.approval import ApprovalPolicy, approve_if_eligible
from regtruth.services.consolidation import ConsolidationAuditor
from regtruth.services.decay import DecayEngine
from regtruth.services.queues import (
    ARBITER_QUEUE,
    DISCOVERY_QUEUE,
    RELEASE_QUEUE,
    SCHEDULED_QUEUE,
    EnqueueOptions,
    JobQueue,
    stable_batch_key,
)
from regtruth.services.records import SOURCE_PRIORITIES, HealthAlert
from regtruth.services.validation import PipelineValidator

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

COMMAND_PAYLOAD_VERSION = 1


class CommandType(str, Enum):
    DISCOVERY_RUN = "discovery-run"
    AUTO_APPROVE_SWEEP = "auto-approve-sweep"
    CONFLICT_SWEEP = "conflict-sweep"
    RELEASE_SWEEP = "release-sweep"
    CONFIDENCE_DECAY = "confidence-decay"
    CONSOLIDATION_AUDIT = "consolidation-audit"
    HEALTH_SNAPSHOT = "health-snapshot"
    FULL_VALIDATION = "full-validation"
    REGRESSION_DETECTION = "regression-detection"
    FEEDBACK_REVIEW_FLAGGING = "feedback-review-flagging"


UNSUPPORTED_COMMANDS = {CommandType.REGRESSION_DETECTION, CommandType.FEEDBACK_REVIEW_FLAGGING}


def build_command_payload(
    command_type: CommandType,
    *,
    run_id: str | None = None,
    triggered_by: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "command_type": command_type.value,
        "run_id": run_id or str(uuid4()),
        "version": COMMAND_PAYLOAD_VERSION,
    }
    if triggered_by:
        payload["triggered_by"] = triggered_by
    return payload


async def enqueue_command(
    queue: JobQueue,
    command_type: CommandType,
    *,
    full_validation_lease_seconds: int,
    run_id: str | None = None,
    triggered_by: str | None = None,
    job_key: str | None = None,
    delay_seconds: int = 0,
) -> str:
    lease_seconds = full_validation_lease_seconds if command_type == CommandType.FULL_VALIDATION else None
    return await queue.enqueue(
        SCHEDULED_QUEUE,
        build_command_payload(command_type, run_id=run_id, triggered_by=triggered_by),
        EnqueueOptions(delay_seconds=delay_seconds, lease_seconds=lease_seconds, job_key=job_key),
    )


@dataclass(slots=True)
class CommandResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    duration_ms: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 3),
        }


class OrchestratorMetrics:
    def __init__(self, meter: metrics.Meter | None = None) -> None:
        meter = meter or metrics.get_meter("regtruth.orchestrator")
        self.duration = meter.create_histogram(
            "regtruth.orchestrator.command.duration",
            unit="ms",
            description="Wall time of orchestrator command handlers.",
        )
        self.total = meter.create_counter(
            "regtruth.orchestrator.command.total",
            unit="1",
            description="Orchestrator command invocations by outcome.",
        )

    def record(self, *, command_type: str, status: str, duration_ms: float) -> None:
        attributes = {"command_type": command_type, "status": status}
        self.duration.record(duration_ms, attributes)
        self.total.add(1, attributes)


class Orchestrator:
    """Single consumer of the scheduled queue; turns commands into stage batches."""

    def __init__(self, context: StageContext, *, metrics: OrchestratorMetrics | None = None) -> None:
        self.context = context
        self.metrics = metrics or OrchestratorMetrics()

    @cached_property
    def decay_engine(self) -> DecayEngine:
        return DecayEngine(self.context.repository, floor=self.context.settings.decay_floor, clock=self.context.clock)

    @cached_property
    def auditor(self) -> ConsolidationAuditor:
        return ConsolidationAuditor(
            self.context.repository,
            test_domains=self.context.settings.test_source_domain_list(),
        )

    @cached_property
    def validator(self) -> PipelineValidator:
        # Discovery stays out: it reaches external sources.
        return PipelineValidator(
            self.context.repository,
            artifacts_dir=self.context.settings.validation_artifacts_dir,
            clock=self.context.clock,
            phases={
                CommandType.AUTO_APPROVE_SWEEP.value: self.auto_approve_sweep,
                CommandType.CONFLICT_SWEEP.value: self.conflict_sweep,
                CommandType.RELEASE_SWEEP.value: self.release_sweep,
                CommandType.CONFIDENCE_DECAY.value: self._decay_phase,
                CommandType.CONSOLIDATION_AUDIT.value: self._audit_phase,
            },
        )

    async def _decay_phase(self, run_id: str) -> dict[str, Any]:
        return (await self.decay_engine.run(run_id=run_id)).as_dict()

    async def _audit_phase(self, run_id: str) -> dict[str, Any]:
        report = await self.auditor.audit()
        return {
            "duplicate_groups": len(report.duplicate_groups),
            "test_data_leaks": len(report.test_data_leaks),
            "alerts": [alert.type for alert in report.alerts],
        }

    async def handle(self, payload: dict[str, Any]) -> CommandResult:
        started = time.perf_counter()
        label = "unknown"
        status = "success"
        run_id = str(payload.get("run_id") or uuid4())
        try:
            command = self._parse(payload)
            if command is None:
                logger.warning(
                    "Ignoring unrecognized command_type=%s version=%s",
                    payload.get("command_type"),
                    payload.get("version"),
                )
                return self._finish(CommandResult(success=True, data={"ignored": True}), started)

            label = command.value
            with tracer.start_as_current_span("orchestrator.command") as span:
                span.set_attribute("command.type", label)
                span.set_attribute("command.run_id", run_id)
                try:
                    data = await self._dispatch(command, run_id)
                except Exception as exc:
                    status = "failure"
                    span.record_exception(exc)
                    logger.exception("Command %s failed run_id=%s", label, run_id)
                    return self._finish(CommandResult(success=False, error=str(exc) or exc.__class__.__name__), started)
            return self._finish(CommandResult(success=True, data=data), started)
        finally:
            duration_ms = (time.perf_counter() - started) * 1000.0
            self.metrics.record(command_type=label, status=status, duration_ms=duration_ms)
            logger.info(
                "Command %s finished run_id=%s status=%s duration_ms=%.2f",
                label,
                run_id,
                status,
                duration_ms,
            )

    @staticmethod
    def _parse(payload: dict[str, Any]) -> CommandType | None:
        if payload.get("version", COMMAND_PAYLOAD_VERSION) != COMMAND_PAYLOAD_VERSION:
            return None
        try:
            return CommandType(payload.get("command_type"))
        except ValueError:
            return None

    @staticmethod
    def _finish(result: CommandResult, started: float) -> CommandResult:
        result.duration_ms = (time.perf_counter() - started) * 1000.0
        return result

    async def _dispatch(self, command: CommandType, run_id: str) -> dict[str, Any]:
        match command:
            case CommandType.DISCOVERY_RUN:
                return await self.discovery_run(run_id)
            case CommandType.AUTO_APPROVE_SWEEP:
                return await self.auto_approve_sweep(run_id)
            case CommandType.CONFLICT_SWEEP:
                return await self.conflict_sweep(run_id)
            case CommandType.RELEASE_SWEEP:
                return await self.release_sweep(run_id)
            case CommandType.CONFIDENCE_DECAY:
                return await self._decay_phase(run_id)
            case CommandType.CONSOLIDATION_AUDIT:
                snapshot = await self.auditor.audit_and_record(run_id=run_id)
                return {
                    "snapshot_id": snapshot.id,
                    "healthy": snapshot.healthy,
                    "alerts": [alert.type for alert in snapshot.alerts],
                }
            case CommandType.HEALTH_SNAPSHOT:
                return await self.health_snapshot(run_id)
            case CommandType.FULL_VALIDATION:
                snapshot = await self.validator.validate_and_record(run_id=run_id)
                return {
                    "snapshot_id": snapshot.id,
                    "verdict": snapshot.details.get("verdict"),
                    "artifact_path": snapshot.details.get("artifact_path"),
                }
            case command if command in UNSUPPORTED_COMMANDS:
                return {"supported": False, "command_type": command.value}
            case _:
                return {}

    async def discovery_run(self, run_id: str) -> dict[str, Any]:
        sources = await self.context.repository.list_active_discovery_sources()
        by_tier: dict[str, int] = {}
        for source in sources:
            by_tier[source.priority] = by_tier.get(source.priority, 0) + 1

        stagger = self.context.settings.discovery_stagger_seconds
        jobs: dict[str, str] = {}
        for step, tier in enumerate(SOURCE_PRIORITIES):
            if not by_tier.get(tier):
                continue
            jobs[tier] = await self.context.queue.enqueue(
                DISCOVERY_QUEUE,
                {"run_id": run_id, "priority": tier},
                EnqueueOptions(
                    delay_seconds=step * stagger,
                    priority=step,
                    job_key=f"discovery:{run_id}:{tier}",
                ),
            )
        return {"sources": len(sources), "sources_by_tier": by_tier, "jobs_enqueued": len(jobs), "job_ids": jobs}

    async def auto_approve_sweep(self, run_id: str) -> dict[str, Any]:
        settings = self.context.settings
        policy = ApprovalPolicy.from_settings(settings)
        now = self.context.clock()
        candidates = await self.context.repository.list_auto_approve_candidates(
            pending_before=now - policy.grace_period,
            min_confidence=policy.min_confidence,
            limit=settings.auto_approve_batch_size,
        )
        approved = 0
        skipped: dict[str, int] = {}
        errors = 0
        for rule in candidates:
            try:
                decision = await approve_if_eligible(self.context.repository, rule, now, policy=policy)
            except Exception:
                logger.exception("Auto-approval failed for rule_id=%s run_id=%s", rule.id, run_id)
                errors += 1
                continue
            if decision.approve:
                approved += 1
            else:
                skipped[decision.reason] = skipped.get(decision.reason, 0) + 1
        return {
            "candidates": len(candidates),
            "approved": approved,
            "skipped": sum(skipped.values()),
            "skipped_by_reason": skipped,
            "errors": errors,
        }

    async def conflict_sweep(self, run_id: str) -> dict[str, Any]:
        conflicts = await self.context.repository.list_conflicts(
            status="OPEN",
            limit=self.context.settings.conflict_sweep_batch_size,
        )
        job_ids = [
            await self.context.queue.enqueue(
                ARBITER_QUEUE,
                {"conflict_id": conflict.id, "run_id": run_id},
                EnqueueOptions(job_key=f"arbiter:{conflict.id}"),
            )
            for conflict in conflicts
        ]
        return {"conflicts": len(conflicts), "jobs_enqueued": len(job_ids), "job_ids": job_ids}

    async def release_sweep(self, run_id: str) -> dict[str, Any]:
        rules = await self.context.repository.list_release_candidates(
            limit=self.context.settings.release_sweep_batch_size,
        )
        if not rules:
            return {"rules": 0, "jobs_enqueued": 0}
        rule_ids = sorted(rule.id for rule in rules)
        release_key = stable_batch_key("release", rule_ids)
        job_id = await self.context.queue.enqueue(
            RELEASE_QUEUE,
            {"rule_ids": rule_ids, "release_key": release_key, "run_id": run_id},
            EnqueueOptions(job_key=release_key),
        )
        return {"rules": len(rule_ids), "jobs_enqueued": 1, "job_id": job_id, "release_key": release_key}

    async def health_snapshot(self, run_id: str) -> dict[str, Any]:
        repository = self.context.repository
        counts = await repository.count_summary()
        counts["queues"] = await repository.queue_depths()
        threshold = self.context.settings.dead_letter_alert_threshold
        alerts: list[HealthAlert] = []
        if counts["dead_letters"] > threshold:
            alerts.append(
                HealthAlert(
                    type="DEAD_LETTER_THRESHOLD_EXCEEDED",
                    severity="critical",
                    message=f"{counts['dead_letters']} dead-lettered jobs exceed threshold {threshold}",
                    details={"depth": counts["dead_letters"], "threshold": threshold},
                )
            )
        # The release sweep skips rules already named in a release record, so a release job that
        # dead-lettered after recording its release leaves them APPROVED until it is replayed.
        stranded = await repository.list_unpublished_released_rules(
            limit=self.context.settings.release_sweep_batch_size,
        )
        counts["released_unpublished"] = len(stranded)
        if stranded:
            alerts.append(
                HealthAlert(
                    type="RELEASED_RULES_UNPUBLISHED",
                    severity="warning",
                    message=f"{len(stranded)} approved rule(s) sit in a release record but were never published",
                    details={
                        "rule_ids": [rule.id for rule in stranded],
                        "action": "replay the dead-lettered release job",
                    },
                )
            )
        snapshot = await repository.save_health_snapshot(
            kind="health-snapshot",
            run_id=run_id,
            healthy=not alerts,
            counts=counts,
            alerts=alerts,
            details={"generated_at": self.context.clock().isoformat()},
        )
        return {"snapshot_id": snapshot.id, "healthy": snapshot.healthy, "counts": counts}
