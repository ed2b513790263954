from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from regtruth.services.records import HUMAN_ONLY_RISK_TIERS, HealthAlert, HealthSnapshot
from regtruth.services.repository import content_hash, release_content_hash

logger = logging.getLogger(__name__)

SCAN_LIMIT = 10000


@dataclass(slots=True)
class InvariantResult:
    name: str
    passed: bool
    violations: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {"name": self.name, "passed": self.passed, "violations": self.violations[:50]}


@dataclass(slots=True)
class PhaseResult:
    name: str
    success: bool
    duration_ms: float
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "success": self.success,
            "duration_ms": round(self.duration_ms, 3),
            "data": self.data,
            "error": self.error,
        }


@dataclass(slots=True)
class ValidationReport:
    run_id: str | None
    started_at: datetime
    finished_at: datetime
    counts: dict[str, Any]
    invariants: list[InvariantResult]
    phases: list[PhaseResult] = field(default_factory=list)
    artifact_path: str | None = None

    @property
    def verdict(self) -> str:
        passed = all(result.passed for result in self.invariants) and all(phase.success for phase in self.phases)
        return "GO" if passed else "NO-GO"

    def as_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "verdict": self.verdict,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "counts": self.counts,
            "phases": [phase.as_dict() for phase in self.phases],
            "invariants": [result.as_dict() for result in self.invariants],
            "artifact_path": self.artifact_path,
        }


PhaseHandler = Callable[[str], Awaitable[dict[str, Any]]]


class PipelineValidator:
    """End-to-end check producing a GO/NO-GO verdict.

    Each configured phase handler is executed once and timed, then the store is
    scanned for integrity invariants. Any failed phase or violated invariant
    turns the verdict to NO-GO.
    """

    def __init__(
        self,
        repository: Any,
        *,
        artifacts_dir: str | None = None,
        clock: Callable[[], datetime] | None = None,
        phases: Mapping[str, PhaseHandler] | None = None,
    ) -> None:
        self.repository = repository
        self.artifacts_dir = Path(artifacts_dir) if artifacts_dir else None
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.phases = dict(phases or {})

    async def run_phases(self, run_id: str) -> list[PhaseResult]:
        results: list[PhaseResult] = []
        for name, handler in self.phases.items():
            started = time.perf_counter()
            try:
                data = await handler(run_id)
            except Exception as exc:
                logger.exception("Validation phase %s failed run_id=%s", name, run_id)
                results.append(
                    PhaseResult(
                        name=name,
                        success=False,
                        duration_ms=(time.perf_counter() - started) * 1000.0,
                        error=str(exc) or exc.__class__.__name__,
                    )
                )
                continue
            results.append(
                PhaseResult(
                    name=name,
                    success=True,
                    duration_ms=(time.perf_counter() - started) * 1000.0,
                    data=data,
                )
            )
        return results

    async def validate(self, *, run_id: str | None = None) -> ValidationReport:
        started_at = self.clock()
        phases = await self.run_phases(run_id or "adhoc")
        rules = await self.repository.list_rules(limit=SCAN_LIMIT)
        pointers = await self.repository.list_source_pointers(limit=SCAN_LIMIT)
        evidence = await self.repository.list_evidence(limit=SCAN_LIMIT)
        jobs = await self.repository.list_jobs(limit=SCAN_LIMIT)
        dead_letters = await self.repository.list_dead_letters(limit=SCAN_LIMIT)
        conflicts = await self.repository.list_conflicts(status="RESOLVED", limit=SCAN_LIMIT)
        releases = await self.repository.list_releases(limit=SCAN_LIMIT)
        evidence_ids = {item.id for item in evidence}
        dead_lettered_job_ids = {record.job_id for record in dead_letters}

        drifted_releases = []
        for release in releases:
            released_rules = await self.repository.list_rules_by_ids(release.rule_ids)
            if release_content_hash(released_rules) != release.content_hash:
                drifted_releases.append(release.id)

        # Sourced evidence is keyed by (source, content hash); a second row for the same key is a duplicate.
        seen_evidence: set[tuple[str, str]] = set()
        duplicate_evidence = []
        for item in sorted(evidence, key=lambda row: (row.captured_at, row.id)):
            if item.source_id is None:
                continue
            key = (item.source_id, item.content_hash)
            if key in seen_evidence:
                duplicate_evidence.append(item.id)
            seen_evidence.add(key)

        invariants = [
            InvariantResult(
                "approved_rules_have_source_pointers",
                passed=False,
                violations=[
                    rule.id for rule in rules if rule.status in {"APPROVED", "PUBLISHED"} and not rule.source_pointer_ids
                ],
            ),
            InvariantResult(
                "high_risk_rules_human_approved",
                passed=False,
                violations=[
                    rule.id
                    for rule in rules
                    if rule.status in {"APPROVED", "PUBLISHED"}
                    and rule.risk_tier in HUMAN_ONLY_RISK_TIERS
                    and not (rule.approved_by or "").startswith("human:")
                ],
            ),
            InvariantResult(
                "source_pointers_reference_evidence",
                passed=False,
                violations=[pointer.id for pointer in pointers if pointer.evidence_id not in evidence_ids],
            ),
            InvariantResult(
                "evidence_content_unchanged",
                passed=False,
                violations=[item.id for item in evidence if content_hash(item.raw_content) != item.content_hash],
            ),
            InvariantResult("evidence_deduplicated", passed=False, violations=duplicate_evidence),
            InvariantResult("release_hashes_deterministic", passed=False, violations=drifted_releases),
            InvariantResult(
                "job_attempts_within_limit",
                passed=False,
                violations=[job.id for job in jobs if job.attempt > job.max_attempts],
            ),
            InvariantResult(
                "dead_lettered_jobs_archived",
                passed=False,
                violations=[
                    job.id for job in jobs if job.status == "dead_letter" and job.id not in dead_lettered_job_ids
                ],
            ),
            InvariantResult(
                "resolved_conflicts_name_member_winner",
                passed=False,
                violations=[
                    conflict.id
                    for conflict in conflicts
                    if (conflict.resolution or {}).get("winner_id") not in {None, *conflict.rule_ids}
                ],
            ),
        ]
        for result in invariants:
            result.passed = not result.violations

        report = ValidationReport(
            run_id=run_id,
            started_at=started_at,
            finished_at=self.clock(),
            counts=await self.repository.count_summary(),
            invariants=invariants,
            phases=phases,
        )
        report.artifact_path = self._write_artifact(report)
        return report

    async def validate_and_record(self, *, run_id: str | None = None) -> HealthSnapshot:
        report = await self.validate(run_id=run_id)
        failed = [result for result in report.invariants if not result.passed]
        failed_phases = [phase for phase in report.phases if not phase.success]
        alerts = [
            HealthAlert(
                type="PHASE_FAILED",
                severity="critical",
                message=f"{phase.name} failed: {phase.error}",
                details=phase.as_dict(),
            )
            for phase in failed_phases
        ]
        alerts.extend(
            HealthAlert(
                type="INVARIANT_VIOLATION",
                severity="critical",
                message=f"{result.name}: {len(result.violations)} violation(s)",
                details=result.as_dict(),
            )
            for result in failed
        )
        if report.verdict == "GO":
            logger.info("Full validation verdict GO run_id=%s", run_id)
        else:
            logger.error(
                "Full validation verdict NO-GO run_id=%s failed_phases=%s failed=%s",
                run_id,
                [phase.name for phase in failed_phases],
                [result.name for result in failed],
            )
        return await self.repository.save_health_snapshot(
            kind="full-validation",
            run_id=run_id,
            healthy=report.verdict == "GO",
            counts=report.counts,
            alerts=alerts,
            details=report.as_dict(),
        )

    def _write_artifact(self, report: ValidationReport) -> str | None:
        if self.artifacts_dir is None:
            return None
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        stamp = report.started_at.strftime("%Y%m%dT%H%M%SZ")
        path = self.artifacts_dir / f"full-validation-{stamp}-{report.run_id or 'adhoc'}.json"
        report.artifact_path = str(path)
        path.write_text(json.dumps(report.as_dict(), indent=2, sort_keys=True, default=str), encoding="utf-8")
        return str(path)
