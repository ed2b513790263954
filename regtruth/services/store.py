from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from regtruth.services.queues import RateLimit, compute_retry_delay_seconds
from regtruth.services.records import (
    AUTO_APPROVABLE_RISK_TIERS,
    DECAY_ELIGIBLE_STATUSES,
    JOB_STATUSES,
    RULE_STATUSES,
    SOURCE_PRIORITIES,
    AuditLogEntry,
    Conflict,
    DeadLetterRecord,
    DiscoverySource,
    Evidence,
    HealthAlert,
    HealthSnapshot,
    JobRecord,
    MachineCredentialRecord,
    Release,
    Rule,
    SourcePointer,
)
from regtruth.services.repository import (
    LEASE_EXPIRED_ERROR,
    LIVE_RULE_STATUSES,
    PostgresRepository,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    content_hash,
    pointer_set_key,
    rule_set_key,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRepository:
    """Process-local store for bootstrap runs and tests; mirrors PostgresRepository."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self.clock = clock or _utcnow
        self.machine_credentials: dict[str, list[MachineCredentialRecord]] = {}
        self.jobs: dict[str, JobRecord] = {}
        self.claim_log: dict[str, list[datetime]] = {}
        self.dead_letters: dict[str, DeadLetterRecord] = {}
        self.discovery_sources: dict[str, DiscoverySource] = {}
        self.evidence: dict[str, Evidence] = {}
        self.source_pointers: dict[str, SourcePointer] = {}
        self.rules: dict[str, Rule] = {}
        self.conflicts: dict[str, Conflict] = {}
        self.releases: dict[str, Release] = {}
        self.audit_log: list[AuditLogEntry] = []
        self.health_snapshots: list[HealthSnapshot] = []
        self._rule_keys: dict[str, str] = {}
        self._conflict_keys: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        return None

    def add_machine_credential(self, record: MachineCredentialRecord) -> None:
        self.machine_credentials.setdefault(record.module_id, []).append(record)

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        return list(self.machine_credentials.get(module_id, []))

    # Jobs

    async def enqueue_job(
        self,
        *,
        queue: str,
        payload: dict[str, Any],
        priority: int,
        delay_seconds: int,
        max_attempts: int,
        backoff_base_seconds: int,
        lease_seconds: int | None,
        job_key: str | None,
    ) -> tuple[str, bool]:
        async with self._lock:
            if job_key is not None:
                for job in self.jobs.values():
                    if job.job_key == job_key and job.status in {"queued", "claimed"}:
                        return job.id, False
            now = self.clock()
            job = JobRecord(
                id=str(uuid4()),
                queue=queue,
                payload=copy.deepcopy(payload),
                status="queued",
                attempt=0,
                max_attempts=max(1, max_attempts),
                priority=priority,
                backoff_base_seconds=max(0, backoff_base_seconds),
                lease_seconds=lease_seconds,
                job_key=job_key,
                run_at=now + timedelta(seconds=max(0, delay_seconds)),
                created_at=now,
                updated_at=now,
            )
            self.jobs[job.id] = job
            return job.id, True

    async def claim_next_job(
        self,
        *,
        queue: str,
        worker_id: str,
        default_lease_seconds: int,
        rate_limit: RateLimit | None = None,
    ) -> JobRecord | None:
        async with self._lock:
            now = self.clock()
            if rate_limit is not None:
                window_start = now - timedelta(seconds=rate_limit.window_seconds)
                # Every claim counts, including re-claims of a job already claimed in this window.
                claims = [claimed_at for claimed_at in self.claim_log.get(queue, []) if claimed_at > window_start]
                self.claim_log[queue] = claims
                if len(claims) >= rate_limit.max_jobs:
                    return None

            due = [job for job in self.jobs.values() if job.queue == queue and job.status == "queued" and job.run_at <= now]
            if not due:
                return None
            job = min(due, key=lambda item: (item.priority, item.run_at, item.created_at))
            job.status = "claimed"
            job.attempt += 1
            job.locked_by = worker_id
            job.last_claimed_at = now
            job.lease_expires_at = now + timedelta(seconds=job.lease_seconds or default_lease_seconds)
            job.updated_at = now
            if rate_limit is not None:
                self.claim_log.setdefault(queue, []).append(now)
            return copy.deepcopy(job)

    async def complete_job(self, *, job_id: str, worker_id: str, result: dict[str, Any] | None) -> JobRecord:
        async with self._lock:
            job = self._claimed_job(job_id, worker_id)
            job.status = "done"
            job.result = copy.deepcopy(result or {})
            job.locked_by = None
            job.lease_expires_at = None
            job.updated_at = self.clock()
            return copy.deepcopy(job)

    async def fail_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        error: str,
        stack: str | None = None,
    ) -> JobRecord:
        async with self._lock:
            job = self._claimed_job(job_id, worker_id)
            now = self.clock()
            if job.attempt < job.max_attempts:
                delay = compute_retry_delay_seconds(attempt=job.attempt, base_seconds=job.backoff_base_seconds)
                job.status = "queued"
                job.locked_by = None
                job.lease_expires_at = None
                job.run_at = now + timedelta(seconds=delay)
                job.last_error = error
                job.first_failed_at = job.first_failed_at or now
                job.updated_at = now
                return copy.deepcopy(job)
            self._dead_letter(job, error=error, stack=stack, actor=worker_id)
            return copy.deepcopy(job)

    async def requeue_expired_jobs(self, *, limit: int, actor: str) -> dict[str, int]:
        bounded_limit = max(1, min(limit, 1000))
        requeued = 0
        dead_lettered = 0
        async with self._lock:
            now = self.clock()
            expired = sorted(
                (
                    job
                    for job in self.jobs.values()
                    if job.status == "claimed" and job.lease_expires_at is not None and job.lease_expires_at <= now
                ),
                key=lambda item: item.lease_expires_at or now,
            )[:bounded_limit]
            for job in expired:
                if job.attempt >= job.max_attempts:
                    self._dead_letter(job, error=LEASE_EXPIRED_ERROR, stack=None, actor=actor)
                    dead_lettered += 1
                    continue
                previous_holder = job.locked_by
                job.status = "queued"
                job.locked_by = None
                job.lease_expires_at = None
                job.run_at = now
                job.last_error = LEASE_EXPIRED_ERROR
                job.updated_at = now
                self._append_audit(
                    action="job_lease_requeued",
                    entity_type="job",
                    entity_id=job.id,
                    actor=actor,
                    reason="lease_expired",
                    metadata={"queue": job.queue, "attempt": job.attempt, "locked_by": previous_holder},
                )
                requeued += 1
        return {"requeued": requeued, "dead_lettered": dead_lettered}

    async def get_job(self, job_id: str) -> JobRecord:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return copy.deepcopy(job)

    async def list_jobs(
        self,
        *,
        queue: str | None = None,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[JobRecord]:
        if status and status not in JOB_STATUSES:
            raise RepositoryValidationError("status must be one of: queued, claimed, done, dead_letter")
        jobs = [
            job
            for job in self.jobs.values()
            if (queue is None or job.queue == queue) and (status is None or job.status == status)
        ]
        jobs.sort(key=lambda item: (item.updated_at, item.id), reverse=True)
        return [copy.deepcopy(job) for job in jobs[offset : offset + limit]]

    async def queue_depths(self) -> dict[str, dict[str, int]]:
        depths: dict[str, dict[str, int]] = {}
        for job in self.jobs.values():
            bucket = depths.setdefault(job.queue, {})
            bucket[job.status] = bucket.get(job.status, 0) + 1
        return depths

    # Dead letters

    async def list_dead_letters(
        self,
        *,
        queue: str | None = None,
        include_replayed: bool = True,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DeadLetterRecord]:
        records = [
            record
            for record in self.dead_letters.values()
            if (queue is None or record.queue == queue) and (include_replayed or record.replayed_at is None)
        ]
        records.sort(key=lambda item: (item.created_at, item.id), reverse=True)
        return [copy.deepcopy(record) for record in records[offset : offset + limit]]

    async def count_dead_letters(self, *, include_replayed: bool = False) -> int:
        return sum(1 for record in self.dead_letters.values() if include_replayed or record.replayed_at is None)

    async def get_dead_letter(self, dead_letter_id: str) -> DeadLetterRecord:
        record = self.dead_letters.get(dead_letter_id)
        if record is None:
            raise RepositoryNotFoundError("dead letter not found")
        return copy.deepcopy(record)

    async def replay_dead_letter(
        self,
        *,
        dead_letter_id: str,
        actor: str,
        max_attempts: int,
        backoff_base_seconds: int,
        lease_seconds: int | None,
    ) -> DeadLetterRecord:
        record = self.dead_letters.get(dead_letter_id)
        if record is None:
            raise RepositoryNotFoundError("dead letter not found")
        if record.replayed_at is not None:
            raise RepositoryConflictError("dead letter already replayed")
        replay_job_id, _ = await self.enqueue_job(
            queue=record.queue,
            payload=record.payload,
            priority=0,
            delay_seconds=0,
            max_attempts=max_attempts,
            backoff_base_seconds=backoff_base_seconds,
            lease_seconds=lease_seconds,
            job_key=None,
        )
        record.replayed_at = self.clock()
        record.replay_job_id = replay_job_id
        self._append_audit(
            action="dead_letter_replayed",
            entity_type="job",
            entity_id=record.job_id,
            actor=actor,
            reason="manual_replay",
            metadata={"dead_letter_id": record.id, "replay_job_id": replay_job_id, "queue": record.queue},
        )
        return copy.deepcopy(record)

    # Discovery sources and evidence

    async def create_discovery_source(
        self,
        *,
        name: str,
        url: str,
        domain: str,
        priority: str = "NORMAL",
        active: bool = True,
    ) -> DiscoverySource:
        if priority not in SOURCE_PRIORITIES:
            raise RepositoryValidationError("priority must be one of: CRITICAL, HIGH, NORMAL, LOW")
        for source in self.discovery_sources.values():
            if source.url == url:
                source.name = name
                source.domain = domain.lower()
                source.priority = priority  # type: ignore[assignment]
                source.active = active
                return copy.deepcopy(source)
        source = DiscoverySource(
            id=str(uuid4()),
            name=name,
            url=url,
            domain=domain.lower(),
            priority=priority,  # type: ignore[arg-type]
            active=active,
        )
        self.discovery_sources[source.id] = source
        return copy.deepcopy(source)

    async def list_active_discovery_sources(self, *, priority: str | None = None) -> list[DiscoverySource]:
        sources = [
            source
            for source in self.discovery_sources.values()
            if source.active and (priority is None or source.priority == priority)
        ]
        sources.sort(key=lambda item: (item.priority, item.name))
        return [copy.deepcopy(source) for source in sources]

    async def create_evidence(
        self,
        *,
        source_id: str | None,
        url: str,
        domain: str,
        raw_content: str,
        content_type: str = "text/html",
    ) -> tuple[Evidence, bool]:
        if source_id is not None and source_id not in self.discovery_sources:
            raise RepositoryNotFoundError("discovery source not found")
        digest = content_hash(raw_content)
        if source_id is not None:
            for evidence in self.evidence.values():
                if evidence.source_id == source_id and evidence.content_hash == digest:
                    return copy.deepcopy(evidence), False
        evidence = Evidence(
            id=str(uuid4()),
            source_id=source_id,
            url=url,
            domain=domain.lower(),
            raw_content=raw_content,
            content_type=content_type,
            content_hash=digest,
            captured_at=self.clock(),
        )
        self.evidence[evidence.id] = evidence
        return copy.deepcopy(evidence), True

    async def get_evidence(self, evidence_id: str) -> Evidence:
        evidence = self.evidence.get(evidence_id)
        if evidence is None:
            raise RepositoryNotFoundError("evidence not found")
        return copy.deepcopy(evidence)

    async def list_evidence(self, *, limit: int = 100, offset: int = 0) -> list[Evidence]:
        items = sorted(self.evidence.values(), key=lambda item: (item.captured_at, item.id), reverse=True)
        return [copy.deepcopy(item) for item in items[offset : offset + limit]]

    # Source pointers

    async def create_source_pointers(
        self,
        *,
        evidence_id: str,
        pointers: list[dict[str, Any]],
    ) -> list[SourcePointer]:
        if evidence_id not in self.evidence:
            raise RepositoryNotFoundError("evidence not found")
        created: list[SourcePointer] = []
        for pointer in pointers:
            record = SourcePointer(
                id=str(uuid4()),
                evidence_id=evidence_id,
                concept_slug=str(pointer["concept_slug"]),
                extracted_value=str(pointer["extracted_value"]),
                value_type=str(pointer.get("value_type") or "text"),
                exact_quote=str(pointer.get("exact_quote") or ""),
                confidence=float(pointer.get("confidence") or 0.0),
                created_at=self.clock(),
            )
            self.source_pointers[record.id] = record
            created.append(copy.deepcopy(record))
        return created

    async def list_source_pointers(
        self,
        *,
        evidence_id: str | None = None,
        pointer_ids: list[str] | None = None,
        limit: int = 1000,
    ) -> list[SourcePointer]:
        wanted = set(pointer_ids) if pointer_ids is not None else None
        items = [
            pointer
            for pointer in self.source_pointers.values()
            if (evidence_id is None or pointer.evidence_id == evidence_id) and (wanted is None or pointer.id in wanted)
        ]
        items.sort(key=lambda item: (item.created_at, item.id))
        return [copy.deepcopy(item) for item in items[:limit]]

    # Rules

    async def create_rule(
        self,
        *,
        concept_slug: str,
        value: str,
        value_type: str,
        risk_tier: str,
        authority_level: str,
        confidence: float,
        source_pointer_ids: list[str],
        applies_when: list[str] | None = None,
        overrides: list[str] | None = None,
        actor: str,
    ) -> tuple[Rule, bool]:
        if not 0.0 <= confidence <= 1.0:
            raise RepositoryValidationError("confidence must be between 0 and 1")
        key = pointer_set_key(source_pointer_ids)
        existing_id = self._rule_keys.get(key)
        if existing_id is not None:
            return copy.deepcopy(self.rules[existing_id]), False
        now = self.clock()
        rule = Rule(
            id=str(uuid4()),
            concept_slug=concept_slug,
            value=value,
            value_type=value_type,
            status="PENDING_REVIEW",
            risk_tier=risk_tier,  # type: ignore[arg-type]
            authority_level=authority_level,  # type: ignore[arg-type]
            confidence=confidence,
            base_confidence=confidence,
            source_pointer_ids=list(source_pointer_ids),
            created_at=now,
            updated_at=now,
            pending_since=now,
            applies_when=list(applies_when or []),
            overrides=list(overrides or []),
        )
        self.rules[rule.id] = rule
        self._rule_keys[key] = rule.id
        self._append_audit(
            action="rule_created",
            entity_type="rule",
            entity_id=rule.id,
            actor=actor,
            reason=None,
            metadata={
                "concept_slug": rule.concept_slug,
                "risk_tier": rule.risk_tier,
                "confidence": rule.confidence,
                "source_pointer_ids": rule.source_pointer_ids,
            },
        )
        return copy.deepcopy(rule), True

    def add_rule(self, rule: Rule) -> Rule:
        """Insert a fully specified rule, bypassing composition."""
        self.rules[rule.id] = rule
        if rule.source_pointer_ids:
            self._rule_keys[pointer_set_key(rule.source_pointer_ids)] = rule.id
        return rule

    async def find_rule_by_pointer_set(self, pointer_ids: list[str]) -> Rule | None:
        rule_id = self._rule_keys.get(pointer_set_key(pointer_ids))
        return copy.deepcopy(self.rules[rule_id]) if rule_id else None

    async def get_rule(self, rule_id: str) -> Rule:
        rule = self.rules.get(rule_id)
        if rule is None:
            raise RepositoryNotFoundError("rule not found")
        return copy.deepcopy(rule)

    async def list_rules(
        self,
        *,
        statuses: Iterable[str] | None = None,
        concept_slug: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Rule]:
        wanted = {status.strip().upper() for status in statuses if status and status.strip()} if statuses else set()
        if wanted - RULE_STATUSES:
            raise RepositoryValidationError("status must be one of: PENDING_REVIEW, APPROVED, PUBLISHED, REJECTED")
        rules = [
            rule
            for rule in self.rules.values()
            if (not wanted or rule.status in wanted) and (concept_slug is None or rule.concept_slug == concept_slug)
        ]
        rules.sort(key=lambda item: (item.updated_at, item.id), reverse=True)
        return [copy.deepcopy(rule) for rule in rules[offset : offset + limit]]

    async def list_rules_by_ids(self, rule_ids: list[str]) -> list[Rule]:
        rules = [self.rules[rule_id] for rule_id in rule_ids if rule_id in self.rules]
        rules.sort(key=lambda item: item.created_at)
        return [copy.deepcopy(rule) for rule in rules]

    async def list_active_rules(self, *, limit: int = 5000) -> list[Rule]:
        rules = [rule for rule in self.rules.values() if rule.status != "REJECTED" and rule.superseded_by is None]
        rules.sort(key=lambda item: item.created_at)
        return [copy.deepcopy(rule) for rule in rules[:limit]]

    async def find_conflicting_rules(self, rule: Rule) -> list[Rule]:
        matches = [
            other
            for other in self.rules.values()
            if other.concept_slug == rule.concept_slug
            and other.value != rule.value
            and other.id != rule.id
            and other.status in LIVE_RULE_STATUSES
            and other.superseded_by is None
        ]
        matches.sort(key=lambda item: item.created_at)
        return [copy.deepcopy(other) for other in matches]

    async def list_auto_approve_candidates(
        self,
        *,
        pending_before: datetime,
        min_confidence: float,
        limit: int,
    ) -> list[Rule]:
        candidates = [
            rule
            for rule in self.rules.values()
            if rule.status == "PENDING_REVIEW"
            and rule.risk_tier in AUTO_APPROVABLE_RISK_TIERS
            and rule.superseded_by is None
            and rule.confidence >= min_confidence
            and (rule.pending_since or rule.created_at) <= pending_before
            and not self._has_open_conflict(rule.id)
        ]
        candidates.sort(key=lambda item: (item.pending_since or item.created_at, item.id))
        return [copy.deepcopy(rule) for rule in candidates[:limit]]

    async def rule_has_open_conflict(self, rule_id: str) -> bool:
        return self._has_open_conflict(rule_id)

    async def transition_rule_status(
        self,
        *,
        rule_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        actor: str,
        reason: str | None,
        metadata: dict[str, Any] | None = None,
        human: bool = False,
    ) -> Rule:
        if to_status not in RULE_STATUSES:
            raise RepositoryValidationError("unknown rule status")
        expected = sorted(set(from_statuses))
        async with self._lock:
            rule = self.rules.get(rule_id)
            if rule is None:
                raise RepositoryNotFoundError("rule not found")
            PostgresRepository._validate_rule_transition(rule=rule, expected=expected, to_status=to_status, human=human)
            now = self.clock()
            from_status = rule.status
            rule.status = to_status  # type: ignore[assignment]
            if to_status == "APPROVED":
                rule.approved_by = actor
            if to_status == "PUBLISHED":
                rule.published_at = now
                rule.last_verified_at = now
            if to_status == "PENDING_REVIEW":
                rule.pending_since = now
            rule.updated_at = now
            self._append_audit(
                action=f"rule_{to_status.lower()}",
                entity_type="rule",
                entity_id=rule_id,
                actor=actor,
                reason=reason,
                metadata={"from_status": from_status, "to_status": to_status, **(metadata or {})},
            )
            return copy.deepcopy(rule)

    async def append_review_note(self, *, rule_id: str, note: dict[str, Any]) -> Rule:
        rule = self.rules.get(rule_id)
        if rule is None:
            raise RepositoryNotFoundError("rule not found")
        rule.review_notes.append(copy.deepcopy(note))
        rule.updated_at = self.clock()
        return copy.deepcopy(rule)

    async def update_rule_confidence(
        self,
        *,
        rule_id: str,
        confidence: float,
        note: dict[str, Any],
    ) -> Rule | None:
        rule = self.rules.get(rule_id)
        if (
            rule is None
            or rule.status not in DECAY_ELIGIBLE_STATUSES
            or rule.superseded_by is not None
            or rule.confidence == confidence
        ):
            return None
        rule.confidence = confidence
        rule.review_notes.append(copy.deepcopy(note))
        rule.updated_at = self.clock()
        return copy.deepcopy(rule)

    async def supersede_rule(
        self,
        *,
        rule_id: str,
        superseded_by: str,
        note: dict[str, Any],
        actor: str,
        reason: str,
    ) -> Rule | None:
        rule = self.rules.get(rule_id)
        if rule is None or rule.superseded_by is not None:
            return None
        rule.superseded_by = superseded_by
        rule.review_notes.append(copy.deepcopy(note))
        rule.updated_at = self.clock()
        self._append_audit(
            action="rule_superseded",
            entity_type="rule",
            entity_id=rule_id,
            actor=actor,
            reason=reason,
            metadata={"superseded_by": superseded_by},
        )
        return copy.deepcopy(rule)

    async def list_release_candidates(self, *, limit: int) -> list[Rule]:
        released = {rule_id for release in self.releases.values() for rule_id in release.rule_ids}
        candidates = [
            rule
            for rule in self.rules.values()
            if rule.status == "APPROVED" and rule.superseded_by is None and rule.id not in released
        ]
        candidates.sort(key=lambda item: (item.updated_at, item.id))
        return [copy.deepcopy(rule) for rule in candidates[:limit]]

    async def list_unpublished_released_rules(self, *, limit: int = 100) -> list[Rule]:
        released = {rule_id for release in self.releases.values() for rule_id in release.rule_ids}
        stranded = [
            rule
            for rule in self.rules.values()
            if rule.status == "APPROVED" and rule.superseded_by is None and rule.id in released
        ]
        stranded.sort(key=lambda item: (item.updated_at, item.id))
        return [copy.deepcopy(rule) for rule in stranded[:limit]]

    async def list_decay_candidates(self, *, limit: int = 10000) -> list[Rule]:
        candidates = [
            rule
            for rule in self.rules.values()
            if rule.status in DECAY_ELIGIBLE_STATUSES and rule.superseded_by is None
        ]
        candidates.sort(key=lambda item: item.created_at)
        return [copy.deepcopy(rule) for rule in candidates[:limit]]

    async def list_published_rule_sources(self) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        seen: set[tuple[str, str]] = set()
        for rule in self.rules.values():
            if rule.status != "PUBLISHED":
                continue
            for pointer_id in rule.source_pointer_ids:
                pointer = self.source_pointers.get(pointer_id)
                if pointer is None:
                    continue
                evidence = self.evidence.get(pointer.evidence_id)
                if evidence is None or (rule.id, evidence.id) in seen:
                    continue
                seen.add((rule.id, evidence.id))
                rows.append(
                    {
                        "rule_id": rule.id,
                        "concept_slug": rule.concept_slug,
                        "evidence_id": evidence.id,
                        "domain": evidence.domain,
                    }
                )
        rows.sort(key=lambda item: (item["rule_id"], item["evidence_id"]))
        return rows

    # Conflicts

    async def create_conflict(self, *, rule_ids: list[str], reason: str, actor: str) -> tuple[Conflict, bool]:
        if len(set(rule_ids)) < 2:
            raise RepositoryValidationError("a conflict requires at least two distinct rules")
        ordered = sorted(set(rule_ids))
        key = rule_set_key(ordered)
        existing_id = self._conflict_keys.get(key)
        if existing_id is not None:
            return copy.deepcopy(self.conflicts[existing_id]), False
        now = self.clock()
        conflict = Conflict(
            id=str(uuid4()),
            status="OPEN",
            rule_ids=ordered,
            reason=reason,
            created_at=now,
            updated_at=now,
        )
        self.conflicts[conflict.id] = conflict
        self._conflict_keys[key] = conflict.id
        self._append_audit(
            action="conflict_opened",
            entity_type="conflict",
            entity_id=conflict.id,
            actor=actor,
            reason=reason,
            metadata={"rule_ids": conflict.rule_ids},
        )
        return copy.deepcopy(conflict), True

    async def get_conflict(self, conflict_id: str) -> Conflict:
        conflict = self.conflicts.get(conflict_id)
        if conflict is None:
            raise RepositoryNotFoundError("conflict not found")
        return copy.deepcopy(conflict)

    async def list_conflicts(self, *, status: str | None = None, limit: int = 100, offset: int = 0) -> list[Conflict]:
        conflicts = [conflict for conflict in self.conflicts.values() if status is None or conflict.status == status]
        conflicts.sort(key=lambda item: (item.created_at, item.id))
        return [copy.deepcopy(conflict) for conflict in conflicts[offset : offset + limit]]

    async def resolve_conflict(
        self,
        *,
        conflict_id: str,
        resolution: dict[str, Any],
        actor: str,
        reason: str,
    ) -> Conflict | None:
        async with self._lock:
            conflict = self.conflicts.get(conflict_id)
            if conflict is None or conflict.status != "OPEN":
                return None
            now = self.clock()
            conflict.status = "RESOLVED"
            conflict.resolution = copy.deepcopy(resolution)
            conflict.resolved_at = now
            conflict.updated_at = now
            self._append_audit(
                action="conflict_resolved",
                entity_type="conflict",
                entity_id=conflict_id,
                actor=actor,
                reason=reason,
                metadata=resolution,
            )
            return copy.deepcopy(conflict)

    # Releases

    async def create_release(
        self,
        *,
        release_key: str,
        rule_ids: list[str],
        content_hash: str,
    ) -> tuple[Release, bool]:
        existing = self.releases.get(release_key)
        if existing is not None:
            return copy.deepcopy(existing), False
        release = Release(
            id=str(uuid4()),
            release_key=release_key,
            rule_ids=list(rule_ids),
            content_hash=content_hash,
            created_at=self.clock(),
        )
        self.releases[release_key] = release
        return copy.deepcopy(release), True

    async def list_releases(self, *, limit: int = 100, offset: int = 0) -> list[Release]:
        items = sorted(self.releases.values(), key=lambda item: (item.created_at, item.id), reverse=True)
        return [copy.deepcopy(item) for item in items[offset : offset + limit]]

    # Audit log

    async def record_audit(
        self,
        *,
        action: str,
        entity_type: str,
        entity_id: str,
        actor: str,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        return self._append_audit(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            actor=actor,
            reason=reason,
            metadata=metadata or {},
        )

    async def list_audit_log(
        self,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        action: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditLogEntry]:
        entries = [
            entry
            for entry in reversed(self.audit_log)
            if (entity_type is None or entry.entity_type == entity_type)
            and (entity_id is None or entry.entity_id == entity_id)
            and (action is None or entry.action == action)
        ]
        return [copy.deepcopy(entry) for entry in entries[offset : offset + limit]]

    # Health snapshots

    async def count_summary(self) -> dict[str, Any]:
        rules_by_status = {status: 0 for status in sorted(RULE_STATUSES)}
        for rule in self.rules.values():
            rules_by_status[rule.status] += 1
        return {
            "discovery_sources": sum(1 for source in self.discovery_sources.values() if source.active),
            "evidence": len(self.evidence),
            "source_pointers": len(self.source_pointers),
            "rules_by_status": rules_by_status,
            "open_conflicts": sum(1 for conflict in self.conflicts.values() if conflict.status == "OPEN"),
            "dead_letters": await self.count_dead_letters(),
        }

    async def save_health_snapshot(
        self,
        *,
        kind: str,
        run_id: str | None,
        healthy: bool,
        counts: dict[str, Any],
        alerts: list[HealthAlert],
        details: dict[str, Any],
    ) -> HealthSnapshot:
        snapshot = HealthSnapshot(
            id=str(uuid4()),
            kind=kind,  # type: ignore[arg-type]
            run_id=run_id,
            healthy=healthy,
            counts=copy.deepcopy(counts),
            alerts=copy.deepcopy(alerts),
            details=copy.deepcopy(details),
            created_at=self.clock(),
        )
        self.health_snapshots.append(snapshot)
        return copy.deepcopy(snapshot)

    async def list_health_snapshots(
        self,
        *,
        kind: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[HealthSnapshot]:
        snapshots = [snapshot for snapshot in reversed(self.health_snapshots) if kind is None or snapshot.kind == kind]
        return [copy.deepcopy(snapshot) for snapshot in snapshots[offset : offset + limit]]

    async def get_latest_health_snapshot(self, *, kind: str | None = None) -> HealthSnapshot | None:
        snapshots = await self.list_health_snapshots(kind=kind, limit=1)
        return snapshots[0] if snapshots else None

    # Internals

    def _claimed_job(self, job_id: str, worker_id: str) -> JobRecord:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        if job.status != "claimed" or job.locked_by != worker_id:
            raise RepositoryConflictError("job is not claimed by this worker")
        return job

    def _dead_letter(self, job: JobRecord, *, error: str, stack: str | None, actor: str) -> None:
        now = self.clock()
        job.status = "dead_letter"
        job.locked_by = None
        job.lease_expires_at = None
        job.last_error = error
        job.first_failed_at = job.first_failed_at or now
        job.updated_at = now
        if any(record.job_id == job.id for record in self.dead_letters.values()):
            return
        record = DeadLetterRecord(
            id=str(uuid4()),
            job_id=job.id,
            queue=job.queue,
            payload=copy.deepcopy(job.payload),
            error=error,
            stack=stack,
            attempts=job.attempt,
            first_failed_at=job.first_failed_at,
            last_failed_at=now,
            created_at=now,
        )
        self.dead_letters[record.id] = record
        self._append_audit(
            action="job_dead_lettered",
            entity_type="job",
            entity_id=job.id,
            actor=actor,
            reason=error,
            metadata={"queue": job.queue, "attempts": job.attempt},
        )

    def _has_open_conflict(self, rule_id: str) -> bool:
        return any(conflict.status == "OPEN" and rule_id in conflict.rule_ids for conflict in self.conflicts.values())

    def _append_audit(
        self,
        *,
        action: str,
        entity_type: str,
        entity_id: str,
        actor: str,
        reason: str | None,
        metadata: dict[str, Any],
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            id=str(uuid4()),
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            actor=actor,
            reason=reason,
            metadata=copy.deepcopy(metadata),
            created_at=self.clock(),
        )
        self.audit_log.append(entry)
        return copy.deepcopy(entry)
