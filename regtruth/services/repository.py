from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from regtruth.core.config import get_settings
from regtruth.services.queues import RateLimit, compute_retry_delay_seconds, stable_batch_key
from regtruth.services.records import (
    AUTO_APPROVABLE_RISK_TIERS,
    DECAY_ELIGIBLE_STATUSES,
    HUMAN_ONLY_RISK_TIERS,
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


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryForbiddenError(RepositoryError):
    """Raised when an operation is not permitted for the actor."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


LIVE_RULE_STATUSES = ("PENDING_REVIEW", "APPROVED", "PUBLISHED")
LEASE_EXPIRED_ERROR = "lease expired"

JOB_COLUMNS = """
  j.id::text as id,
  j.queue,
  j.payload,
  j.status,
  j.attempt,
  j.max_attempts,
  j.priority,
  j.backoff_base_seconds,
  j.lease_seconds,
  j.job_key,
  j.run_at,
  j.created_at,
  j.updated_at,
  j.locked_by,
  j.lease_expires_at,
  j.last_claimed_at,
  j.result,
  j.last_error,
  j.first_failed_at
"""

DEAD_LETTER_COLUMNS = """
  d.id::text as id,
  d.job_id::text as job_id,
  d.queue,
  d.payload,
  d.error,
  d.stack,
  d.attempts,
  d.first_failed_at,
  d.last_failed_at,
  d.created_at,
  d.replayed_at,
  d.replay_job_id::text as replay_job_id
"""

RULE_COLUMNS = """
  r.id::text as id,
  r.concept_slug,
  r.value,
  r.value_type,
  r.status,
  r.risk_tier,
  r.authority_level,
  r.confidence,
  r.base_confidence,
  r.source_pointer_ids::text[] as source_pointer_ids,
  r.created_at,
  r.updated_at,
  r.pending_since,
  r.applies_when,
  r.overrides::text[] as overrides,
  r.version,
  r.review_notes,
  r.approved_by,
  r.last_verified_at,
  r.published_at,
  r.superseded_by::text as superseded_by
"""

CONFLICT_COLUMNS = """
  c.id::text as id,
  c.status,
  c.rule_ids::text[] as rule_ids,
  c.reason,
  c.created_at,
  c.updated_at,
  c.resolution,
  c.resolved_at
"""

EVIDENCE_COLUMNS = """
  e.id::text as id,
  e.source_id::text as source_id,
  e.url,
  e.domain,
  e.raw_content,
  e.content_type,
  e.content_hash,
  e.captured_at
"""

POINTER_COLUMNS = """
  p.id::text as id,
  p.evidence_id::text as evidence_id,
  p.concept_slug,
  p.extracted_value,
  p.value_type,
  p.exact_quote,
  p.confidence,
  p.created_at
"""


def content_hash(raw_content: str) -> str:
    return hashlib.sha256(raw_content.encode("utf-8")).hexdigest()


def release_content_hash(rules: Iterable[Rule]) -> str:
    body = [
        {"id": rule.id, "concept_slug": rule.concept_slug, "value": rule.value, "value_type": rule.value_type}
        for rule in sorted(rules, key=lambda item: item.id)
    ]
    return hashlib.sha256(json.dumps(body, sort_keys=True).encode("utf-8")).hexdigest()


def pointer_set_key(pointer_ids: Iterable[str]) -> str:
    return stable_batch_key("pointers", pointer_ids)


def rule_set_key(rule_ids: Iterable[str]) -> str:
    return stable_batch_key("conflict", rule_ids)


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              m.id::text as module_db_id,
              m.module_id,
              m.scopes,
              mc.key_hash
            from modules m
            join module_credentials mc on mc.module_id = m.id
            where m.module_id = $1
              and m.enabled = true
              and mc.is_active = true
              and mc.revoked_at is null
              and (mc.expires_at is null or mc.expires_at > now())
            """,
            module_id,
        )
        return [
            MachineCredentialRecord(
                module_db_id=row["module_db_id"],
                module_id=row["module_id"],
                scopes=list(row["scopes"] or []),
                key_hash=row["key_hash"],
            )
            for row in rows
        ]

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
        pool = await self._get_pool()
        # A concurrent completion can free the key between insert and lookup; one retry covers it.
        for _ in range(2):
            job_id = await pool.fetchval(
                """
                insert into jobs as j (
                  queue,
                  payload,
                  priority,
                  max_attempts,
                  backoff_base_seconds,
                  lease_seconds,
                  job_key,
                  run_at
                )
                values ($1, $2::jsonb, $3, $4, $5, $6, $7, now() + ($8::int * interval '1 second'))
                on conflict (job_key) where job_key is not null and status in ('queued', 'claimed')
                do nothing
                returning j.id::text
                """,
                queue,
                json.dumps(payload),
                priority,
                max(1, max_attempts),
                max(0, backoff_base_seconds),
                lease_seconds,
                job_key,
                max(0, delay_seconds),
            )
            if job_id:
                return job_id, True
            existing = await pool.fetchval(
                """
                select id::text
                from jobs
                where job_key = $1 and status in ('queued', 'claimed')
                limit 1
                """,
                job_key,
            )
            if existing:
                return existing, False
        raise RepositoryConflictError(f"could not enqueue job with key {job_key}")

    async def claim_next_job(
        self,
        *,
        queue: str,
        worker_id: str,
        default_lease_seconds: int,
        rate_limit: RateLimit | None = None,
    ) -> JobRecord | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                if rate_limit is not None:
                    await conn.execute("select pg_advisory_xact_lock(hashtext($1))", f"jobs:claim:{queue}")
                    await conn.execute(
                        """
                        delete from job_claims
                        where queue = $1
                          and claimed_at <= now() - ($2::int * interval '1 second')
                        """,
                        queue,
                        rate_limit.window_seconds,
                    )
                    # Every claim counts, including re-claims of a job already claimed in this window.
                    recent_claims = await conn.fetchval(
                        "select count(*) from job_claims where queue = $1",
                        queue,
                    )
                    if int(recent_claims or 0) >= rate_limit.max_jobs:
                        return None

                row = await conn.fetchrow(
                    f"""
                    with next_job as (
                      select id
                      from jobs
                      where queue = $1 and status = 'queued' and run_at <= now()
                      order by priority asc, run_at asc, created_at asc
                      limit 1
                      for update skip locked
                    )
                    update jobs j
                    set
                      status = 'claimed',
                      attempt = j.attempt + 1,
                      locked_by = $2,
                      last_claimed_at = now(),
                      lease_expires_at = now() + (coalesce(j.lease_seconds, $3::int) * interval '1 second'),
                      updated_at = now()
                    from next_job n
                    where j.id = n.id
                    returning {JOB_COLUMNS}
                    """,
                    queue,
                    worker_id,
                    default_lease_seconds,
                )
                if row and rate_limit is not None:
                    await conn.execute("insert into job_claims (queue, job_id) values ($1, $2::uuid)", queue, row["id"])
                return self._job_row_to_record(row) if row else None

    async def complete_job(self, *, job_id: str, worker_id: str, result: dict[str, Any] | None) -> JobRecord:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        update jobs j
                        set
                          status = 'done',
                          result = $3::jsonb,
                          locked_by = null,
                          lease_expires_at = null,
                          updated_at = now()
                        where j.id = $1::uuid and j.status = 'claimed' and j.locked_by = $2
                        returning {JOB_COLUMNS}
                        """,
                        job_id,
                        worker_id,
                        json.dumps(result or {}),
                    )
                    if not row:
                        await self._raise_unclaimable(conn, job_id)
                    return self._job_row_to_record(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def fail_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        error: str,
        stack: str | None = None,
    ) -> JobRecord:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    current = await conn.fetchrow(
                        f"""
                        select {JOB_COLUMNS}
                        from jobs j
                        where j.id = $1::uuid and j.status = 'claimed' and j.locked_by = $2
                        for update
                        """,
                        job_id,
                        worker_id,
                    )
                    if not current:
                        await self._raise_unclaimable(conn, job_id)

                    job = self._job_row_to_record(current)
                    if job.attempt < job.max_attempts:
                        delay = compute_retry_delay_seconds(
                            attempt=job.attempt,
                            base_seconds=job.backoff_base_seconds,
                        )
                        row = await conn.fetchrow(
                            f"""
                            update jobs j
                            set
                              status = 'queued',
                              locked_by = null,
                              lease_expires_at = null,
                              run_at = now() + ($2::int * interval '1 second'),
                              last_error = $3,
                              first_failed_at = coalesce(j.first_failed_at, now()),
                              updated_at = now()
                            where j.id = $1::uuid
                            returning {JOB_COLUMNS}
                            """,
                            job_id,
                            delay,
                            error,
                        )
                        return self._job_row_to_record(row)

                    return await self._dead_letter_locked(conn, job=job, error=error, stack=stack, actor=worker_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def requeue_expired_jobs(self, *, limit: int, actor: str) -> dict[str, int]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        requeued = 0
        dead_lettered = 0

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    select {JOB_COLUMNS}
                    from jobs j
                    where j.status = 'claimed'
                      and j.lease_expires_at is not null
                      and j.lease_expires_at <= now()
                    order by j.lease_expires_at asc
                    limit $1
                    for update skip locked
                    """,
                    bounded_limit,
                )
                for row in rows:
                    job = self._job_row_to_record(row)
                    if job.attempt >= job.max_attempts:
                        await self._dead_letter_locked(conn, job=job, error=LEASE_EXPIRED_ERROR, stack=None, actor=actor)
                        dead_lettered += 1
                        continue
                    await conn.execute(
                        """
                        update jobs
                        set
                          status = 'queued',
                          locked_by = null,
                          lease_expires_at = null,
                          run_at = now(),
                          last_error = $2,
                          updated_at = now()
                        where id = $1::uuid
                        """,
                        job.id,
                        LEASE_EXPIRED_ERROR,
                    )
                    await self._insert_audit(
                        conn,
                        action="job_lease_requeued",
                        entity_type="job",
                        entity_id=job.id,
                        actor=actor,
                        reason="lease_expired",
                        metadata={"queue": job.queue, "attempt": job.attempt, "locked_by": job.locked_by},
                    )
                    requeued += 1
        return {"requeued": requeued, "dead_lettered": dead_lettered}

    async def get_job(self, job_id: str) -> JobRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {JOB_COLUMNS} from jobs j where j.id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_record(row)

    async def list_jobs(
        self,
        *,
        queue: str | None = None,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[JobRecord]:
        normalized_status = self._coerce_text(status)
        if normalized_status and normalized_status not in JOB_STATUSES:
            raise RepositoryValidationError("status must be one of: queued, claimed, done, dead_letter")
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {JOB_COLUMNS}
            from jobs j
            where ($1::text is null or j.queue = $1)
              and ($2::text is null or j.status = $2)
            order by j.updated_at desc, j.id desc
            limit $3
            offset $4
            """,
            self._coerce_text(queue),
            normalized_status,
            limit,
            offset,
        )
        return [self._job_row_to_record(row) for row in rows]

    async def queue_depths(self) -> dict[str, dict[str, int]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select queue, status, count(*)::int as total
            from jobs
            group by queue, status
            order by queue, status
            """
        )
        depths: dict[str, dict[str, int]] = {}
        for row in rows:
            depths.setdefault(row["queue"], {})[row["status"]] = int(row["total"])
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
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {DEAD_LETTER_COLUMNS}
            from dead_letters d
            where ($1::text is null or d.queue = $1)
              and ($2::boolean or d.replayed_at is null)
            order by d.created_at desc, d.id desc
            limit $3
            offset $4
            """,
            self._coerce_text(queue),
            include_replayed,
            limit,
            offset,
        )
        return [self._dead_letter_row_to_record(row) for row in rows]

    async def count_dead_letters(self, *, include_replayed: bool = False) -> int:
        pool = await self._get_pool()
        total = await pool.fetchval(
            "select count(*) from dead_letters where ($1::boolean or replayed_at is null)",
            include_replayed,
        )
        return int(total or 0)

    async def get_dead_letter(self, dead_letter_id: str) -> DeadLetterRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {DEAD_LETTER_COLUMNS} from dead_letters d where d.id = $1::uuid",
                dead_letter_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("dead letter not found") from exc
        if not row:
            raise RepositoryNotFoundError("dead letter not found")
        return self._dead_letter_row_to_record(row)

    async def replay_dead_letter(
        self,
        *,
        dead_letter_id: str,
        actor: str,
        max_attempts: int,
        backoff_base_seconds: int,
        lease_seconds: int | None,
    ) -> DeadLetterRecord:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    current = await conn.fetchrow(
                        f"""
                        select {DEAD_LETTER_COLUMNS}
                        from dead_letters d
                        where d.id = $1::uuid
                        for update
                        """,
                        dead_letter_id,
                    )
                    if not current:
                        raise RepositoryNotFoundError("dead letter not found")
                    record = self._dead_letter_row_to_record(current)
                    if record.replayed_at is not None:
                        raise RepositoryConflictError("dead letter already replayed")

                    replay_job_id = await conn.fetchval(
                        """
                        insert into jobs (queue, payload, max_attempts, backoff_base_seconds, lease_seconds, run_at)
                        values ($1, $2::jsonb, $3, $4, $5, now())
                        returning id::text
                        """,
                        record.queue,
                        json.dumps(record.payload),
                        max(1, max_attempts),
                        max(0, backoff_base_seconds),
                        lease_seconds,
                    )
                    row = await conn.fetchrow(
                        f"""
                        update dead_letters d
                        set replayed_at = now(), replay_job_id = $2::uuid
                        where d.id = $1::uuid
                        returning {DEAD_LETTER_COLUMNS}
                        """,
                        dead_letter_id,
                        replay_job_id,
                    )
                    await self._insert_audit(
                        conn,
                        action="dead_letter_replayed",
                        entity_type="job",
                        entity_id=record.job_id,
                        actor=actor,
                        reason="manual_replay",
                        metadata={"dead_letter_id": record.id, "replay_job_id": replay_job_id, "queue": record.queue},
                    )
                    return self._dead_letter_row_to_record(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("dead letter not found") from exc

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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into discovery_sources (name, url, domain, priority, active)
            values ($1, $2, $3, $4, $5)
            on conflict (url) do update
            set name = excluded.name, domain = excluded.domain, priority = excluded.priority, active = excluded.active
            returning id::text as id, name, url, domain, priority, active
            """,
            name,
            url,
            domain.lower(),
            priority,
            active,
        )
        return self._discovery_source_row_to_record(row)

    async def list_active_discovery_sources(self, *, priority: str | None = None) -> list[DiscoverySource]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id, name, url, domain, priority, active
            from discovery_sources
            where active = true and ($1::text is null or priority = $1)
            order by priority, name
            """,
            self._coerce_text(priority),
        )
        return [self._discovery_source_row_to_record(row) for row in rows]

    async def create_evidence(
        self,
        *,
        source_id: str | None,
        url: str,
        domain: str,
        raw_content: str,
        content_type: str = "text/html",
    ) -> tuple[Evidence, bool]:
        digest = content_hash(raw_content)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    if source_id is not None:
                        existing = await conn.fetchrow(
                            f"""
                            select {EVIDENCE_COLUMNS}
                            from evidence e
                            where e.source_id = $1::uuid and e.content_hash = $2
                            """,
                            source_id,
                            digest,
                        )
                        if existing:
                            return self._evidence_row_to_record(existing), False
                    row = await conn.fetchrow(
                        f"""
                        insert into evidence as e (source_id, url, domain, raw_content, content_type, content_hash)
                        values ($1::uuid, $2, $3, $4, $5, $6)
                        on conflict (source_id, content_hash) do nothing
                        returning {EVIDENCE_COLUMNS}
                        """,
                        source_id,
                        url,
                        domain.lower(),
                        raw_content,
                        content_type,
                        digest,
                    )
                    if not row:
                        row = await conn.fetchrow(
                            f"""
                            select {EVIDENCE_COLUMNS}
                            from evidence e
                            where e.source_id = $1::uuid and e.content_hash = $2
                            """,
                            source_id,
                            digest,
                        )
                        return self._evidence_row_to_record(row), False
                    return self._evidence_row_to_record(row), True
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("discovery source not found") from exc

    async def get_evidence(self, evidence_id: str) -> Evidence:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {EVIDENCE_COLUMNS} from evidence e where e.id = $1::uuid", evidence_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("evidence not found") from exc
        if not row:
            raise RepositoryNotFoundError("evidence not found")
        return self._evidence_row_to_record(row)

    async def list_evidence(self, *, limit: int = 100, offset: int = 0) -> list[Evidence]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {EVIDENCE_COLUMNS}
            from evidence e
            order by e.captured_at desc, e.id desc
            limit $1
            offset $2
            """,
            limit,
            offset,
        )
        return [self._evidence_row_to_record(row) for row in rows]

    # Source pointers

    async def create_source_pointers(
        self,
        *,
        evidence_id: str,
        pointers: list[dict[str, Any]],
    ) -> list[SourcePointer]:
        pool = await self._get_pool()
        created: list[SourcePointer] = []
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    for pointer in pointers:
                        row = await conn.fetchrow(
                            f"""
                            insert into source_pointers as p (
                              evidence_id,
                              concept_slug,
                              extracted_value,
                              value_type,
                              exact_quote,
                              confidence
                            )
                            values ($1::uuid, $2, $3, $4, $5, $6)
                            returning {POINTER_COLUMNS}
                            """,
                            evidence_id,
                            str(pointer["concept_slug"]),
                            str(pointer["extracted_value"]),
                            str(pointer.get("value_type") or "text"),
                            str(pointer.get("exact_quote") or ""),
                            float(pointer.get("confidence") or 0.0),
                        )
                        created.append(self._pointer_row_to_record(row))
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError) as exc:
            raise RepositoryNotFoundError("evidence not found") from exc
        return created

    async def list_source_pointers(
        self,
        *,
        evidence_id: str | None = None,
        pointer_ids: list[str] | None = None,
        limit: int = 1000,
    ) -> list[SourcePointer]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {POINTER_COLUMNS}
                from source_pointers p
                where ($1::uuid is null or p.evidence_id = $1::uuid)
                  and ($2::uuid[] is null or p.id = any($2::uuid[]))
                order by p.created_at asc, p.id asc
                limit $3
                """,
                evidence_id,
                pointer_ids,
                limit,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("invalid source pointer filter") from exc
        return [self._pointer_row_to_record(row) for row in rows]

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
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        insert into rules as r (
                          concept_slug,
                          value,
                          value_type,
                          risk_tier,
                          authority_level,
                          confidence,
                          base_confidence,
                          source_pointer_ids,
                          pointer_set_key,
                          applies_when,
                          overrides,
                          pending_since
                        )
                        values ($1, $2, $3, $4, $5, $6, $6, $7::uuid[], $8, $9::text[], $10::uuid[], now())
                        on conflict (pointer_set_key) do nothing
                        returning {RULE_COLUMNS}
                        """,
                        concept_slug,
                        value,
                        value_type,
                        risk_tier,
                        authority_level,
                        confidence,
                        source_pointer_ids,
                        key,
                        applies_when or [],
                        overrides or [],
                    )
                    if not row:
                        existing = await conn.fetchrow(
                            f"select {RULE_COLUMNS} from rules r where r.pointer_set_key = $1",
                            key,
                        )
                        return self._rule_row_to_record(existing), False

                    rule = self._rule_row_to_record(row)
                    await self._insert_audit(
                        conn,
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
                    return rule, True
        except pg_exc.CheckViolationError as exc:
            raise RepositoryValidationError("invalid rule attributes") from exc

    async def find_rule_by_pointer_set(self, pointer_ids: list[str]) -> Rule | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {RULE_COLUMNS} from rules r where r.pointer_set_key = $1",
            pointer_set_key(pointer_ids),
        )
        return self._rule_row_to_record(row) if row else None

    async def get_rule(self, rule_id: str) -> Rule:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {RULE_COLUMNS} from rules r where r.id = $1::uuid", rule_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("rule not found") from exc
        if not row:
            raise RepositoryNotFoundError("rule not found")
        return self._rule_row_to_record(row)

    async def list_rules(
        self,
        *,
        statuses: Iterable[str] | None = None,
        concept_slug: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Rule]:
        normalized_statuses = self._normalize_rule_statuses(statuses)
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {RULE_COLUMNS}
            from rules r
            where ($1::text[] is null or r.status = any($1::text[]))
              and ($2::text is null or r.concept_slug = $2)
            order by r.updated_at desc, r.id desc
            limit $3
            offset $4
            """,
            normalized_statuses,
            self._coerce_text(concept_slug),
            limit,
            offset,
        )
        return [self._rule_row_to_record(row) for row in rows]

    async def list_rules_by_ids(self, rule_ids: list[str]) -> list[Rule]:
        if not rule_ids:
            return []
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"select {RULE_COLUMNS} from rules r where r.id = any($1::uuid[]) order by r.created_at asc",
                rule_ids,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("rule not found") from exc
        return [self._rule_row_to_record(row) for row in rows]

    async def list_active_rules(self, *, limit: int = 5000) -> list[Rule]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {RULE_COLUMNS}
            from rules r
            where r.status <> 'REJECTED' and r.superseded_by is null
            order by r.created_at asc
            limit $1
            """,
            limit,
        )
        return [self._rule_row_to_record(row) for row in rows]

    async def find_conflicting_rules(self, rule: Rule) -> list[Rule]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {RULE_COLUMNS}
            from rules r
            where r.concept_slug = $1
              and r.value <> $2
              and r.id <> $3::uuid
              and r.status = any($4::text[])
              and r.superseded_by is null
            order by r.created_at asc
            """,
            rule.concept_slug,
            rule.value,
            rule.id,
            list(LIVE_RULE_STATUSES),
        )
        return [self._rule_row_to_record(row) for row in rows]

    async def list_auto_approve_candidates(
        self,
        *,
        pending_before: datetime,
        min_confidence: float,
        limit: int,
    ) -> list[Rule]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {RULE_COLUMNS}
            from rules r
            where r.status = 'PENDING_REVIEW'
              and r.risk_tier = any($1::text[])
              and r.superseded_by is null
              and r.confidence >= $2
              and coalesce(r.pending_since, r.created_at) <= $3
              and not exists (
                select 1
                from conflicts c
                where c.status = 'OPEN' and r.id = any(c.rule_ids)
              )
            order by coalesce(r.pending_since, r.created_at) asc, r.id asc
            limit $4
            """,
            sorted(AUTO_APPROVABLE_RISK_TIERS),
            min_confidence,
            pending_before,
            limit,
        )
        return [self._rule_row_to_record(row) for row in rows]

    async def rule_has_open_conflict(self, rule_id: str) -> bool:
        pool = await self._get_pool()
        found = await pool.fetchval(
            "select 1 from conflicts where status = 'OPEN' and $1::uuid = any(rule_ids) limit 1",
            rule_id,
        )
        return bool(found)

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
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    current = await conn.fetchrow(
                        f"select {RULE_COLUMNS} from rules r where r.id = $1::uuid for update",
                        rule_id,
                    )
                    if not current:
                        raise RepositoryNotFoundError("rule not found")
                    rule = self._rule_row_to_record(current)
                    self._validate_rule_transition(rule=rule, expected=expected, to_status=to_status, human=human)

                    row = await conn.fetchrow(
                        f"""
                        update rules r
                        set
                          status = $2,
                          approved_by = case when $2 = 'APPROVED' then $3 else r.approved_by end,
                          published_at = case when $2 = 'PUBLISHED' then now() else r.published_at end,
                          last_verified_at = case when $2 = 'PUBLISHED' then now() else r.last_verified_at end,
                          pending_since = case when $2 = 'PENDING_REVIEW' then now() else r.pending_since end,
                          updated_at = now()
                        where r.id = $1::uuid and r.status = any($4::text[])
                        returning {RULE_COLUMNS}
                        """,
                        rule_id,
                        to_status,
                        actor,
                        expected,
                    )
                    if not row:
                        raise RepositoryConflictError("rule status changed concurrently")
                    await self._insert_audit(
                        conn,
                        action=f"rule_{to_status.lower()}",
                        entity_type="rule",
                        entity_id=rule_id,
                        actor=actor,
                        reason=reason,
                        metadata={"from_status": rule.status, "to_status": to_status, **(metadata or {})},
                    )
                    return self._rule_row_to_record(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("rule not found") from exc

    async def append_review_note(self, *, rule_id: str, note: dict[str, Any]) -> Rule:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update rules r
                set review_notes = r.review_notes || $2::jsonb, updated_at = now()
                where r.id = $1::uuid
                returning {RULE_COLUMNS}
                """,
                rule_id,
                json.dumps([note], default=str),
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("rule not found") from exc
        if not row:
            raise RepositoryNotFoundError("rule not found")
        return self._rule_row_to_record(row)

    async def update_rule_confidence(
        self,
        *,
        rule_id: str,
        confidence: float,
        note: dict[str, Any],
    ) -> Rule | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update rules r
            set
              confidence = $2,
              review_notes = r.review_notes || $3::jsonb,
              updated_at = now()
            where r.id = $1::uuid
              and r.status = any($4::text[])
              and r.superseded_by is null
              and r.confidence <> $2
            returning {RULE_COLUMNS}
            """,
            rule_id,
            confidence,
            json.dumps([note], default=str),
            sorted(DECAY_ELIGIBLE_STATUSES),
        )
        return self._rule_row_to_record(row) if row else None

    async def supersede_rule(
        self,
        *,
        rule_id: str,
        superseded_by: str,
        note: dict[str, Any],
        actor: str,
        reason: str,
    ) -> Rule | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update rules r
                    set
                      superseded_by = $2::uuid,
                      review_notes = r.review_notes || $3::jsonb,
                      updated_at = now()
                    where r.id = $1::uuid and r.superseded_by is null
                    returning {RULE_COLUMNS}
                    """,
                    rule_id,
                    superseded_by,
                    json.dumps([note], default=str),
                )
                if not row:
                    return None
                await self._insert_audit(
                    conn,
                    action="rule_superseded",
                    entity_type="rule",
                    entity_id=rule_id,
                    actor=actor,
                    reason=reason,
                    metadata={"superseded_by": superseded_by},
                )
                return self._rule_row_to_record(row)

    async def list_release_candidates(self, *, limit: int) -> list[Rule]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {RULE_COLUMNS}
            from rules r
            where r.status = 'APPROVED'
              and r.superseded_by is null
              and not exists (select 1 from releases rel where r.id = any(rel.rule_ids))
            order by r.updated_at asc, r.id asc
            limit $1
            """,
            limit,
        )
        return [self._rule_row_to_record(row) for row in rows]

    async def list_unpublished_released_rules(self, *, limit: int = 100) -> list[Rule]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {RULE_COLUMNS}
            from rules r
            where r.status = 'APPROVED'
              and r.superseded_by is null
              and exists (select 1 from releases rel where r.id = any(rel.rule_ids))
            order by r.updated_at asc, r.id asc
            limit $1
            """,
            limit,
        )
        return [self._rule_row_to_record(row) for row in rows]

    async def list_decay_candidates(self, *, limit: int = 10000) -> list[Rule]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {RULE_COLUMNS}
            from rules r
            where r.status = any($1::text[]) and r.superseded_by is null
            order by r.created_at asc
            limit $2
            """,
            sorted(DECAY_ELIGIBLE_STATUSES),
            limit,
        )
        return [self._rule_row_to_record(row) for row in rows]

    async def list_published_rule_sources(self) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select distinct
              r.id::text as rule_id,
              r.concept_slug,
              e.id::text as evidence_id,
              e.domain
            from rules r
            join source_pointers p on p.id = any(r.source_pointer_ids)
            join evidence e on e.id = p.evidence_id
            where r.status = 'PUBLISHED'
            order by rule_id, evidence_id
            """
        )
        return [dict(row) for row in rows]

    # Conflicts

    async def create_conflict(self, *, rule_ids: list[str], reason: str, actor: str) -> tuple[Conflict, bool]:
        if len(set(rule_ids)) < 2:
            raise RepositoryValidationError("a conflict requires at least two distinct rules")
        ordered = sorted(set(rule_ids))
        key = rule_set_key(ordered)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    insert into conflicts as c (rule_ids, rule_set_key, reason)
                    values ($1::uuid[], $2, $3)
                    on conflict (rule_set_key) do nothing
                    returning {CONFLICT_COLUMNS}
                    """,
                    ordered,
                    key,
                    reason,
                )
                if not row:
                    existing = await conn.fetchrow(
                        f"select {CONFLICT_COLUMNS} from conflicts c where c.rule_set_key = $1",
                        key,
                    )
                    return self._conflict_row_to_record(existing), False
                conflict = self._conflict_row_to_record(row)
                await self._insert_audit(
                    conn,
                    action="conflict_opened",
                    entity_type="conflict",
                    entity_id=conflict.id,
                    actor=actor,
                    reason=reason,
                    metadata={"rule_ids": conflict.rule_ids},
                )
                return conflict, True

    async def get_conflict(self, conflict_id: str) -> Conflict:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {CONFLICT_COLUMNS} from conflicts c where c.id = $1::uuid",
                conflict_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("conflict not found") from exc
        if not row:
            raise RepositoryNotFoundError("conflict not found")
        return self._conflict_row_to_record(row)

    async def list_conflicts(self, *, status: str | None = None, limit: int = 100, offset: int = 0) -> list[Conflict]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {CONFLICT_COLUMNS}
            from conflicts c
            where ($1::text is null or c.status = $1)
            order by c.created_at asc, c.id asc
            limit $2
            offset $3
            """,
            self._coerce_text(status),
            limit,
            offset,
        )
        return [self._conflict_row_to_record(row) for row in rows]

    async def resolve_conflict(
        self,
        *,
        conflict_id: str,
        resolution: dict[str, Any],
        actor: str,
        reason: str,
    ) -> Conflict | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update conflicts c
                    set status = 'RESOLVED', resolution = $2::jsonb, resolved_at = now(), updated_at = now()
                    where c.id = $1::uuid and c.status = 'OPEN'
                    returning {CONFLICT_COLUMNS}
                    """,
                    conflict_id,
                    json.dumps(resolution, default=str),
                )
                if not row:
                    return None
                await self._insert_audit(
                    conn,
                    action="conflict_resolved",
                    entity_type="conflict",
                    entity_id=conflict_id,
                    actor=actor,
                    reason=reason,
                    metadata=resolution,
                )
                return self._conflict_row_to_record(row)

    # Releases

    async def create_release(
        self,
        *,
        release_key: str,
        rule_ids: list[str],
        content_hash: str,
    ) -> tuple[Release, bool]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into releases (release_key, rule_ids, content_hash)
            values ($1, $2::uuid[], $3)
            on conflict (release_key) do nothing
            returning id::text as id, release_key, rule_ids::text[] as rule_ids, content_hash, created_at
            """,
            release_key,
            rule_ids,
            content_hash,
        )
        created = row is not None
        if not row:
            row = await pool.fetchrow(
                """
                select id::text as id, release_key, rule_ids::text[] as rule_ids, content_hash, created_at
                from releases
                where release_key = $1
                """,
                release_key,
            )
        return self._release_row_to_record(row), created

    async def list_releases(self, *, limit: int = 100, offset: int = 0) -> list[Release]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id, release_key, rule_ids::text[] as rule_ids, content_hash, created_at
            from releases
            order by created_at desc, id desc
            limit $1
            offset $2
            """,
            limit,
            offset,
        )
        return [self._release_row_to_record(row) for row in rows]

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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await self._insert_audit(
                conn,
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
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id, action, entity_type, entity_id, actor, reason, metadata, created_at
            from audit_log
            where ($1::text is null or entity_type = $1)
              and ($2::text is null or entity_id = $2)
              and ($3::text is null or action = $3)
            order by created_at desc, id desc
            limit $4
            offset $5
            """,
            self._coerce_text(entity_type),
            self._coerce_text(entity_id),
            self._coerce_text(action),
            limit,
            offset,
        )
        return [self._audit_row_to_record(row) for row in rows]

    # Health snapshots

    async def count_summary(self) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                select
                  (select count(*) from discovery_sources where active = true)::int as discovery_sources,
                  (select count(*) from evidence)::int as evidence,
                  (select count(*) from source_pointers)::int as source_pointers,
                  (select count(*) from conflicts where status = 'OPEN')::int as open_conflicts,
                  (select count(*) from dead_letters where replayed_at is null)::int as dead_letters
                """
            )
            status_rows = await conn.fetch("select status, count(*)::int as total from rules group by status")
        rules_by_status = {status: 0 for status in sorted(RULE_STATUSES)}
        for status_row in status_rows:
            rules_by_status[status_row["status"]] = int(status_row["total"])
        return {
            "discovery_sources": int(row["discovery_sources"]),
            "evidence": int(row["evidence"]),
            "source_pointers": int(row["source_pointers"]),
            "rules_by_status": rules_by_status,
            "open_conflicts": int(row["open_conflicts"]),
            "dead_letters": int(row["dead_letters"]),
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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into health_snapshots (kind, run_id, healthy, counts, alerts, details)
            values ($1, $2, $3, $4::jsonb, $5::jsonb, $6::jsonb)
            returning id::text as id, kind, run_id, healthy, counts, alerts, details, created_at
            """,
            kind,
            run_id,
            healthy,
            json.dumps(counts, default=str),
            json.dumps([self._alert_to_dict(alert) for alert in alerts], default=str),
            json.dumps(details, default=str),
        )
        return self._snapshot_row_to_record(row)

    async def list_health_snapshots(
        self,
        *,
        kind: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[HealthSnapshot]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id, kind, run_id, healthy, counts, alerts, details, created_at
            from health_snapshots
            where ($1::text is null or kind = $1)
            order by created_at desc, id desc
            limit $2
            offset $3
            """,
            self._coerce_text(kind),
            limit,
            offset,
        )
        return [self._snapshot_row_to_record(row) for row in rows]

    async def get_latest_health_snapshot(self, *, kind: str | None = None) -> HealthSnapshot | None:
        snapshots = await self.list_health_snapshots(kind=kind, limit=1)
        return snapshots[0] if snapshots else None

    # Internals

    async def _dead_letter_locked(
        self,
        conn: asyncpg.Connection,
        *,
        job: JobRecord,
        error: str,
        stack: str | None,
        actor: str,
    ) -> JobRecord:
        row = await conn.fetchrow(
            f"""
            update jobs j
            set
              status = 'dead_letter',
              locked_by = null,
              lease_expires_at = null,
              last_error = $2,
              first_failed_at = coalesce(j.first_failed_at, now()),
              updated_at = now()
            where j.id = $1::uuid
            returning {JOB_COLUMNS}
            """,
            job.id,
            error,
        )
        dead = self._job_row_to_record(row)
        await conn.execute(
            """
            insert into dead_letters (
              job_id,
              queue,
              payload,
              error,
              stack,
              attempts,
              first_failed_at,
              last_failed_at
            )
            values ($1::uuid, $2, $3::jsonb, $4, $5, $6, $7, now())
            on conflict (job_id) do nothing
            """,
            dead.id,
            dead.queue,
            json.dumps(dead.payload),
            error,
            stack,
            dead.attempt,
            dead.first_failed_at,
        )
        await self._insert_audit(
            conn,
            action="job_dead_lettered",
            entity_type="job",
            entity_id=dead.id,
            actor=actor,
            reason=error,
            metadata={"queue": dead.queue, "attempts": dead.attempt},
        )
        return dead

    async def _raise_unclaimable(self, conn: asyncpg.Connection, job_id: str) -> None:
        exists = await conn.fetchval("select 1 from jobs where id = $1::uuid", job_id)
        if not exists:
            raise RepositoryNotFoundError("job not found")
        raise RepositoryConflictError("job is not claimed by this worker")

    async def _insert_audit(
        self,
        conn: asyncpg.Connection,
        *,
        action: str,
        entity_type: str,
        entity_id: str,
        actor: str,
        reason: str | None,
        metadata: dict[str, Any],
    ) -> AuditLogEntry:
        row = await conn.fetchrow(
            """
            insert into audit_log (action, entity_type, entity_id, actor, reason, metadata)
            values ($1, $2, $3, $4, $5, $6::jsonb)
            returning id::text as id, action, entity_type, entity_id, actor, reason, metadata, created_at
            """,
            action,
            entity_type,
            entity_id,
            actor,
            reason,
            json.dumps(metadata, default=str),
        )
        return self._audit_row_to_record(row)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("RTL_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _validate_rule_transition(*, rule: Rule, expected: list[str], to_status: str, human: bool) -> None:
        if rule.status not in expected:
            raise RepositoryConflictError(f"rule is {rule.status}, expected one of: {', '.join(expected)}")
        if rule.superseded_by and to_status in {"APPROVED", "PUBLISHED"}:
            raise RepositoryConflictError("superseded rules cannot be approved or published")
        if to_status in {"APPROVED", "PUBLISHED"} and not rule.source_pointer_ids:
            raise RepositoryConflictError("rule has no source pointers")
        if to_status == "APPROVED" and rule.risk_tier in HUMAN_ONLY_RISK_TIERS and not human:
            raise RepositoryForbiddenError(f"risk tier {rule.risk_tier} requires human approval")

    def _normalize_rule_statuses(self, statuses: Iterable[str] | None) -> list[str] | None:
        if statuses is None:
            return None
        normalized = sorted({status.strip().upper() for status in statuses if status and status.strip()})
        if not normalized:
            return None
        unknown = [status for status in normalized if status not in RULE_STATUSES]
        if unknown:
            raise RepositoryValidationError(
                "status must be one of: PENDING_REVIEW, APPROVED, PUBLISHED, REJECTED",
            )
        return normalized

    def _job_row_to_record(self, row: asyncpg.Record) -> JobRecord:
        result = row["result"]
        return JobRecord(
            id=row["id"],
            queue=row["queue"],
            payload=self._coerce_json_dict(row["payload"]),
            status=row["status"],
            attempt=int(row["attempt"]),
            max_attempts=int(row["max_attempts"]),
            priority=int(row["priority"]),
            backoff_base_seconds=int(row["backoff_base_seconds"]),
            lease_seconds=self._coerce_int(row["lease_seconds"]),
            job_key=row["job_key"],
            run_at=row["run_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            locked_by=row["locked_by"],
            lease_expires_at=row["lease_expires_at"],
            last_claimed_at=row["last_claimed_at"],
            result=self._coerce_json_dict(result) if result is not None else None,
            last_error=row["last_error"],
            first_failed_at=row["first_failed_at"],
        )

    def _dead_letter_row_to_record(self, row: asyncpg.Record) -> DeadLetterRecord:
        return DeadLetterRecord(
            id=row["id"],
            job_id=row["job_id"],
            queue=row["queue"],
            payload=self._coerce_json_dict(row["payload"]),
            error=row["error"],
            stack=row["stack"],
            attempts=int(row["attempts"]),
            first_failed_at=row["first_failed_at"],
            last_failed_at=row["last_failed_at"],
            created_at=row["created_at"],
            replayed_at=row["replayed_at"],
            replay_job_id=row["replay_job_id"],
        )

    @staticmethod
    def _discovery_source_row_to_record(row: asyncpg.Record) -> DiscoverySource:
        return DiscoverySource(
            id=row["id"],
            name=row["name"],
            url=row["url"],
            domain=row["domain"],
            priority=row["priority"],
            active=bool(row["active"]),
        )

    @staticmethod
    def _evidence_row_to_record(row: asyncpg.Record) -> Evidence:
        return Evidence(
            id=row["id"],
            source_id=row["source_id"],
            url=row["url"],
            domain=row["domain"],
            raw_content=row["raw_content"],
            content_type=row["content_type"],
            content_hash=row["content_hash"],
            captured_at=row["captured_at"],
        )

    @staticmethod
    def _pointer_row_to_record(row: asyncpg.Record) -> SourcePointer:
        return SourcePointer(
            id=row["id"],
            evidence_id=row["evidence_id"],
            concept_slug=row["concept_slug"],
            extracted_value=row["extracted_value"],
            value_type=row["value_type"],
            exact_quote=row["exact_quote"],
            confidence=float(row["confidence"]),
            created_at=row["created_at"],
        )

    def _rule_row_to_record(self, row: asyncpg.Record) -> Rule:
        return Rule(
            id=row["id"],
            concept_slug=row["concept_slug"],
            value=row["value"],
            value_type=row["value_type"],
            status=row["status"],
            risk_tier=row["risk_tier"],
            authority_level=row["authority_level"],
            confidence=float(row["confidence"]),
            base_confidence=float(row["base_confidence"]),
            source_pointer_ids=list(row["source_pointer_ids"] or []),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            pending_since=row["pending_since"],
            applies_when=list(row["applies_when"] or []),
            overrides=list(row["overrides"] or []),
            version=int(row["version"]),
            review_notes=self._coerce_json_list(row["review_notes"]),
            approved_by=row["approved_by"],
            last_verified_at=row["last_verified_at"],
            published_at=row["published_at"],
            superseded_by=row["superseded_by"],
        )

    def _conflict_row_to_record(self, row: asyncpg.Record) -> Conflict:
        resolution = row["resolution"]
        return Conflict(
            id=row["id"],
            status=row["status"],
            rule_ids=list(row["rule_ids"] or []),
            reason=row["reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            resolution=self._coerce_json_dict(resolution) if resolution is not None else None,
            resolved_at=row["resolved_at"],
        )

    @staticmethod
    def _release_row_to_record(row: asyncpg.Record) -> Release:
        return Release(
            id=row["id"],
            release_key=row["release_key"],
            rule_ids=list(row["rule_ids"] or []),
            content_hash=row["content_hash"],
            created_at=row["created_at"],
        )

    def _audit_row_to_record(self, row: asyncpg.Record) -> AuditLogEntry:
        return AuditLogEntry(
            id=row["id"],
            action=row["action"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            actor=row["actor"],
            reason=row["reason"],
            metadata=self._coerce_json_dict(row["metadata"]),
            created_at=row["created_at"],
        )

    def _snapshot_row_to_record(self, row: asyncpg.Record) -> HealthSnapshot:
        return HealthSnapshot(
            id=row["id"],
            kind=row["kind"],
            run_id=row["run_id"],
            healthy=bool(row["healthy"]),
            counts=self._coerce_json_dict(row["counts"]),
            alerts=[
                HealthAlert(
                    type=str(item.get("type")),
                    severity=item.get("severity") or "warning",
                    message=str(item.get("message") or ""),
                    details=item.get("details") if isinstance(item.get("details"), dict) else {},
                )
                for item in self._coerce_json_list(row["alerts"])
            ],
            details=self._coerce_json_dict(row["details"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _alert_to_dict(alert: HealthAlert) -> dict[str, Any]:
        return {
            "type": alert.type,
            "severity": alert.severity,
            "message": alert.message,
            "details": alert.details,
        }

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _coerce_int(value: Any) -> int | None:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _coerce_json_list(value: Any) -> list[dict[str, Any]]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return []
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> Any:
    settings = get_settings()
    if settings.storage_backend == "memory":
        from regtruth.services.store import InMemoryRepository

        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
