from __future__ import annotations

import asyncio

import pytest

from regtruth.jobs.composition import execute_composition
from regtruth.jobs.discovery import DiscoveryFailedError, execute_discovery
from regtruth.jobs.executor import JobExecutor
from regtruth.jobs.extraction import execute_extraction
from regtruth.jobs.release import execute_release
from regtruth.jobs.review import execute_review
from regtruth.services.queues import (
    COMPOSE_QUEUE,
    DISCOVERY_QUEUE,
    EXTRACT_QUEUE,
    RELEASE_QUEUE,
    REVIEW_QUEUE,
    EnqueueOptions,
    stable_batch_key,
)

PU_URL = "https://porezna-uprava.gov.hr/pdv"


async def _drain(context, queue: str) -> list[dict]:
    executor = JobExecutor(context)
    results = []
    while True:
        job = await context.queue.claim(queue, "test-worker")
        if job is None:
            return results
        result = await executor.execute(job)
        await context.queue.complete(job.id, "test-worker", result)
        results.append(result)


def test_discovery_to_review_flow(context, repository, capabilities, clock) -> None:
    capabilities.documents[PU_URL] = [{"url": PU_URL, "content": "Standardna stopa PDV-a iznosi 25%"}]
    capabilities.pointers = [
        {"concept_slug": "vat-standard-rate", "extracted_value": "25", "value_type": "percentage", "confidence": 0.95},
        {"concept_slug": "vat-standard-rate", "extracted_value": "25%", "value_type": "percentage", "confidence": 0.9},
        {"concept_slug": "vat-registration-threshold", "extracted_value": "60000", "value_type": "currency_eur"},
    ]

    async def run() -> None:
        await repository.create_discovery_source(name="Porezna", url=PU_URL, domain="porezna-uprava.gov.hr", priority="CRITICAL")
        await context.queue.enqueue(DISCOVERY_QUEUE, {"run_id": "run-1", "priority": "CRITICAL"})

        [discovered] = await _drain(context, DISCOVERY_QUEUE)
        assert discovered["new_evidence"] == 1
        assert len(discovered["extract_job_ids"]) == 1

        [extracted] = await _drain(context, EXTRACT_QUEUE)
        assert extracted["pointers"] == 3
        assert len(extracted["compose_job_ids"]) == 2

        composed = await _drain(context, COMPOSE_QUEUE)
        assert sorted(result["created"] for result in composed) == [True, True]

        clock.advance(hours=25)
        reviewed = await _drain(context, REVIEW_QUEUE)
        assert all(result["approved"] for result in reviewed)

    asyncio.run(run())

    assert {rule.status for rule in repository.rules.values()} == {"APPROVED"}
    assert {len(rule.source_pointer_ids) for rule in repository.rules.values()} == {1, 2}


def test_rediscovered_content_is_not_extracted_twice(context, repository, capabilities) -> None:
    capabilities.documents[PU_URL] = [{"url": PU_URL, "content": "same"}]
    capabilities.pointers = [{"concept_slug": "vat-standard-rate", "extracted_value": "25"}]

    async def run() -> None:
        await repository.create_discovery_source(name="Porezna", url=PU_URL, domain="porezna-uprava.gov.hr")
        await context.queue.enqueue(DISCOVERY_QUEUE, {"run_id": "run-1"})
        await _drain(context, DISCOVERY_QUEUE)
        await _drain(context, EXTRACT_QUEUE)

        await context.queue.enqueue(DISCOVERY_QUEUE, {"run_id": "run-2"})
        [second] = await _drain(context, DISCOVERY_QUEUE)
        assert second["new_evidence"] == 0
        assert second["extract_job_ids"] == []

    asyncio.run(run())

    assert len(repository.evidence) == 1
    assert [name for name, _ in capabilities.calls].count("extract") == 1


def test_discovery_fails_only_when_every_source_fails(context, repository, capabilities) -> None:
    capabilities.failing_urls = {"https://a.hr", "https://b.hr"}

    async def run() -> None:
        await repository.create_discovery_source(name="a", url="https://a.hr", domain="a.hr")
        await repository.create_discovery_source(name="b", url="https://b.hr", domain="b.hr")
        job_id = await context.queue.enqueue(DISCOVERY_QUEUE, {"run_id": "run-1"})
        job = await context.queue.claim(DISCOVERY_QUEUE, "w1")
        assert job.id == job_id
        with pytest.raises(DiscoveryFailedError):
            await execute_discovery(job, context)

        capabilities.failing_urls = {"https://a.hr"}
        result = await execute_discovery(job, context)
        assert result["failed_sources"] != []
        assert result["scanned"] == 1

    asyncio.run(run())


def test_scanned_evidence_goes_through_ocr(context, repository, capabilities) -> None:
    capabilities.pointers = [{"concept_slug": "vat-standard-rate", "extracted_value": "25"}]

    async def run():
        evidence, _ = await repository.create_evidence(
            source_id=None,
            url="https://nn.hr/scan.png",
            domain="nn.hr",
            raw_content="base64-bytes",
            content_type="image/png",
        )
        job_id = await context.queue.enqueue(EXTRACT_QUEUE, {"evidence_id": evidence.id})
        job = await context.queue.claim(EXTRACT_QUEUE, "w1")
        assert job.id == job_id
        return await execute_extraction(job, context)

    result = asyncio.run(run())

    assert result["ocr_engine"] == "fallback"
    assert ("extract", "Standardna stopa PDV-a iznosi 25%") in capabilities.calls


def test_composition_opens_conflict_with_contradicting_rule(context, repository, capabilities, make_rule) -> None:
    existing = make_rule(status="PUBLISHED", value="13")
    capabilities.rule = {"value": "25", "risk_tier": "T1", "authority_level": "LAW", "confidence": 0.95}

    async def run():
        evidence, _ = await repository.create_evidence(source_id=None, url="https://nn.hr", domain="nn.hr", raw_content="x")
        pointers = await repository.create_source_pointers(
            evidence_id=evidence.id,
            pointers=[{"concept_slug": "vat-standard-rate", "extracted_value": "25"}],
        )
        pointer_ids = [pointer.id for pointer in pointers]
        await context.queue.enqueue(COMPOSE_QUEUE, {"pointer_ids": pointer_ids})
        job = await context.queue.claim(COMPOSE_QUEUE, "w1")
        first = await execute_composition(job, context)
        second = await execute_composition(job, context)
        return first, second

    first, second = asyncio.run(run())

    assert first["created"] is True
    assert second["created"] is False
    assert second["rule_id"] == first["rule_id"]
    [conflict] = repository.conflicts.values()
    assert set(conflict.rule_ids) == {existing.id, first["rule_id"]}
    assert first["conflict_ids"] == second["conflict_ids"] == [conflict.id]
    assert sum(1 for job in repository.jobs.values() if job.queue == REVIEW_QUEUE) == 1


def test_review_records_reason_once_for_human_only_rule(context, repository, make_rule) -> None:
    rule = make_rule(risk_tier="T0")

    async def run() -> None:
        for _ in range(2):
            await context.queue.enqueue(REVIEW_QUEUE, {"rule_id": rule.id})
            job = await context.queue.claim(REVIEW_QUEUE, "w1")
            result = await execute_review(job, context)
            await context.queue.complete(job.id, "w1", result)
            assert result == {"rule_id": rule.id, "approved": False, "reason": "risk_tier_requires_human_review"}

    asyncio.run(run())

    stored = repository.rules[rule.id]
    assert stored.status == "PENDING_REVIEW"
    assert [note["reason"] for note in stored.review_notes] == ["risk_tier_requires_human_review"]


def test_release_publishes_approved_rules_idempotently(context, repository, make_rule) -> None:
    approved = [make_rule(status="APPROVED", value=str(index)) for index in range(3)]
    rejected = make_rule(status="REJECTED")
    rule_ids = sorted([rule.id for rule in approved] + [rejected.id])
    release_key = stable_batch_key("release", rule_ids)

    async def run():
        await context.queue.enqueue(
            RELEASE_QUEUE,
            {"rule_ids": rule_ids, "release_key": release_key},
            EnqueueOptions(job_key=release_key),
        )
        job = await context.queue.claim(RELEASE_QUEUE, "w1")
        return await execute_release(job, context), await execute_release(job, context)

    first, second = asyncio.run(run())

    assert first["created"] is True
    assert sorted(first["published"]) == sorted(rule.id for rule in approved)
    assert first["skipped"] == [rejected.id]
    assert second["created"] is False
    assert second["release_id"] == first["release_id"]
    assert second["published"] == []
    assert all(repository.rules[rule.id].status == "PUBLISHED" for rule in approved)
    assert len(repository.releases) == 1
