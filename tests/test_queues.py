from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from regtruth.services.queues import (
    EXTRACT_QUEUE,
    REVIEW_QUEUE,
    SCHEDULED_QUEUE,
    EnqueueOptions,
    JobQueue,
    QueueRegistry,
    QueueSpec,
    UnknownQueueError,
    build_queue_registry,
    compute_retry_delay_seconds,
    stable_batch_key,
)
from regtruth.services.repository import RepositoryConflictError


def _queue(settings, repository) -> JobQueue:
    return JobQueue(repository, build_queue_registry(settings))


def test_retry_delay_doubles_per_attempt() -> None:
    assert [compute_retry_delay_seconds(attempt=attempt, base_seconds=10) for attempt in (1, 2, 3)] == [10, 20, 40]
    assert compute_retry_delay_seconds(attempt=3, base_seconds=0) == 0


def test_registry_pins_scheduled_queue_to_single_consumer(settings) -> None:
    registry = build_queue_registry(settings)
    assert registry.get(SCHEDULED_QUEUE).concurrency == 1
    assert registry.get(EXTRACT_QUEUE).concurrency == 2
    assert registry.get(EXTRACT_QUEUE).rate_limit is not None

    with pytest.raises(ValueError):
        QueueRegistry([QueueSpec(name=SCHEDULED_QUEUE, concurrency=2)])
    with pytest.raises(UnknownQueueError):
        registry.get("nope")


def test_stable_batch_key_ignores_input_order() -> None:
    assert stable_batch_key("release", ["b", "a", "c"]) == stable_batch_key("release", ["c", "b", "a"])
    assert stable_batch_key("release", ["a"]) != stable_batch_key("release", ["a", "b"])


def test_failed_job_retries_with_backoff_then_dead_letters_once(settings, repository, clock) -> None:
    queue = _queue(settings, repository)

    async def run() -> None:
        job_id = await queue.enqueue(REVIEW_QUEUE, {"rule_id": "r-1"})
        first_failure = clock()

        job = await queue.claim(REVIEW_QUEUE, "w1")
        assert job.attempt == 1
        failed = await queue.fail(job_id, "w1", "boom")
        assert failed.status == "queued"
        assert failed.run_at == clock() + timedelta(seconds=10)
        assert await queue.claim(REVIEW_QUEUE, "w1") is None

        clock.advance(seconds=10)
        job = await queue.claim(REVIEW_QUEUE, "w1")
        assert job.attempt == 2
        failed = await queue.fail(job_id, "w1", "boom again")
        assert failed.run_at == clock() + timedelta(seconds=20)

        clock.advance(seconds=20)
        job = await queue.claim(REVIEW_QUEUE, "w1")
        assert job.attempt == 3
        failed = await queue.fail(job_id, "w1", "final boom", stack="Traceback ...")
        assert failed.status == "dead_letter"
        assert failed.attempt == failed.max_attempts == 3

        records = await repository.list_dead_letters()
        assert len(records) == 1
        record = records[0]
        assert record.job_id == job_id
        assert record.payload == {"rule_id": "r-1"}
        assert record.error == "final boom"
        assert record.stack == "Traceback ..."
        assert record.attempts == 3
        assert record.first_failed_at == first_failure
        assert record.last_failed_at == clock()

        clock.advance(minutes=10)
        assert await queue.claim(REVIEW_QUEUE, "w1") is None

    asyncio.run(run())


def test_job_key_dedupes_only_while_active(settings, repository) -> None:
    queue = _queue(settings, repository)

    async def run() -> None:
        first = await queue.enqueue(REVIEW_QUEUE, {"rule_id": "r-1"}, EnqueueOptions(job_key="review:r-1"))
        second = await queue.enqueue(REVIEW_QUEUE, {"rule_id": "r-1"}, EnqueueOptions(job_key="review:r-1"))
        assert first == second
        assert len(repository.jobs) == 1

        await queue.claim(REVIEW_QUEUE, "w1")
        await queue.complete(first, "w1", {"ok": True})
        third = await queue.enqueue(REVIEW_QUEUE, {"rule_id": "r-1"}, EnqueueOptions(job_key="review:r-1"))
        assert third != first

    asyncio.run(run())


def test_claim_prefers_lower_priority_and_respects_delay(settings, repository, clock) -> None:
    queue = _queue(settings, repository)

    async def run() -> None:
        delayed = await queue.enqueue(REVIEW_QUEUE, {"n": 0}, EnqueueOptions(delay_seconds=60, priority=0))
        low = await queue.enqueue(REVIEW_QUEUE, {"n": 1}, EnqueueOptions(priority=5))
        high = await queue.enqueue(REVIEW_QUEUE, {"n": 2}, EnqueueOptions(priority=1))

        assert (await queue.claim(REVIEW_QUEUE, "w1")).id == high
        assert (await queue.claim(REVIEW_QUEUE, "w1")).id == low
        assert await queue.claim(REVIEW_QUEUE, "w1") is None
        clock.advance(seconds=60)
        assert (await queue.claim(REVIEW_QUEUE, "w1")).id == delayed

    asyncio.run(run())


def test_extract_queue_rate_limit_defers_excess_claims(settings, repository, clock) -> None:
    settings.extract_rate_limit_max = 2
    queue = _queue(settings, repository)

    async def run() -> None:
        for index in range(3):
            await queue.enqueue(EXTRACT_QUEUE, {"evidence_id": str(index)})

        assert await queue.claim(EXTRACT_QUEUE, "w1") is not None
        assert await queue.claim(EXTRACT_QUEUE, "w2") is not None
        assert await queue.claim(EXTRACT_QUEUE, "w1") is None

        clock.advance(seconds=61)
        assert await queue.claim(EXTRACT_QUEUE, "w1") is not None

    asyncio.run(run())


def test_extract_rate_limit_counts_reclaims_of_the_same_job(settings, repository, clock) -> None:
    settings.extract_rate_limit_max = 2
    queue = _queue(settings, repository)

    async def run() -> None:
        job_id = await queue.enqueue(EXTRACT_QUEUE, {"evidence_id": "a"}, EnqueueOptions(backoff_base_seconds=0))
        assert (await queue.claim(EXTRACT_QUEUE, "w1")).id == job_id
        await queue.fail(job_id, "w1", "upstream timeout")
        reclaimed = await queue.claim(EXTRACT_QUEUE, "w1")
        assert reclaimed.id == job_id
        assert reclaimed.attempt == 2

        await queue.enqueue(EXTRACT_QUEUE, {"evidence_id": "b"})
        assert await queue.claim(EXTRACT_QUEUE, "w2") is None

        clock.advance(seconds=61)
        assert (await queue.claim(EXTRACT_QUEUE, "w2")).payload == {"evidence_id": "b"}

    asyncio.run(run())


def test_complete_requires_current_lease_holder(settings, repository) -> None:
    queue = _queue(settings, repository)

    async def run() -> None:
        job_id = await queue.enqueue(REVIEW_QUEUE, {})
        await queue.claim(REVIEW_QUEUE, "w1")
        with pytest.raises(RepositoryConflictError):
            await queue.complete(job_id, "w2", {})

    asyncio.run(run())


def test_replay_enqueues_original_payload_and_stamps_record(settings, repository) -> None:
    settings.job_max_attempts = 1
    queue = _queue(settings, repository)

    async def run() -> None:
        job_id = await queue.enqueue(REVIEW_QUEUE, {"rule_id": "r-9"})
        await queue.claim(REVIEW_QUEUE, "w1")
        await queue.fail(job_id, "w1", "boom")
        record = (await repository.list_dead_letters())[0]

        replayed = await queue.replay_dead_letter(record.id, "human:ops")
        assert replayed.replay_job_id is not None
        assert replayed.replayed_at is not None
        replay_job = await repository.get_job(replayed.replay_job_id)
        assert replay_job.payload == {"rule_id": "r-9"}
        assert replay_job.status == "queued"
        assert (await repository.get_job(job_id)).status == "dead_letter"
        assert await repository.count_dead_letters() == 0

        with pytest.raises(RepositoryConflictError):
            await queue.replay_dead_letter(record.id, "human:ops")

    asyncio.run(run())
