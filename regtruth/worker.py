from __future__ import annotations

import asyncio
import logging
import random
import traceback

from opentelemetry import trace

from regtruth.core.config import Settings, get_settings
from regtruth.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from regtruth.jobs.context import StageContext, build_stage_context
from regtruth.jobs.executor import JobExecutor
from regtruth.jobs.lease_reaper import reap_expired_leases
from regtruth.services.dead_letters import DeadLetterMonitor
from regtruth.services.repository import RepositoryConflictError, get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def process_one(
    context: StageContext,
    executor: JobExecutor,
    *,
    queue: str,
    worker_id: str,
    monitor: DeadLetterMonitor | None = None,
) -> bool:
    """Claim and run at most one job. Returns False when nothing was claimable."""
    job = await context.queue.claim(queue, worker_id)
    if job is None:
        return False

    with tracer.start_as_current_span("worker.process_job") as span:
        span.set_attribute("job.id", job.id)
        span.set_attribute("job.queue", job.queue)
        span.set_attribute("job.attempt", job.attempt)
        try:
            result = await executor.execute(job)
        except Exception as exc:
            span.record_exception(exc)
            logger.exception("Job failed id=%s queue=%s attempt=%s/%s", job.id, job.queue, job.attempt, job.max_attempts)
            try:
                failed = await context.queue.fail(
                    job.id,
                    worker_id,
                    str(exc) or exc.__class__.__name__,
                    stack=traceback.format_exc(),
                )
            except RepositoryConflictError:
                logger.warning("Lost lease before recording failure for job id=%s", job.id)
                return True
            if failed.status == "dead_letter":
                logger.error("Job id=%s queue=%s moved to dead letters after %s attempts", job.id, job.queue, job.attempt)
                if monitor is not None:
                    await monitor.check(source=job.queue)
            return True

        try:
            await context.queue.complete(job.id, worker_id, result)
        except RepositoryConflictError:
            logger.warning("Lost lease before completing job id=%s; result discarded", job.id)
    return True


async def _consume(
    context: StageContext,
    executor: JobExecutor,
    *,
    queue: str,
    worker_id: str,
    monitor: DeadLetterMonitor,
    settings: Settings,
) -> None:
    backoff = settings.poll_interval_seconds
    while True:
        try:
            processed = await process_one(context, executor, queue=queue, worker_id=worker_id, monitor=monitor)
            backoff = settings.poll_interval_seconds
            if not processed:
                await asyncio.sleep(settings.poll_interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            jitter = random.uniform(0.0, 0.5)
            sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
            logger.exception("Consumer %s iteration failed: %s; retry in %.1fs", worker_id, exc, sleep_for)
            await asyncio.sleep(sleep_for)
            backoff = sleep_for


async def _reap(context: StageContext, *, monitor: DeadLetterMonitor, settings: Settings) -> None:
    while True:
        try:
            with tracer.start_as_current_span("worker.lease_reaper"):
                await reap_expired_leases(
                    context.repository,
                    limit=settings.lease_reaper_batch_size,
                    monitor=monitor,
                )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Lease reaper iteration failed")
        await asyncio.sleep(settings.lease_reaper_interval_seconds)


async def run_worker(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings, service_role="worker")
    repository = get_repository()
    context = build_stage_context(settings, repository)
    executor = JobExecutor(context)
    monitor = DeadLetterMonitor(repository, threshold=settings.dead_letter_alert_threshold)

    tasks: list[asyncio.Task[None]] = []
    for queue in settings.worker_queue_names():
        spec = context.registry.get(queue)
        for slot in range(spec.concurrency):
            worker_id = f"{settings.worker_id}:{queue}:{slot}"
            tasks.append(
                asyncio.create_task(
                    _consume(
                        context,
                        executor,
                        queue=queue,
                        worker_id=worker_id,
                        monitor=monitor,
                        settings=settings,
                    ),
                    name=worker_id,
                )
            )
    tasks.append(asyncio.create_task(_reap(context, monitor=monitor, settings=settings), name="lease-reaper"))
    logger.info("Worker %s started consumers=%s", settings.worker_id, len(tasks) - 1)

    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
