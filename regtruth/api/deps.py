from fastapi import Depends

from regtruth.core.config import Settings, get_settings
from regtruth.services.queues import JobQueue, build_queue_registry
from regtruth.services.repository import get_repository


def get_job_queue(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> JobQueue:
    return JobQueue(repository, build_queue_registry(settings))
