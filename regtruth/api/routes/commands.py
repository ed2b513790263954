from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, status

from regtruth.api.deps import get_job_queue
from regtruth.core.config import Settings, get_settings
from regtruth.core.security import get_machine_principal
from regtruth.jobs.orchestrator import enqueue_command
from regtruth.schemas.jobs import CommandQueuedOut, CommandRequest
from regtruth.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.post("", response_model=CommandQueuedOut, status_code=status.HTTP_202_ACCEPTED)
async def post_command(
    payload: CommandRequest,
    principal=Depends(get_machine_principal),
    settings: Settings = Depends(get_settings),
    queue=Depends(get_job_queue),
) -> CommandQueuedOut:
    try:
        principal.require_scopes({"commands:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    run_id = payload.run_id or str(uuid4())
    try:
        job_id = await enqueue_command(
            queue,
            payload.command_type,
            full_validation_lease_seconds=settings.full_validation_lease_seconds,
            run_id=run_id,
            triggered_by=principal.actor_label,
            job_key=payload.job_key,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return CommandQueuedOut(job_id=job_id, run_id=run_id, command_type=payload.command_type)
