from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, status

from regtruth.api.deps import get_job_queue
from regtruth.core.config import Settings, get_settings
from regtruth.core.security import get_human_principal
from regtruth.jobs.lease_reaper import reap_expired_leases
from regtruth.jobs.orchestrator import enqueue_command
from regtruth.schemas.admin import PipelineTriggerOut, PipelineTriggerRequest, RuleReviewRequest
from regtruth.schemas.jobs import DeadLetterOut, JobOut, JobStatus, ReapExpiredOut
from regtruth.schemas.rules import RuleOut
from regtruth.services.repository import (
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.post("/pipeline/trigger", response_model=PipelineTriggerOut, status_code=status.HTTP_202_ACCEPTED)
async def trigger_pipeline(
    payload: PipelineTriggerRequest,
    principal=Depends(get_human_principal),
    settings: Settings = Depends(get_settings),
    queue=Depends(get_job_queue),
) -> PipelineTriggerOut:
    try:
        principal.require_scopes({"pipeline:trigger"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    run_id = payload.run_id or str(uuid4())
    job_ids: dict[str, str] = {}
    try:
        for phase in dict.fromkeys(payload.phases):
            job_ids[phase.value] = await enqueue_command(
                queue,
                phase,
                full_validation_lease_seconds=settings.full_validation_lease_seconds,
                run_id=run_id,
                triggered_by=principal.actor_label,
            )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return PipelineTriggerOut(run_id=run_id, job_ids=job_ids)


@router.get("/jobs", response_model=list[JobOut])
async def list_jobs(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    queue: str | None = Query(default=None, min_length=1),
    job_status: JobStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[JobOut]:
    try:
        principal.require_scopes({"pipeline:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        jobs = await repository.list_jobs(queue=queue, status=job_status, limit=limit, offset=offset)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [JobOut.model_validate(job) for job in jobs]


@router.post("/jobs/reap-expired", response_model=ReapExpiredOut)
async def reap_expired_jobs(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=100, ge=1, le=1000),
) -> ReapExpiredOut:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        counts = await reap_expired_leases(repository, limit=limit, actor=principal.actor_label)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ReapExpiredOut(**counts)


@router.get("/dead-letters", response_model=list[DeadLetterOut])
async def list_dead_letters(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    queue: str | None = Query(default=None, min_length=1),
    include_replayed: bool = Query(default=True),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[DeadLetterOut]:
    try:
        principal.require_scopes({"pipeline:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        records = await repository.list_dead_letters(
            queue=queue,
            include_replayed=include_replayed,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [DeadLetterOut.model_validate(record) for record in records]


@router.post("/dead-letters/{dead_letter_id}/replay", response_model=DeadLetterOut)
async def replay_dead_letter(
    dead_letter_id: str,
    principal=Depends(get_human_principal),
    queue=Depends(get_job_queue),
) -> DeadLetterOut:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        record = await queue.replay_dead_letter(dead_letter_id, principal.actor_label)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return DeadLetterOut.model_validate(record)


@router.post("/rules/{rule_id}/review", response_model=RuleOut)
async def review_rule(
    rule_id: str,
    payload: RuleReviewRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> RuleOut:
    try:
        principal.require_scopes({"rules:review"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.is_human or not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="rule review requires a human operator")

    to_status = "APPROVED" if payload.decision == "approve" else "REJECTED"
    try:
        rule = await repository.transition_rule_status(
            rule_id=rule_id,
            from_statuses={"PENDING_REVIEW"},
            to_status=to_status,
            actor=principal.actor_label,
            reason=payload.reason or f"human_{payload.decision}",
            metadata={"role": principal.role},
            human=True,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc

    return RuleOut.model_validate(rule)
