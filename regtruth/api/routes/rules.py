from fastapi import APIRouter, Depends, HTTPException, Query, status

from regtruth.core.security import get_human_principal
from regtruth.schemas.rules import AuditLogEntryOut, HealthSnapshotOut, RuleOut, RuleStatus, SnapshotKind
from regtruth.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.get("/rules", response_model=list[RuleOut])
async def list_rules(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    rule_status: list[RuleStatus] | None = Query(default=None, alias="status"),
    concept_slug: str | None = Query(default=None, min_length=1),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[RuleOut]:
    try:
        principal.require_scopes({"pipeline:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rules = await repository.list_rules(
            statuses=rule_status,
            concept_slug=concept_slug,
            limit=limit,
            offset=offset,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [RuleOut.model_validate(rule) for rule in rules]


@router.get("/rules/{rule_id}", response_model=RuleOut)
async def get_rule(
    rule_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> RuleOut:
    try:
        principal.require_scopes({"pipeline:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rule = await repository.get_rule(rule_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return RuleOut.model_validate(rule)


@router.get("/rules/{rule_id}/audit", response_model=list[AuditLogEntryOut])
async def get_rule_audit(
    rule_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[AuditLogEntryOut]:
    try:
        principal.require_scopes({"pipeline:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        await repository.get_rule(rule_id)
        entries = await repository.list_audit_log(
            entity_type="rule",
            entity_id=rule_id,
            limit=limit,
            offset=offset,
        )
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [AuditLogEntryOut.model_validate(entry) for entry in entries]


@router.get("/audit-log", response_model=list[AuditLogEntryOut])
async def list_audit_log(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    entity_type: str | None = Query(default=None, min_length=1),
    entity_id: str | None = Query(default=None, min_length=1),
    action: str | None = Query(default=None, min_length=1),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[AuditLogEntryOut]:
    try:
        principal.require_scopes({"pipeline:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        entries = await repository.list_audit_log(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [AuditLogEntryOut.model_validate(entry) for entry in entries]


@router.get("/health-snapshots", response_model=list[HealthSnapshotOut])
async def list_health_snapshots(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    kind: SnapshotKind | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> list[HealthSnapshotOut]:
    try:
        principal.require_scopes({"pipeline:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        snapshots = await repository.list_health_snapshots(kind=kind, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [HealthSnapshotOut.model_validate(snapshot) for snapshot in snapshots]


@router.get("/health-snapshots/latest", response_model=HealthSnapshotOut)
async def get_latest_health_snapshot(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    kind: SnapshotKind | None = Query(default=None),
) -> HealthSnapshotOut:
    try:
        principal.require_scopes({"pipeline:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        snapshot = await repository.get_latest_health_snapshot(kind=kind)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no health snapshot recorded")
    return HealthSnapshotOut.model_validate(snapshot)
