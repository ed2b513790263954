import hashlib
import hmac
from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from regtruth.core.auth import Principal, PrincipalType
from regtruth.core.config import Settings, get_settings
from regtruth.services.records import MachineCredentialRecord
from regtruth.services.repository import RepositoryUnavailableError, get_repository

ROLE_SCOPES: dict[str, frozenset[str]] = {
    "user": frozenset(),
    "moderator": frozenset({"pipeline:read", "rules:review"}),
    "admin": frozenset({"pipeline:read", "rules:review", "pipeline:trigger", "admin:write"}),
}
# Highest privilege first; used when app_metadata carries a list of roles.
ROLE_PRECEDENCE = ("admin", "moderator", "user")


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def match_credential(records: list[MachineCredentialRecord], api_key: str) -> MachineCredentialRecord | None:
    presented = hash_api_key(api_key)
    for record in records:
        if hmac.compare_digest(record.key_hash, presented):
            return record
    return None


def resolve_role(user: dict[str, Any]) -> str:
    # user_metadata is writable by the user themselves, so only app_metadata counts.
    app_metadata = user.get("app_metadata")
    if not isinstance(app_metadata, dict):
        return "user"

    declared: list[Any] = [app_metadata.get("role")]
    if isinstance(app_metadata.get("roles"), list):
        declared.extend(app_metadata["roles"])
    granted = {role for role in declared if isinstance(role, str) and role in ROLE_SCOPES}
    return next((role for role in ROLE_PRECEDENCE if role in granted), "user")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


async def get_machine_principal(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_module_id: str | None = Header(default=None, alias="X-Module-Id"),
) -> Principal:
    if not x_api_key or not x_module_id:
        raise _unauthorized(f"operator modules must send {settings.api_key_header} and X-Module-Id")

    try:
        records = await repository.get_machine_credentials(x_module_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    credential = match_credential(records, x_api_key)
    if credential is None:
        raise _unauthorized("unknown module or api key")

    return Principal(
        principal_type=PrincipalType.MACHINE,
        subject=credential.module_id,
        scopes=frozenset(credential.scopes),
        actor_id=credential.module_db_id,
    )


async def get_human_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    scheme, _, token = (authorization or "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise _unauthorized("operators must send a bearer token")

    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="operator auth is not configured")

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise _unauthorized("bearer token does not identify a user")

    role = resolve_role(user)
    return Principal(
        principal_type=PrincipalType.HUMAN,
        subject=user_id,
        scopes=ROLE_SCOPES[role],
        role=role,
        actor_id=user_id,
    )


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    url = f"{supabase_url.rstrip('/')}/auth/v1/user"
    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.get(url, headers={"Authorization": f"Bearer {token}", "apikey": supabase_anon_key})
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="auth provider unreachable") from exc

    if response.status_code in {status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN}:
        raise _unauthorized("bearer token rejected")
    if response.status_code != status.HTTP_200_OK:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"auth provider returned {response.status_code}",
        )
    return response.json()
