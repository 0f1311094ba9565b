"""Request authentication for employer/staff accounts and machine modules.

Accounts authenticate with a Supabase access token; the account role is
read from the user's metadata and mapped to scopes. Machine modules (the
deferred-event replayer) send ``X-Module-Id`` and ``X-API-Key`` and are
checked against hashed credentials stored in Postgres.
"""

import hashlib
import hmac
from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from jobboard_api.core.auth import AccountRole, Principal, PrincipalType
from jobboard_api.core.config import Settings, get_settings
from jobboard_api.services.repository import MachineCredentialRecord, RepositoryUnavailableError, get_repository

MODERATION_SCOPES = {"jobs:read", "moderation:write"}

ROLE_SCOPES: dict[str, set[str]] = {
    AccountRole.CANDIDATE.value: {"jobs:read"},
    AccountRole.EMPLOYER.value: {"jobs:read", "job_posts:write", "billing:read", "billing:write"},
    AccountRole.STAFF.value: MODERATION_SCOPES,
    AccountRole.ADMIN.value: MODERATION_SCOPES | {"admin:write"},
    AccountRole.OWNER.value: MODERATION_SCOPES | {"admin:write", "owner:write"},
}

SELF_SERVICE_ROLES = {AccountRole.CANDIDATE.value, AccountRole.EMPLOYER.value}


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _unavailable(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


async def get_machine_principal(
    repository=Depends(get_repository),
    module_id: str | None = Header(default=None, alias="X-Module-Id"),
    api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> Principal:
    if not module_id or not api_key:
        raise _unauthorized("machine auth requires X-Module-Id and X-API-Key")

    try:
        credentials = await repository.get_machine_credentials(module_id)
    except RepositoryUnavailableError as exc:
        raise _unavailable(str(exc)) from exc

    matched = _match_credential(credentials, api_key)
    if matched is None:
        raise _unauthorized("invalid module credentials")

    return Principal(
        principal_type=PrincipalType.MACHINE,
        subject=matched.module_id,
        scopes=set(matched.scopes),
        actor_id=matched.module_db_id,
    )


async def get_human_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    token = _bearer_token(authorization)
    if not settings.supabase_url or not settings.supabase_anon_key:
        raise _unavailable("Supabase auth is not configured")

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    account_id = user.get("id")
    if not isinstance(account_id, str) or not account_id:
        raise _unauthorized("invalid bearer token")

    role = _resolve_account_role(user)
    return Principal(
        principal_type=PrincipalType.HUMAN,
        subject=account_id,
        role=role,
        scopes=set(ROLE_SCOPES[role]),
        actor_id=account_id,
    )


def require_principal_scopes(principal: Principal, required: set[str]) -> str:
    """Enforce scopes for an account caller and return its account id."""
    try:
        principal.require_scopes(required)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        return principal.require_account_id()
    except PermissionError as exc:
        raise _unauthorized(str(exc)) from exc


def require_machine_scopes(principal: Principal, required: set[str]) -> None:
    try:
        principal.require_scopes(required)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


def _bearer_token(authorization: str | None) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer":
        raise _unauthorized("account auth requires a bearer token")
    token = token.strip()
    if not token:
        raise _unauthorized("empty bearer token")
    return token


def _match_credential(credentials: list[MachineCredentialRecord], api_key: str) -> MachineCredentialRecord | None:
    key_hash = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    for record in credentials:
        if hmac.compare_digest(record.key_hash, key_hash):
            return record
    return None


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.get(
                f"{supabase_url.rstrip('/')}/auth/v1/user",
                headers={"Authorization": f"Bearer {token}", "apikey": supabase_anon_key},
            )
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise _unavailable("Supabase auth verification unavailable") from exc

    if response.status_code in {401, 403}:
        raise _unauthorized("invalid bearer token")
    if response.status_code != 200:
        raise _unavailable("Supabase auth verification failed")
    return response.json()


def _resolve_account_role(user: dict[str, Any]) -> str:
    # user_metadata is writable by the user, so it can only pick a self-service role.
    app_role = _metadata_role(user, "app_metadata")
    if app_role in ROLE_SCOPES:
        return app_role
    user_role = _metadata_role(user, "user_metadata")
    if user_role in SELF_SERVICE_ROLES:
        return user_role
    return AccountRole.CANDIDATE.value


def _metadata_role(user: dict[str, Any], metadata_key: str) -> str | None:
    metadata = user.get(metadata_key)
    role = metadata.get("role") if isinstance(metadata, dict) else None
    return role if isinstance(role, str) else None
