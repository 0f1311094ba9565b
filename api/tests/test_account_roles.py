from __future__ import annotations

import pytest
from fastapi import HTTPException

import jobboard_api.core.security as security
from jobboard_api.core.auth import Principal, PrincipalType


def test_elevated_roles_come_only_from_app_metadata() -> None:
    role = security._resolve_account_role(
        {
            "id": "user-1",
            "app_metadata": {},
            "user_metadata": {"role": "owner"},
        }
    )
    assert role == "candidate"


def test_user_metadata_can_select_employer() -> None:
    role = security._resolve_account_role({"id": "user-1", "user_metadata": {"role": "employer"}})
    assert role == "employer"


def test_app_metadata_wins_over_user_metadata() -> None:
    role = security._resolve_account_role(
        {
            "id": "user-1",
            "app_metadata": {"role": "staff"},
            "user_metadata": {"role": "employer"},
        }
    )
    assert role == "staff"


def test_unknown_role_defaults_to_candidate() -> None:
    assert security._resolve_account_role({"id": "user-1", "app_metadata": {"role": "superuser"}}) == "candidate"


def test_employer_scopes_cover_billing_but_not_moderation() -> None:
    scopes = security.ROLE_SCOPES["employer"]
    assert {"billing:read", "billing:write", "job_posts:write"} <= scopes
    assert "moderation:write" not in scopes


@pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "bearer"])
def test_malformed_authorization_header_is_unauthorized(header: str | None) -> None:
    with pytest.raises(HTTPException) as exc_info:
        security._bearer_token(header)
    assert exc_info.value.status_code == 401


def test_bearer_scheme_is_case_insensitive() -> None:
    assert security._bearer_token("bearer abc.def") == "abc.def"


def test_machine_principal_cannot_act_as_account() -> None:
    principal = Principal(
        principal_type=PrincipalType.MACHINE,
        subject="billing-replayer",
        scopes={"billing:read"},
        actor_id="module-1",
    )

    with pytest.raises(HTTPException) as exc_info:
        security.require_principal_scopes(principal, {"billing:read"})
    assert exc_info.value.status_code == 401


def test_missing_scope_is_forbidden() -> None:
    principal = Principal(
        principal_type=PrincipalType.HUMAN,
        subject="user-1",
        scopes={"jobs:read"},
        actor_id="user-1",
    )

    with pytest.raises(HTTPException) as exc_info:
        security.require_principal_scopes(principal, {"billing:write"})
    assert exc_info.value.status_code == 403
