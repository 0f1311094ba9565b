#!/usr/bin/env python3
"""Emit deterministic SQL for Supabase account-role bootstrap."""

from __future__ import annotations

import argparse
import hashlib


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_role_sql(*, role: str, user_id: str | None, email: str | None) -> str:
    role_value = _quote_sql(role)
    if user_id:
        target_where = f"id = {_quote_sql(user_id)}::uuid"
    elif email:
        target_where = f"email = {_quote_sql(email)}"
    else:
        raise ValueError("either user_id or email is required")

    return f"""-- Supabase account role bootstrap SQL
-- Run this in the Supabase SQL editor (or equivalent privileged Postgres session).

update auth.users
set raw_app_meta_data = coalesce(raw_app_meta_data, '{{}}'::jsonb) || jsonb_build_object('role', {role_value})
where {target_where};
"""


def render_module_sql(*, module_id: str, api_key: str, scopes: list[str]) -> str:
    key_hash = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    scope_list = ", ".join(_quote_sql(scope) for scope in scopes)
    return f"""-- Machine module credential SQL

insert into modules (module_id, scopes)
values ({_quote_sql(module_id)}, array[{scope_list}]::text[])
on conflict (module_id) do update set scopes = excluded.scopes, enabled = true;

insert into module_credentials (module_id, key_hash)
select id, {_quote_sql(key_hash)} from modules where module_id = {_quote_sql(module_id)};
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to bootstrap account roles or machine credentials.")
    parser.add_argument(
        "--role",
        choices=["candidate", "employer", "staff", "admin", "owner"],
        default="staff",
        help="Role to assign in auth.users.raw_app_meta_data.role",
    )
    identity_group = parser.add_mutually_exclusive_group(required=True)
    identity_group.add_argument("--user-id", help="Supabase auth.users id (UUID)")
    identity_group.add_argument("--email", help="Supabase auth.users email")
    identity_group.add_argument("--module-id", help="Machine module id, e.g. billing-replayer")
    parser.add_argument("--api-key", help="Plain API key for --module-id; only its sha256 is emitted")
    parser.add_argument(
        "--scope",
        action="append",
        dest="scopes",
        help="Scope granted to --module-id (repeatable, default billing:replay)",
    )
    args = parser.parse_args()

    if args.module_id:
        if not args.api_key:
            parser.error("--api-key is required with --module-id")
        print(render_module_sql(module_id=args.module_id, api_key=args.api_key, scopes=args.scopes or ["billing:replay"]))
        return

    try:
        print(render_role_sql(role=args.role, user_id=args.user_id, email=args.email))
    except ValueError as exc:
        parser.error(str(exc))


if __name__ == "__main__":
    main()
