#!/usr/bin/env python3
"""Emit SQL that grants pipeline access to a human operator or an operator module."""

from __future__ import annotations

import argparse
import hashlib


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def _text_array(values: list[str]) -> str:
    if not values:
        return "'{}'::text[]"
    return "array[" + ", ".join(_quote_sql(value) for value in values) + "]::text[]"


def render_role_sql(*, role: str, user_id: str | None, email: str | None, actor: str) -> str:
    role_value = _quote_sql(role)
    if user_id:
        target_where = f"id = {_quote_sql(user_id)}::uuid"
        entity_id = _quote_sql(user_id)
    else:
        assert email is not None
        target_where = f"email = {_quote_sql(email)}"
        entity_id = _quote_sql(email)

    return f"""-- Supabase human role grant
-- Run in the Supabase SQL editor (or equivalent privileged Postgres session).

update auth.users
set raw_app_meta_data = coalesce(raw_app_meta_data, '{{}}'::jsonb) || jsonb_build_object('role', {role_value})
where {target_where};

insert into audit_log (action, entity_type, entity_id, actor, metadata)
values ('human_role_granted', 'user', {entity_id}, {_quote_sql(actor)}, jsonb_build_object('role', {role_value}));
"""


def render_module_sql(*, module_id: str, name: str, scopes: list[str], api_key: str, actor: str) -> str:
    key_hash = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    module_value = _quote_sql(module_id)

    return f"""-- Operator module credential
insert into modules (module_id, name, scopes)
values ({module_value}, {_quote_sql(name)}, {_text_array(scopes)})
on conflict (module_id) do update set scopes = excluded.scopes, enabled = true;

insert into module_credentials (module_id, key_hash)
select id, {_quote_sql(key_hash)} from modules where module_id = {module_value};

insert into audit_log (action, entity_type, entity_id, actor, metadata)
values ('module_credential_issued', 'module', {module_value}, {_quote_sql(actor)},
        jsonb_build_object('scopes', {_text_array(scopes)}));
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL granting access to the regulatory truth pipeline.")
    parser.add_argument("--actor", default="system", help="Actor label recorded in the audit log")
    subparsers = parser.add_subparsers(dest="target", required=True)

    role_parser = subparsers.add_parser("role", help="Assign a human role in auth.users.raw_app_meta_data")
    role_parser.add_argument("--role", choices=["user", "moderator", "admin"], default="admin")
    identity_group = role_parser.add_mutually_exclusive_group(required=True)
    identity_group.add_argument("--user-id", help="Supabase auth.users id (UUID)")
    identity_group.add_argument("--email", help="Supabase auth.users email")

    module_parser = subparsers.add_parser("module", help="Register an operator module with an API key")
    module_parser.add_argument("--module-id", required=True)
    module_parser.add_argument("--name", default=None)
    module_parser.add_argument("--scope", action="append", dest="scopes", default=None)
    module_parser.add_argument("--api-key", required=True)

    args = parser.parse_args()
    if args.target == "role":
        print(render_role_sql(role=args.role, user_id=args.user_id, email=args.email, actor=args.actor))
        return
    print(
        render_module_sql(
            module_id=args.module_id,
            name=args.name or args.module_id,
            scopes=args.scopes or ["commands:write"],
            api_key=args.api_key,
            actor=args.actor,
        )
    )


if __name__ == "__main__":
    main()
