#!/usr/bin/env python3
"""Emit SQL that links a Stripe customer to an account and requeues its parked events."""

from __future__ import annotations

import argparse
import uuid


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_sql(*, account_id: str, customer_id: str, requeue: bool) -> str:
    account_value = _quote_sql(str(uuid.UUID(account_id)))
    customer_value = _quote_sql(customer_id)

    statements = f"""-- Billing customer link SQL
-- Run in a privileged Postgres session against the jobboard database.

insert into billing_customers (provider_customer_id, account_id)
values ({customer_value}, {account_value}::uuid)
on conflict (provider_customer_id) do nothing;
"""
    if requeue:
        statements += f"""
update billing_deferred_events
set status = 'pending', attempts = 0, next_attempt_at = now(), lease_expires_at = null, updated_at = now()
where status in ('pending', 'dead_letter')
  and payload -> 'data' -> 'object' ->> 'customer' = {customer_value};
"""
    return statements


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to link a billing customer to an account.")
    parser.add_argument("--account-id", required=True, help="Internal account id (UUID)")
    parser.add_argument("--customer-id", required=True, help="Stripe customer id (cus_...)")
    parser.add_argument(
        "--requeue",
        action="store_true",
        help="Also requeue deferred events for this customer so the replayer picks them up",
    )
    args = parser.parse_args()

    if not args.customer_id.startswith("cus_"):
        parser.error("--customer-id must be a Stripe customer id starting with cus_")
    try:
        uuid.UUID(args.account_id)
    except ValueError:
        parser.error("--account-id must be a UUID")

    print(render_sql(account_id=args.account_id, customer_id=args.customer_id, requeue=args.requeue))


if __name__ == "__main__":
    main()
