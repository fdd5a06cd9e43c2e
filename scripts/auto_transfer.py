#!/usr/bin/env python
"""
Customer auto-transfer job.

Hands Owned customers with no update for AUTO_TRANSFER_DAYS_WITHOUT_PROGRESS days
to AUTO_TRANSFER_TARGET_SALES_ID. Each customer is first disabled (frozen against
edits by its current owner) and then assigned to the target with the agent cleared.
A customer left DISABLED by an interrupted run is picked up again on the next run.

Usage:
    python scripts/auto_transfer.py --operator-id=1 --dry-run   # Preview
    python scripts/auto_transfer.py --operator-id=1             # Apply

Environment:
    DATABASE_URL, AUTO_TRANSFER_ENABLED, AUTO_TRANSFER_DAYS_WITHOUT_PROGRESS,
    AUTO_TRANSFER_TARGET_SALES_ID
"""
from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv
from sqlalchemy import and_, or_, select

from app.crm.config import AutoTransferPolicy, auto_transfer_policy_from_config, load_config
from app.crm.models import User
from app.crm.rbac import Role
from app.crm.modules.customer_lifecycle.constants import Progress
from app.crm.modules.customer_lifecycle.errors import LifecycleError
from app.crm.modules.customer_lifecycle.models import Customer
from app.crm.modules.customer_lifecycle.service import assign_customer, disable_customer
from scripts._db_utils import script_database_url, script_session

logger = logging.getLogger("app.crm.auto_transfer")


def find_stale_customers(s, policy: AutoTransferPolicy, *, now: datetime | None = None) -> list[Customer]:
    cutoff = (now or datetime.utcnow()) - timedelta(days=policy.days_without_progress)
    stmt = (
        select(Customer)
        .where(
            Customer.related_sales_id.is_not(None),
            or_(
                and_(Customer.related_sales_id != policy.target_sales_id, Customer.last_update_time < cutoff),
                Customer.progress == Progress.DISABLED,
            ),
        )
        .order_by(Customer.last_update_time.asc(), Customer.id.asc())
    )
    return list(s.scalars(stmt).all())


def run_auto_transfer(
    s,
    policy: AutoTransferPolicy,
    *,
    operator: User,
    dry_run: bool = False,
    now: datetime | None = None,
) -> list[int]:
    """Returns the ids of customers transferred (or that would be, with dry_run)."""
    if operator.role is not Role.SUPER_ADMIN:
        raise ValueError(f"Auto-transfer must run as a SuperAdmin (user {operator.id} is {operator.role.value}).")
    if policy.target_sales_id is None:
        raise ValueError("Auto-transfer policy has no target sales rep.")

    candidates = find_stale_customers(s, policy, now=now)
    ids = [c.id for c in candidates]
    if dry_run:
        return ids

    remark = f"auto-transfer: no progress in {policy.days_without_progress} day(s)"
    transferred: list[int] = []
    for customer_id in ids:
        try:
            c = s.get(Customer, customer_id)
            if c is not None and c.progress is not Progress.DISABLED:
                disable_customer(s, customer_id, user=operator, remark=remark)
            assign_customer(
                s,
                customer_id,
                sales_id=policy.target_sales_id,
                agent_id=None,
                user=operator,
                remark=remark,
            )
        except LifecycleError as e:
            logger.warning("Auto-transfer skipped customer %s: %s", customer_id, e.message)
            continue
        transferred.append(customer_id)
    return transferred


def main() -> int:
    parser = argparse.ArgumentParser(description="Transfer customers with no recent progress to the configured sales rep")
    parser.add_argument("--operator-id", type=int, required=True, help="SuperAdmin user id recorded as operator")
    parser.add_argument("--dry-run", action="store_true", help="Preview only, don't change anything")
    args = parser.parse_args()

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s [%(name)s] %(message)s")
    config = load_config()
    policy = auto_transfer_policy_from_config(config)
    if not policy.enabled and not args.dry_run:
        print("Auto-transfer is disabled (AUTO_TRANSFER_ENABLED is not set). Nothing to do.")
        return 0
    if policy.target_sales_id is None:
        print("ERROR: AUTO_TRANSFER_TARGET_SALES_ID is not set.")
        return 1

    with script_session(script_database_url(config.get("DATABASE_URL"))) as s:
        operator = s.get(User, args.operator_id)
        if operator is None or not operator.is_active:
            print(f"ERROR: operator user {args.operator_id} not found or inactive.")
            return 1
        ids = run_auto_transfer(s, policy, operator=operator, dry_run=args.dry_run)

    verb = "Would transfer" if args.dry_run else "Transferred"
    print(f"{verb} {len(ids)} customer(s) to sales rep {policy.target_sales_id}: {ids}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
