"""
Audit trail recorder and history queries.

Rows are only ever added; models.py rejects UPDATE/DELETE on them at flush time.
Queries return rows oldest first, ties broken by id so repeated reads are stable.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import select

from app.crm.models import User
from app.crm.modules.customer_lifecycle.constants import PUBLIC_POOL_OPERATIONS, OperationType
from app.crm.modules.customer_lifecycle.errors import NotFound
from app.crm.modules.customer_lifecycle.models import AssignmentHistory, Customer, ProgressHistory
from app.crm.modules.customer_lifecycle.state_machine import Transfer
from app.crm.modules.customer_lifecycle.utils import clean_text


def append_assignment_history(
    s,
    *,
    customer: Customer,
    transfer: Transfer,
    operation_type: OperationType,
    operator: User | None,
    remark: str | None = None,
    request_key: str | None = None,
    now: datetime | None = None,
) -> AssignmentHistory:
    row = AssignmentHistory(
        customer_id=customer.id,
        customer_name=customer.name,
        from_related_sales_id=transfer.from_sales_id,
        from_related_sales_name=transfer.from_sales_name,
        to_related_sales_id=transfer.to_sales_id,
        to_related_sales_name=transfer.to_sales_name,
        from_related_agent_id=transfer.from_agent_id,
        from_related_agent_name=transfer.from_agent_name,
        to_related_agent_id=transfer.to_agent_id,
        to_related_agent_name=transfer.to_agent_name,
        operator_id=operator.id if operator else None,
        operator_name=operator.name if operator else None,
        operation_type=operation_type,
        remark=clean_text(remark),
        request_key=request_key,
        created_at=now or datetime.utcnow(),
    )
    s.add(row)
    return row


def append_progress_history(
    s,
    *,
    customer: Customer,
    from_progress: str,
    to_progress: str,
    operator: User | None,
    remark: str | None = None,
    now: datetime | None = None,
) -> ProgressHistory:
    row = ProgressHistory(
        customer_id=customer.id,
        customer_name=customer.name,
        from_progress=str(getattr(from_progress, "value", from_progress)),
        to_progress=str(getattr(to_progress, "value", to_progress)),
        operator_id=operator.id if operator else None,
        operator_name=operator.name if operator else None,
        remark=clean_text(remark),
        created_at=now or datetime.utcnow(),
    )
    s.add(row)
    return row


def _ensure_known_customer(s, customer_id: int, history_cls) -> None:
    # History of a deleted customer is still readable.
    if s.get(Customer, customer_id) is not None:
        return
    exists = s.execute(select(history_cls.id).where(history_cls.customer_id == customer_id).limit(1)).first()
    if exists is None:
        raise NotFound("Customer", customer_id)


def get_assignment_history(s, customer_id: int) -> list[AssignmentHistory]:
    _ensure_known_customer(s, customer_id, AssignmentHistory)
    stmt = (
        select(AssignmentHistory)
        .where(AssignmentHistory.customer_id == customer_id)
        .order_by(AssignmentHistory.created_at.asc(), AssignmentHistory.id.asc())
    )
    return list(s.scalars(stmt).all())


def get_progress_history(s, customer_id: int) -> list[ProgressHistory]:
    _ensure_known_customer(s, customer_id, ProgressHistory)
    stmt = (
        select(ProgressHistory)
        .where(ProgressHistory.customer_id == customer_id)
        .order_by(ProgressHistory.created_at.asc(), ProgressHistory.id.asc())
    )
    return list(s.scalars(stmt).all())


def get_public_pool_history(s, customer_id: int) -> list[AssignmentHistory]:
    """Pool entries and the assignments/claims around them, oldest first."""
    return [r for r in get_assignment_history(s, customer_id) if r.operation_type in PUBLIC_POOL_OPERATIONS]


def latest_claim(s, customer_id: int) -> AssignmentHistory | None:
    claims = [r for r in get_public_pool_history(s, customer_id) if r.operation_type is OperationType.CLAIM]
    return claims[-1] if claims else None


def find_by_request_key(s, request_key: str | None) -> AssignmentHistory | None:
    if not request_key:
        return None
    return s.execute(select(AssignmentHistory).where(AssignmentHistory.request_key == request_key)).scalar_one_or_none()
