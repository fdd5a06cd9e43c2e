"""
Customer lifecycle state machine.

Ownership states:   Owned(sales, agent?)  <->  Pooled (related_sales_id IS NULL)
Progress sub-state: INITIAL_CONTACT | NORMAL_PROGRESS | DISABLED (+ PUBLIC_POOL marker)

Everything here is pure: functions validate or mutate the objects they are given
and never touch a session. service.py owns loading, persistence and history rows.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from app.crm.models import User
from app.crm.rbac import Role
from app.crm.modules.customer_lifecycle.constants import (
    SELECTABLE_PROGRESS,
    OperationType,
    Progress,
)
from app.crm.modules.customer_lifecycle.errors import (
    Forbidden,
    InvalidLinkage,
    InvalidProgressValue,
    InvariantViolation,
)
from app.crm.modules.customer_lifecycle.models import Customer


@dataclass(frozen=True)
class Transfer:
    """Before/after ownership of one applied transition (feeds AssignmentHistory)."""

    from_sales_id: int | None
    from_sales_name: str | None
    to_sales_id: int | None
    to_sales_name: str | None
    from_agent_id: int | None
    from_agent_name: str | None
    to_agent_id: int | None
    to_agent_name: str | None
    progress_before: Progress
    progress_after: Progress

    @property
    def ownership_changed(self) -> bool:
        return (self.from_sales_id, self.from_agent_id) != (self.to_sales_id, self.to_agent_id)

    @property
    def progress_changed(self) -> bool:
        return self.progress_before != self.progress_after


def operation_label(previous_sales_id: int | None, *, at_creation: bool = False, self_claim: bool = False) -> OperationType:
    """
    Single source of truth for AssignmentHistory.operation_type.

    Transitions on an existing customer: no previous sales rep means it came out of
    the pool (CLAIM), otherwise it moved between owners (ASSIGN).
    At creation there is never a previous sales rep; the label records whether the
    creator took the customer themselves (CREATE_AND_CLAIM) or handed it to
    someone else (CREATE_AND_ASSIGN).
    """
    if at_creation:
        return OperationType.CREATE_AND_CLAIM if self_claim else OperationType.CREATE_AND_ASSIGN
    if previous_sales_id is None:
        return OperationType.CLAIM
    return OperationType.ASSIGN


def parse_progress(value: Any) -> Progress:
    """Parse a user-supplied progress value; only SELECTABLE_PROGRESS is accepted."""
    if isinstance(value, Progress):
        p = value
    else:
        raw = str(value or "").strip().upper()
        try:
            p = Progress(raw)
        except ValueError:
            raise InvalidProgressValue(value, f"Unknown progress value {value!r}.") from None
    if p is Progress.PUBLIC_POOL:
        raise InvalidProgressValue(value, "PUBLIC_POOL is set only by moving the customer to the public pool.")
    if p not in SELECTABLE_PROGRESS:
        raise InvalidProgressValue(value)
    return p


def check_not_frozen(customer: Customer, actor: User) -> None:
    """A DISABLED customer is mid-reassignment; only a SuperAdmin (or the system acting as one) may touch it."""
    if customer.progress is Progress.DISABLED and actor.role is not Role.SUPER_ADMIN:
        raise Forbidden("This customer is being reassigned and cannot be changed right now.")


def check_agent_linkage(agent: User | None, target_sales_id: int | None) -> None:
    """No agent always passes; an agent must belong to the target sales rep."""
    if agent is None:
        return
    if target_sales_id is None or agent.related_sales_id != target_sales_id:
        raise InvalidLinkage(agent_id=agent.id, agent_sales_id=agent.related_sales_id, target_sales_id=target_sales_id)


def check_claim_targets(actor: User, target_sales_id: int, target_agent_id: int | None) -> None:
    """
    Who a pooled customer may be claimed for.
    SuperAdmin: anyone. Sales rep: themselves. Agent: themselves under their own sales rep.
    """
    if actor.role is Role.SUPER_ADMIN:
        return
    if actor.role is Role.FACTORY_SALES and target_sales_id == actor.id:
        return
    if actor.role is Role.AGENT and target_agent_id == actor.id and target_sales_id == actor.related_sales_id:
        return
    raise Forbidden()


def ensure_invariants(customer: Customer) -> None:
    if customer.related_agent_id is not None and customer.related_sales_id is None:
        raise InvariantViolation(f"Customer {customer.id} has an agent but no sales rep.")
    if customer.related_sales_id is None and customer.related_sales_name:
        raise InvariantViolation(f"Customer {customer.id} has a sales name but no sales rep.")


def apply_assignment(customer: Customer, *, sales: User, agent: User | None, now: datetime) -> Transfer:
    """
    Owned -> Owned (assign) or Pooled -> Owned (claim).
    Leaving the pool or a DISABLED freeze restarts the funnel at INITIAL_CONTACT.
    """
    check_agent_linkage(agent, sales.id)

    before_progress = customer.progress
    transfer_from = (customer.related_sales_id, customer.related_sales_name, customer.related_agent_id, customer.related_agent_name)

    customer.related_sales_id = sales.id
    customer.related_sales_name = sales.name
    customer.related_agent_id = agent.id if agent else None
    customer.related_agent_name = agent.name if agent else None
    if before_progress in (Progress.PUBLIC_POOL, Progress.DISABLED):
        customer.progress = Progress.INITIAL_CONTACT
    customer.updated_at = now
    customer.last_update_time = now
    ensure_invariants(customer)

    return Transfer(
        from_sales_id=transfer_from[0],
        from_sales_name=transfer_from[1],
        to_sales_id=customer.related_sales_id,
        to_sales_name=customer.related_sales_name,
        from_agent_id=transfer_from[2],
        from_agent_name=transfer_from[3],
        to_agent_id=customer.related_agent_id,
        to_agent_name=customer.related_agent_name,
        progress_before=before_progress,
        progress_after=customer.progress,
    )


def apply_move_to_pool(customer: Customer, *, now: datetime) -> Transfer:
    """Owned -> Pooled. Snapshots the responsible parties into previous_* before clearing them."""
    before_progress = customer.progress
    transfer = Transfer(
        from_sales_id=customer.related_sales_id,
        from_sales_name=customer.related_sales_name,
        to_sales_id=None,
        to_sales_name=None,
        from_agent_id=customer.related_agent_id,
        from_agent_name=customer.related_agent_name,
        to_agent_id=None,
        to_agent_name=None,
        progress_before=before_progress,
        progress_after=Progress.PUBLIC_POOL,
    )

    customer.previous_owner_id = customer.related_sales_id
    customer.previous_owner_name = customer.related_sales_name
    # Only a sales rep can hold a customer, so the released owner is always one.
    customer.previous_owner_type = Role.FACTORY_SALES.value
    customer.previous_related_agent_id = customer.related_agent_id
    customer.previous_related_agent_name = customer.related_agent_name

    customer.related_sales_id = None
    customer.related_sales_name = None
    customer.related_agent_id = None
    customer.related_agent_name = None
    customer.progress = Progress.PUBLIC_POOL
    customer.updated_at = now
    customer.last_update_time = now
    ensure_invariants(customer)
    return transfer


def apply_progress(customer: Customer, new_progress: Progress, *, now: datetime) -> Progress:
    """Sets progress and returns the previous value."""
    before = customer.progress
    customer.progress = new_progress
    customer.updated_at = now
    customer.last_update_time = now
    return before


def apply_disable(customer: Customer, *, now: datetime) -> Progress:
    if customer.progress is Progress.DISABLED:
        raise InvalidProgressValue(Progress.DISABLED.value, f"Customer {customer.id} is already disabled.")
    if customer.is_in_public_pool:
        raise InvalidProgressValue(Progress.DISABLED.value, "Only owned customers can be disabled.")
    return apply_progress(customer, Progress.DISABLED, now=now)
