"""
CUSTOMER LIFECYCLE SERVICE
==========================

Entry points for every customer transition. Each public function is one unit of
work: load -> authorize -> validate -> mutate -> append history -> commit.

Operation              | Who                                   | History written
-----------------------|---------------------------------------|------------------------------------------
create_customer        | SuperAdmin, FactorySales, Agent        | Progress (NONE -> stage) [+ Assignment]
assign_customer        | SuperAdmin / owning sales rep (Owned)  | Assignment (ASSIGN) [+ Progress]
                       | eligible claimant (Pooled)             | Assignment (CLAIM) + Progress
move_to_public_pool    | SuperAdmin / owning sales rep          | Assignment (MOVE_TO_PUBLIC_POOL) + Progress
update_customer        | can_edit                               | AuditEvent [+ Progress] [+ Assignment]
change_progress        | can_edit                               | Progress
disable_customer       | SuperAdmin (auto-transfer runs as one) | Progress
delete_customer        | SuperAdmin                             | AuditEvent only; history is kept
list_customers         | SuperAdmin all; sales rep / agent own  | (read only)
                       | customers, plus the pool on request    |

CONCURRENCY:
- Customer.version is a compare-and-swap column; a write against a stale row raises
  StaleDataError at flush. _run_atomic rolls back and re-runs the whole unit up to
  TRANSITION_CONFLICT_RETRIES times, then surfaces ConcurrencyConflict.
- Ownership changes compare the owner the caller last saw (or expected_sales_id)
  against the locked, freshly read row. A mismatch is a ConcurrencyConflict and
  is never retried, so two racing claims cannot both append a history row.
- request_key makes assign_customer idempotent: a replay returns the row it produced.

AUTHORIZATION comes before every other check on a loaded customer, so a caller
without rights gets the same generic Forbidden whatever state the customer is in.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from flask import current_app, has_app_context
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, InvalidRequestError
from sqlalchemy.orm.exc import StaleDataError

from app.crm.audit import record_event
from app.crm.models import User
from app.crm.rbac import (
    Action,
    Role,
    allowed_actions,
    can_assign,
    can_claim,
    can_create,
    can_delete,
    can_edit,
    can_move_to_public_pool,
    can_view,
)
from app.crm.modules.customer_lifecycle.constants import (
    MAX_ANNUAL_DEMAND,
    MIN_NAME_LENGTH,
    NO_PROGRESS,
    CustomerImportance,
    CustomerNature,
    OperationType,
    Progress,
)
from app.crm.modules.customer_lifecycle.errors import (
    AlreadyPooled,
    ConcurrencyConflict,
    FieldError,
    Forbidden,
    NotFound,
    ValidationError,
)
from app.crm.modules.customer_lifecycle.history import (
    append_assignment_history,
    append_progress_history,
    find_by_request_key,
)
from app.crm.modules.customer_lifecycle.models import AssignmentHistory, Customer, ProgressHistory
from app.crm.modules.customer_lifecycle.state_machine import (
    Transfer,
    apply_assignment,
    apply_disable,
    apply_move_to_pool,
    apply_progress,
    check_agent_linkage,
    check_claim_targets,
    check_not_frozen,
    operation_label,
    parse_progress,
)
from app.crm.modules.customer_lifecycle.utils import TEXT_FIELDS, clean_text

logger = logging.getLogger(__name__)

MAX_CONFLICT_RETRIES = 1

_UNSET: Any = object()


@dataclass(frozen=True)
class TransitionResult:
    customer: Customer
    assignment: AssignmentHistory | None = None
    progress: ProgressHistory | None = None
    replayed: bool = False


@dataclass(frozen=True)
class CustomerView:
    customer: Customer
    allowed_actions: frozenset[Action]


def _conflict_retries() -> int:
    if has_app_context():
        return int(current_app.config.get("TRANSITION_CONFLICT_RETRIES", MAX_CONFLICT_RETRIES))
    return MAX_CONFLICT_RETRIES


def _run_atomic(s, customer_id: int | None, apply: Callable[[int], TransitionResult]) -> TransitionResult:
    """
    Runs apply(attempt) and commits. Nothing is visible unless the commit succeeds.
    Only write conflicts are retried; every other error rolls back and propagates.
    """
    retries = _conflict_retries()
    attempt = 0
    while True:
        try:
            result = apply(attempt)
            s.flush()
            s.commit()
            return result
        except (StaleDataError, IntegrityError) as e:
            s.rollback()
            if attempt >= retries:
                logger.warning("Customer %s: write conflict after %s attempt(s): %s", customer_id, attempt + 1, e)
                raise ConcurrencyConflict(customer_id) from e
            attempt += 1
            logger.warning("Customer %s: write conflict, retrying (attempt %s)", customer_id, attempt + 1)
        except Exception:
            s.rollback()
            raise


def _load_customer(s, customer_id: int, *, lock: bool = False) -> Customer:
    c = s.get(Customer, customer_id)
    if c is None:
        raise NotFound("Customer", customer_id)
    if lock:
        try:
            s.refresh(c, with_for_update=True)
        except InvalidRequestError:
            raise NotFound("Customer", customer_id) from None
    return c


def _load_user(s, user_id: Any, role: Role, label: str) -> User:
    try:
        uid = int(user_id)
    except (TypeError, ValueError):
        raise NotFound(label, user_id) from None
    u = s.get(User, uid)
    if u is None or u.role is not role or not u.is_active:
        raise NotFound(label, user_id)
    return u


def _load_sales_rep(s, sales_id: Any) -> User:
    return _load_user(s, sales_id, Role.FACTORY_SALES, "Sales rep")


def _load_agent(s, agent_id: Any) -> User | None:
    if agent_id is None:
        return None
    return _load_user(s, agent_id, Role.AGENT, "Agent")




def _parse_choice(errs: list[FieldError], payload: dict[str, Any], key: str, enum_cls) -> Any:
    raw = payload.get(key)
    if raw is None or str(getattr(raw, "value", raw)).strip() == "":
        errs.append(FieldError(key, f"{key} is required."))
        return None
    try:
        return enum_cls(str(getattr(raw, "value", raw)).strip().upper())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        errs.append(FieldError(key, f"{key} must be one of: {allowed}."))
        return None


def _choice(value: Any, enum_cls) -> Any:
    return enum_cls(str(getattr(value, "value", value)).strip().upper())


def _is_container(value: Any) -> bool:
    return isinstance(value, (dict, list, tuple, set))


def _whole_number(value: Any) -> int | None:
    """A non-negative whole number that fits the annual_demand column, else None."""
    if value is None or isinstance(value, bool) or _is_container(value):
        return None
    try:
        f = float(value)
        if not math.isfinite(f) or f != int(f):
            return None
        n = value if isinstance(value, int) else int(f)
    except (TypeError, ValueError, OverflowError):
        return None
    return n if 0 <= n <= MAX_ANNUAL_DEMAND else None


def validate_customer_payload(
    s, payload: dict[str, Any], *, customer_id: int | None = None, partial: bool = False
) -> list[FieldError]:
    """
    Field errors for a new customer, or for an edit when partial=True (only the keys present
    are checked). customer_id leaves the edited customer out of the name uniqueness check.
    """
    errs: list[FieldError] = []
    for key in TEXT_FIELDS:
        if _is_container(payload.get(key)):
            errs.append(FieldError(key, f"{key} must be text."))

    def wanted(key: str) -> bool:
        return not partial or key in payload

    if wanted("name") and not _is_container(payload.get("name")):
        name = clean_text(payload.get("name")) or ""
        if not name:
            errs.append(FieldError("name", "Customer name is required."))
        elif len(name) < MIN_NAME_LENGTH:
            errs.append(FieldError("name", f"Customer name must be at least {MIN_NAME_LENGTH} characters."))
        else:
            stmt = select(Customer.id).where(Customer.name == name)
            if customer_id is not None:
                stmt = stmt.where(Customer.id != customer_id)
            if s.execute(stmt).first() is not None:
                errs.append(FieldError("name", f"A customer named {name!r} already exists."))

    if wanted("nature"):
        _parse_choice(errs, payload, "nature", CustomerNature)
    if wanted("importance"):
        _parse_choice(errs, payload, "importance", CustomerImportance)

    if wanted("annual_demand") and _whole_number(payload.get("annual_demand", 0)) is None:
        errs.append(
            FieldError("annual_demand", f"Annual demand must be a whole number between 0 and {MAX_ANNUAL_DEMAND}.")
        )

    needs = payload.get("product_needs") or []
    if not isinstance(needs, (list, tuple, set, frozenset)):
        errs.append(FieldError("product_needs", "Product needs must be a list of product ids."))
    return errs


def create_customer(s, payload: dict[str, Any], *, user: User) -> TransitionResult:
    """
    Creates a customer Owned or Pooled depending on who creates it:
    - FactorySales always owns what they create (agent optional, must be theirs).
    - Agent: owned by the agent's linked sales rep with the agent itself attached.
    - SuperAdmin: owned by related_sales_id if given, otherwise Pooled.
    """
    if not can_create(user.role):
        raise Forbidden()

    def _apply(attempt: int) -> TransitionResult:
        errs = validate_customer_payload(s, payload)
        if errs:
            raise ValidationError(errs)
        progress = parse_progress(payload.get("progress") or Progress.INITIAL_CONTACT)

        sales: User | None
        agent: User | None
        if user.role is Role.FACTORY_SALES:
            sales = user
            agent = _load_agent(s, payload.get("related_agent_id"))
        elif user.role is Role.AGENT:
            if user.related_sales_id is None:
                raise ValidationError([FieldError("related_sales_id", "Your agent account is not linked to a sales rep.")])
            sales = _load_sales_rep(s, user.related_sales_id)
            agent = user
        else:
            sales_id = payload.get("related_sales_id")
            agent_id = payload.get("related_agent_id")
            if agent_id is not None and sales_id is None:
                raise ValidationError([FieldError("related_agent_id", "An agent can only be set together with a sales rep.")])
            sales = _load_sales_rep(s, sales_id) if sales_id is not None else None
            agent = _load_agent(s, agent_id)
        check_agent_linkage(agent, sales.id if sales else None)

        now = datetime.utcnow()
        c = Customer(
            name=clean_text(payload["name"]),
            nature=_choice(payload["nature"], CustomerNature),
            importance=_choice(payload["importance"], CustomerImportance),
            application_field=clean_text(payload.get("application_field")) or "",
            product_needs=[str(p) for p in (payload.get("product_needs") or [])],
            contact_person=clean_text(payload.get("contact_person")),
            contact_phone=clean_text(payload.get("contact_phone")),
            address=clean_text(payload.get("address")),
            progress=progress,
            annual_demand=_whole_number(payload.get("annual_demand", 0)),
            owner_id=user.id,
            owner_name=user.name,
            owner_type=user.role.value,
            related_sales_id=sales.id if sales else None,
            related_sales_name=sales.name if sales else None,
            related_agent_id=agent.id if agent else None,
            related_agent_name=agent.name if agent else None,
            created_at=now,
            updated_at=now,
            last_update_time=now,
        )
        s.add(c)
        s.flush()

        progress_row = append_progress_history(
            s,
            customer=c,
            from_progress=NO_PROGRESS,
            to_progress=progress.value,
            operator=user,
            remark="customer created",
            now=now,
        )
        assignment_row = None
        if sales is not None:
            self_claim = user.id in (sales.id, agent.id if agent else None)
            assignment_row = append_assignment_history(
                s,
                customer=c,
                transfer=Transfer(
                    from_sales_id=None,
                    from_sales_name=None,
                    to_sales_id=sales.id,
                    to_sales_name=sales.name,
                    from_agent_id=None,
                    from_agent_name=None,
                    to_agent_id=agent.id if agent else None,
                    to_agent_name=agent.name if agent else None,
                    progress_before=progress,
                    progress_after=progress,
                ),
                operation_type=operation_label(None, at_creation=True, self_claim=self_claim),
                operator=user,
                remark=payload.get("remark"),
                now=now,
            )
        record_event(
            s,
            actor=user,
            action="customer.create",
            entity_type="Customer",
            entity_id=str(c.id),
            metadata={"name": c.name, "related_sales_id": c.related_sales_id, "related_agent_id": c.related_agent_id},
        )
        return TransitionResult(customer=c, assignment=assignment_row, progress=progress_row)

    result = _run_atomic(s, None, _apply)
    logger.info(
        "Customer %s created by user %s (%s), pooled=%s",
        result.customer.id,
        user.id,
        user.role.value,
        result.customer.is_in_public_pool,
    )
    return result


def get_customer(s, customer_id: int, *, user: User) -> CustomerView:
    c = _load_customer(s, customer_id)
    if not can_view(user.role, user.id, c):
        raise Forbidden()
    actions = allowed_actions(user.role, user.id, c)
    if c.progress is Progress.DISABLED and user.role is not Role.SUPER_ADMIN:
        actions = actions & {Action.VIEW}
    return CustomerView(customer=c, allowed_actions=actions)


def _assign_locked(
    s,
    c: Customer,
    *,
    sales_id: Any,
    agent_id: Any,
    user: User,
    remark: str | None,
    request_key: str | None = None,
) -> TransitionResult:
    """Authorize and apply an assignment or claim to a customer already loaded under lock."""
    if c.is_in_public_pool:
        if not can_claim(user.role, user.id, c):
            raise Forbidden()
        try:
            target_sales = int(sales_id)
            target_agent = int(agent_id) if agent_id is not None else None
        except (TypeError, ValueError):
            raise Forbidden() from None
        check_claim_targets(user, target_sales, target_agent)
    elif not can_assign(user.role, user.id, c):
        raise Forbidden()
    check_not_frozen(c, user)

    sales = _load_sales_rep(s, sales_id)
    agent = _load_agent(s, agent_id)
    check_agent_linkage(agent, sales.id)

    unchanged = (
        not c.is_in_public_pool
        and c.related_sales_id == sales.id
        and c.related_agent_id == (agent.id if agent else None)
        and c.progress is not Progress.DISABLED
    )
    if unchanged:
        return TransitionResult(customer=c)

    now = datetime.utcnow()
    label = operation_label(c.related_sales_id)
    transfer = apply_assignment(c, sales=sales, agent=agent, now=now)
    assignment_row = append_assignment_history(
        s,
        customer=c,
        transfer=transfer,
        operation_type=label,
        operator=user,
        remark=remark,
        request_key=request_key,
        now=now,
    )
    progress_row = None
    if transfer.progress_changed:
        progress_row = append_progress_history(
            s,
            customer=c,
            from_progress=transfer.progress_before.value,
            to_progress=transfer.progress_after.value,
            operator=user,
            remark="claimed from public pool" if label is OperationType.CLAIM else "reassigned",
            now=now,
        )
    return TransitionResult(customer=c, assignment=assignment_row, progress=progress_row)


def assign_customer(
    s,
    customer_id: int,
    *,
    sales_id: Any,
    agent_id: Any = None,
    user: User,
    remark: str | None = None,
    expected_sales_id: Any = _UNSET,
    request_key: str | None = None,
) -> TransitionResult:
    """
    Assign an Owned customer to another sales rep/agent, or claim a Pooled one.
    The history label is derived from the owner found under lock, never from the caller.
    """
    if sales_id is None:
        raise ValidationError([FieldError("salesId", "A target sales rep is required.")])
    seen: dict[str, Any] = {}

    def _apply(attempt: int) -> TransitionResult:
        replay = find_by_request_key(s, request_key)
        if replay is not None:
            if replay.customer_id != customer_id:
                raise ValidationError([FieldError("requestKey", "This idempotency key was already used for another customer.")])
            return TransitionResult(customer=_load_customer(s, customer_id), assignment=replay, replayed=True)

        c = s.get(Customer, customer_id)
        if c is not None:
            seen.setdefault("sales_id", c.related_sales_id)
        c = _load_customer(s, customer_id, lock=True)

        expected = expected_sales_id if expected_sales_id is not _UNSET else seen.get("sales_id", _UNSET)
        if expected is not _UNSET and c.related_sales_id != expected:
            raise ConcurrencyConflict(customer_id)

        return _assign_locked(
            s, c, sales_id=sales_id, agent_id=agent_id, user=user, remark=remark, request_key=request_key
        )

    result = _run_atomic(s, customer_id, _apply)
    if result.replayed:
        logger.info("Customer %s: replayed assignment %s (request_key=%s)", customer_id, result.assignment.id, request_key)
    elif result.assignment is not None:
        logger.info(
            "Customer %s: %s %s -> %s by user %s",
            customer_id,
            result.assignment.operation_type.value,
            result.assignment.from_related_sales_id,
            result.assignment.to_related_sales_id,
            user.id,
        )
    return result


EDITABLE_FIELDS = (
    "name",
    "nature",
    "importance",
    "application_field",
    "product_needs",
    "contact_person",
    "contact_phone",
    "address",
    "annual_demand",
)


def _editable_snapshot(c: Customer) -> dict[str, Any]:
    return {k: getattr(getattr(c, k), "value", getattr(c, k)) for k in EDITABLE_FIELDS}


def update_customer(
    s, customer_id: int, payload: dict[str, Any], *, user: User, reason: str | None = None
) -> TransitionResult:
    """
    Customer edit form. Only the keys present in payload change.

    progress goes through parse_progress, so PUBLIC_POOL (and DISABLED) can never be
    picked here. A new related_sales_id/related_agent_id is applied exactly as
    assign_customer would apply it (same authorization, linkage check and history).
    Releasing a customer to the pool is not an edit: use move_to_public_pool.
    """

    def _apply(attempt: int) -> TransitionResult:
        c = _load_customer(s, customer_id, lock=True)
        if not can_edit(user.role, user.id, c):
            raise Forbidden()
        check_not_frozen(c, user)

        errs = validate_customer_payload(s, payload, customer_id=c.id, partial=True)
        if errs:
            raise ValidationError(errs)
        new_progress = parse_progress(payload["progress"]) if payload.get("progress") is not None else None

        assignment_row = None
        progress_row = None
        if "related_sales_id" in payload or "related_agent_id" in payload:
            target_sales = payload.get("related_sales_id", c.related_sales_id)
            target_agent = payload["related_agent_id"] if "related_agent_id" in payload else c.related_agent_id
            if (target_sales, target_agent) != (c.related_sales_id, c.related_agent_id):
                if target_sales is None:
                    raise ValidationError(
                        [FieldError("related_sales_id", "Use move to public pool to release a customer.")]
                    )
                moved = _assign_locked(s, c, sales_id=target_sales, agent_id=target_agent, user=user, remark=reason)
                assignment_row, progress_row = moved.assignment, moved.progress

        before = _editable_snapshot(c)
        if "name" in payload:
            c.name = clean_text(payload["name"])
        if "nature" in payload:
            c.nature = _choice(payload["nature"], CustomerNature)
        if "importance" in payload:
            c.importance = _choice(payload["importance"], CustomerImportance)
        if "application_field" in payload:
            c.application_field = clean_text(payload["application_field"]) or ""
        if "product_needs" in payload:
            c.product_needs = [str(p) for p in (payload["product_needs"] or [])]
        for key in ("contact_person", "contact_phone", "address"):
            if key in payload:
                setattr(c, key, clean_text(payload[key]))
        if "annual_demand" in payload:
            c.annual_demand = _whole_number(payload["annual_demand"])
        after = _editable_snapshot(c)
        fields_changed = [k for k in EDITABLE_FIELDS if before[k] != after[k]]

        now = datetime.utcnow()
        if new_progress is not None and new_progress is not c.progress:
            previous = apply_progress(c, new_progress, now=now)
            progress_row = append_progress_history(
                s,
                customer=c,
                from_progress=previous.value,
                to_progress=new_progress.value,
                operator=user,
                remark=reason or "customer updated",
                now=now,
            )
        elif fields_changed:
            c.updated_at = now
            c.last_update_time = now

        if fields_changed:
            record_event(
                s,
                actor=user,
                action="customer.update",
                entity_type="Customer",
                entity_id=str(c.id),
                reason=clean_text(reason),
                metadata={
                    "before": {k: before[k] for k in fields_changed},
                    "after": {k: after[k] for k in fields_changed},
                    "fields_changed": fields_changed,
                },
            )
        return TransitionResult(customer=c, assignment=assignment_row, progress=progress_row)

    result = _run_atomic(s, customer_id, _apply)
    logger.info("Customer %s updated by user %s", customer_id, user.id)
    return result


def move_to_public_pool(s, customer_id: int, *, user: User, remark: str | None = None) -> TransitionResult:
    def _apply(attempt: int) -> TransitionResult:
        c = _load_customer(s, customer_id, lock=True)
        if c.is_in_public_pool:
            if not can_assign(user.role, user.id, c):
                raise Forbidden()
            raise AlreadyPooled(customer_id)
        if not can_move_to_public_pool(user.role, user.id, c):
            raise Forbidden()
        check_not_frozen(c, user)

        now = datetime.utcnow()
        transfer = apply_move_to_pool(c, now=now)
        assignment_row = append_assignment_history(
            s,
            customer=c,
            transfer=transfer,
            operation_type=OperationType.MOVE_TO_PUBLIC_POOL,
            operator=user,
            remark=remark,
            now=now,
        )
        progress_row = None
        if transfer.progress_changed:
            progress_row = append_progress_history(
                s,
                customer=c,
                from_progress=transfer.progress_before.value,
                to_progress=transfer.progress_after.value,
                operator=user,
                remark=clean_text(remark) or "moved to public pool",
                now=now,
            )
        return TransitionResult(customer=c, assignment=assignment_row, progress=progress_row)

    result = _run_atomic(s, customer_id, _apply)
    logger.info(
        "Customer %s: MOVE_TO_PUBLIC_POOL from sales %s by user %s",
        customer_id,
        result.assignment.from_related_sales_id if result.assignment else None,
        user.id,
    )
    return result


def change_progress(s, customer_id: int, progress: Any, *, user: User, remark: str | None = None) -> TransitionResult:
    new_progress = parse_progress(progress)

    def _apply(attempt: int) -> TransitionResult:
        c = _load_customer(s, customer_id, lock=True)
        if not can_edit(user.role, user.id, c):
            raise Forbidden()
        check_not_frozen(c, user)
        if c.progress is new_progress:
            return TransitionResult(customer=c)

        now = datetime.utcnow()
        before = apply_progress(c, new_progress, now=now)
        row = append_progress_history(
            s,
            customer=c,
            from_progress=before.value,
            to_progress=new_progress.value,
            operator=user,
            remark=remark,
            now=now,
        )
        return TransitionResult(customer=c, progress=row)

    result = _run_atomic(s, customer_id, _apply)
    if result.progress is not None:
        logger.info(
            "Customer %s: progress %s -> %s by user %s",
            customer_id,
            result.progress.from_progress,
            result.progress.to_progress,
            user.id,
        )
    return result


def disable_customer(s, customer_id: int, *, user: User, remark: str | None = None) -> TransitionResult:
    """Freezes an Owned customer while another process reassigns it."""

    def _apply(attempt: int) -> TransitionResult:
        c = _load_customer(s, customer_id, lock=True)
        if user.role is not Role.SUPER_ADMIN:
            raise Forbidden()
        now = datetime.utcnow()
        before = apply_disable(c, now=now)
        row = append_progress_history(
            s,
            customer=c,
            from_progress=before.value,
            to_progress=Progress.DISABLED.value,
            operator=user,
            remark=remark,
            now=now,
        )
        return TransitionResult(customer=c, progress=row)

    result = _run_atomic(s, customer_id, _apply)
    logger.info("Customer %s: disabled by user %s", customer_id, user.id)
    return result


def delete_customer(s, customer_id: int, *, user: User, reason: str | None = None) -> None:
    """Hard delete. History rows stay behind as the archival record."""

    def _apply(attempt: int) -> TransitionResult:
        c = _load_customer(s, customer_id, lock=True)
        if not can_delete(user.role, user.id, c):
            raise Forbidden()
        record_event(
            s,
            actor=user,
            action="customer.delete",
            entity_type="Customer",
            entity_id=str(c.id),
            reason=clean_text(reason),
            metadata={"name": c.name, "related_sales_id": c.related_sales_id, "related_agent_id": c.related_agent_id},
        )
        s.delete(c)
        return TransitionResult(customer=c)

    _run_atomic(s, customer_id, _apply)
    logger.info("Customer %s: deleted by user %s", customer_id, user.id)


def _filter_customers(stmt, *, nature: Any, importance: Any, keyword: Any):
    errs: list[FieldError] = []
    filters: dict[str, Any] = {"nature": nature, "importance": importance}
    parsed_nature = _parse_choice(errs, filters, "nature", CustomerNature) if nature else None
    parsed_importance = _parse_choice(errs, filters, "importance", CustomerImportance) if importance else None
    if errs:
        raise ValidationError(errs)

    if parsed_nature is not None:
        stmt = stmt.where(Customer.nature == parsed_nature)
    if parsed_importance is not None:
        stmt = stmt.where(Customer.importance == parsed_importance)
    kw = clean_text(keyword)
    if kw:
        like = f"%{kw}%"
        stmt = stmt.where(
            or_(
                Customer.name.ilike(like),
                Customer.contact_person.ilike(like),
                Customer.application_field.ilike(like),
            )
        )
    return stmt


def list_public_pool_customers(
    s,
    *,
    nature: Any = None,
    importance: Any = None,
    keyword: str | None = None,
    application_field: str | None = None,
) -> list[Customer]:
    stmt = _filter_customers(
        select(Customer).where(Customer.is_in_public_pool), nature=nature, importance=importance, keyword=keyword
    )
    field = clean_text(application_field)
    if field:
        stmt = stmt.where(Customer.application_field.ilike(f"%{field}%"))
    stmt = stmt.order_by(Customer.last_update_time.desc(), Customer.id.desc())
    return list(s.scalars(stmt).all())


def list_customers(
    s,
    *,
    user: User,
    nature: Any = None,
    importance: Any = None,
    progress: Any = None,
    in_public_pool: bool | None = None,
    keyword: str | None = None,
    page: int = 1,
    per_page: int = 50,
) -> tuple[list[Customer], int]:
    """
    One page of the customers user may list, most recently updated first, plus the total.

    SuperAdmin lists everything. A sales rep lists the customers they are the related
    sales rep of, an agent the ones it is the related agent of; asking for the pool
    (in_public_pool=True) lifts that scope. Other roles cannot list customers.
    """
    if user.role not in (Role.SUPER_ADMIN, Role.FACTORY_SALES, Role.AGENT):
        raise Forbidden()

    stmt = select(Customer)
    if in_public_pool is True:
        stmt = stmt.where(Customer.is_in_public_pool)
    elif in_public_pool is False:
        stmt = stmt.where(Customer.related_sales_id.is_not(None))

    if in_public_pool is not True:
        if user.role is Role.FACTORY_SALES:
            stmt = stmt.where(Customer.related_sales_id == user.id)
        elif user.role is Role.AGENT:
            stmt = stmt.where(Customer.related_agent_id == user.id)

    if progress:
        try:
            stmt = stmt.where(Customer.progress == _choice(progress, Progress))
        except ValueError:
            raise ValidationError([FieldError("progress", f"Unknown progress value {progress!r}.")]) from None
    stmt = _filter_customers(stmt, nature=nature, importance=importance, keyword=keyword)

    total = s.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    page = max(int(page), 1)
    per_page = max(int(per_page), 1)
    rows = s.scalars(
        stmt.order_by(Customer.last_update_time.desc(), Customer.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    ).all()
    return list(rows), total
