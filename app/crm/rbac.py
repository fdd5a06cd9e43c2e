"""
Role-based authorization for customer records.

Every decision is a lookup in RULES, keyed by role then action. A rule is a pure
function of (actor_id, customer ownership) so callers never branch on role
strings themselves.

Matrix (customer-scoped actions):

Action               | SUPER_ADMIN | FACTORY_SALES        | AGENT                | INVENTORY_MANAGER
---------------------|-------------|----------------------|----------------------|------------------
view                 | yes         | yes                  | yes                  | yes
edit                 | yes         | owning sales rep     | owning agent         | no
assign               | yes         | owning sales rep     | no                   | no
move_to_public_pool  | not pooled  | owning sales rep     | no                   | no
delete               | yes         | no                   | no                   | no
create               | yes         | yes                  | yes                  | no
claim                | pooled      | pooled               | pooled               | no
"""
from __future__ import annotations

import enum
from collections.abc import Callable
from functools import wraps
from typing import Any, Protocol

from flask import g, jsonify


class Role(str, enum.Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    FACTORY_SALES = "FACTORY_SALES"
    AGENT = "AGENT"
    INVENTORY_MANAGER = "INVENTORY_MANAGER"


class Action(str, enum.Enum):
    VIEW = "view"
    EDIT = "edit"
    ASSIGN = "assign"
    MOVE_TO_PUBLIC_POOL = "move_to_public_pool"
    DELETE = "delete"
    CREATE = "create"
    CLAIM = "claim"


class OwnedRecord(Protocol):
    related_sales_id: int | None
    related_agent_id: int | None

    @property
    def is_in_public_pool(self) -> bool: ...


Rule = Callable[[int | None, OwnedRecord], bool]


def _always(actor_id: int | None, customer: OwnedRecord) -> bool:
    return True


def _never(actor_id: int | None, customer: OwnedRecord) -> bool:
    return False


def _is_owning_sales(actor_id: int | None, customer: OwnedRecord) -> bool:
    return actor_id is not None and customer.related_sales_id == actor_id


def _is_owning_agent(actor_id: int | None, customer: OwnedRecord) -> bool:
    return actor_id is not None and customer.related_agent_id == actor_id


def _is_pooled(actor_id: int | None, customer: OwnedRecord) -> bool:
    return bool(customer.is_in_public_pool)


def _not_pooled(actor_id: int | None, customer: OwnedRecord) -> bool:
    return not customer.is_in_public_pool


def _owning_sales_not_pooled(actor_id: int | None, customer: OwnedRecord) -> bool:
    return _not_pooled(actor_id, customer) and _is_owning_sales(actor_id, customer)


RULES: dict[Role, dict[Action, Rule]] = {
    Role.SUPER_ADMIN: {
        Action.VIEW: _always,
        Action.EDIT: _always,
        Action.ASSIGN: _always,
        Action.MOVE_TO_PUBLIC_POOL: _not_pooled,
        Action.DELETE: _always,
        Action.CREATE: _always,
        Action.CLAIM: _is_pooled,
    },
    Role.FACTORY_SALES: {
        Action.VIEW: _always,
        Action.EDIT: _is_owning_sales,
        Action.ASSIGN: _is_owning_sales,
        Action.MOVE_TO_PUBLIC_POOL: _owning_sales_not_pooled,
        Action.CREATE: _always,
        Action.CLAIM: _is_pooled,
    },
    Role.AGENT: {
        Action.VIEW: _always,
        Action.EDIT: _is_owning_agent,
        Action.CREATE: _always,
        Action.CLAIM: _is_pooled,
    },
    Role.INVENTORY_MANAGER: {
        Action.VIEW: _always,
    },
}


def _coerce_role(role: Role | str | None) -> Role | None:
    if role is None:
        return None
    try:
        return Role(role)
    except ValueError:
        return None


def is_allowed(role: Role | str | None, action: Action, actor_id: int | None, customer: OwnedRecord) -> bool:
    r = _coerce_role(role)
    if r is None:
        return False
    rule = RULES.get(r, {}).get(action, _never)
    return rule(actor_id, customer)


def can_view(role: Role | str | None, actor_id: int | None, customer: OwnedRecord) -> bool:
    return is_allowed(role, Action.VIEW, actor_id, customer)


def can_edit(role: Role | str | None, actor_id: int | None, customer: OwnedRecord) -> bool:
    return is_allowed(role, Action.EDIT, actor_id, customer)


def can_assign(role: Role | str | None, actor_id: int | None, customer: OwnedRecord) -> bool:
    return is_allowed(role, Action.ASSIGN, actor_id, customer)


def can_move_to_public_pool(role: Role | str | None, actor_id: int | None, customer: OwnedRecord) -> bool:
    return is_allowed(role, Action.MOVE_TO_PUBLIC_POOL, actor_id, customer)


def can_delete(role: Role | str | None, actor_id: int | None, customer: OwnedRecord) -> bool:
    return is_allowed(role, Action.DELETE, actor_id, customer)


def can_claim(role: Role | str | None, actor_id: int | None, customer: OwnedRecord) -> bool:
    return is_allowed(role, Action.CLAIM, actor_id, customer)


def can_create(role: Role | str | None) -> bool:
    r = _coerce_role(role)
    return r is not None and Action.CREATE in RULES.get(r, {})


def allowed_actions(role: Role | str | None, actor_id: int | None, customer: OwnedRecord) -> frozenset[Action]:
    return frozenset(a for a in Action if a is not Action.CREATE and is_allowed(role, a, actor_id, customer))


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    """JSON routes: 401 when no active user is bound to the request."""

    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return jsonify({"error": "Authentication required.", "code": "unauthenticated"}), 401
        return fn(*args, **kwargs)

    return wrapped
