"""
Customer lifecycle errors.

All of them are deterministic and local to one operation. Only ConcurrencyConflict
is retried, and only by service._run_atomic.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class LifecycleError(Exception):
    status_code = 400
    code = "lifecycle_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code}


class NotFound(LifecycleError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found.")
        self.entity = entity
        self.entity_id = entity_id


class Forbidden(LifecycleError):
    status_code = 403
    code = "forbidden"

    def __init__(self, message: str = "You are not allowed to perform this action on this customer."):
        super().__init__(message)


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str


class ValidationError(LifecycleError):
    status_code = 400
    code = "validation_error"

    def __init__(self, errors: list[FieldError] | str):
        if isinstance(errors, str):
            errors = [FieldError("", errors)]
        super().__init__("; ".join(e.message for e in errors) or "Invalid input.")
        self.errors = errors

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["fields"] = [{"field": e.field, "message": e.message} for e in self.errors]
        return d


class InvalidLinkage(ValidationError):
    status_code = 422
    code = "invalid_linkage"

    def __init__(self, *, agent_id: int, agent_sales_id: int | None, target_sales_id: int | None):
        super().__init__(
            [
                FieldError(
                    "agentId",
                    f"Agent {agent_id} is linked to sales rep {agent_sales_id}, not {target_sales_id}.",
                )
            ]
        )
        self.agent_id = agent_id
        self.agent_sales_id = agent_sales_id
        self.target_sales_id = target_sales_id

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d.update(
            {
                "agentId": self.agent_id,
                "agentSalesId": self.agent_sales_id,
                "targetSalesId": self.target_sales_id,
            }
        )
        return d


class InvalidProgressValue(ValidationError):
    code = "invalid_progress_value"

    def __init__(self, value: Any, reason: str | None = None):
        super().__init__([FieldError("progress", reason or f"Progress value {value!r} cannot be set directly.")])
        self.value = value


class AlreadyPooled(LifecycleError):
    status_code = 409
    code = "already_pooled"

    def __init__(self, customer_id: int):
        super().__init__(f"Customer {customer_id} is already in the public pool.")
        self.customer_id = customer_id


class ConcurrencyConflict(LifecycleError):
    status_code = 409
    code = "concurrency_conflict"

    def __init__(self, customer_id: int | None, message: str | None = None):
        super().__init__(message or f"Customer {customer_id} was changed by another request; reload and retry.")
        self.customer_id = customer_id


class InvariantViolation(LifecycleError):
    status_code = 500
    code = "invariant_violation"


class AppendOnlyViolation(RuntimeError):
    """Raised when code attempts to update or delete a history row."""
