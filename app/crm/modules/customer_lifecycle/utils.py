from __future__ import annotations

from datetime import datetime
from typing import Any

from app.crm.modules.customer_lifecycle.errors import FieldError, ValidationError
from app.crm.modules.customer_lifecycle.models import AssignmentHistory, Customer, ProgressHistory

# JSON field name -> service payload key
CUSTOMER_FIELDS = {
    "name": "name",
    "nature": "nature",
    "importance": "importance",
    "applicationField": "application_field",
    "productNeeds": "product_needs",
    "contactPerson": "contact_person",
    "contactPhone": "contact_phone",
    "address": "address",
    "annualDemand": "annual_demand",
    "progress": "progress",
    "relatedSalesId": "related_sales_id",
    "relatedAgentId": "related_agent_id",
    "remark": "remark",
}

# Payload keys holding free text
TEXT_FIELDS = ("name", "application_field", "contact_person", "contact_phone", "address", "remark")


def clean_text(value: Any) -> str | None:
    """Stripped free text, None when blank. JSON numbers (phone numbers mostly) keep their digits."""
    if value is None:
        return None
    return str(value).strip() or None


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def _value(v: Any) -> Any:
    return getattr(v, "value", v)


def customer_to_dict(c: Customer) -> dict[str, Any]:
    return {
        "id": c.id,
        "name": c.name,
        "nature": _value(c.nature),
        "importance": _value(c.importance),
        "applicationField": c.application_field,
        "productNeeds": list(c.product_needs or []),
        "contactPerson": c.contact_person,
        "contactPhone": c.contact_phone,
        "address": c.address,
        "progress": _value(c.progress),
        "annualDemand": c.annual_demand,
        "isInPublicPool": c.is_in_public_pool,
        "ownerId": c.owner_id,
        "ownerName": c.owner_name,
        "ownerType": c.owner_type,
        "relatedSalesId": c.related_sales_id,
        "relatedSalesName": c.related_sales_name,
        "relatedAgentId": c.related_agent_id,
        "relatedAgentName": c.related_agent_name,
        "previousOwnerId": c.previous_owner_id,
        "previousOwnerName": c.previous_owner_name,
        "previousOwnerType": c.previous_owner_type,
        "previousRelatedAgentId": c.previous_related_agent_id,
        "previousRelatedAgentName": c.previous_related_agent_name,
        "version": c.version,
        "createdAt": _iso(c.created_at),
        "updatedAt": _iso(c.updated_at),
        "lastUpdateTime": _iso(c.last_update_time),
    }


def pool_customer_to_dict(c: Customer) -> dict[str, Any]:
    """Public-pool listing row: who had it last, who created it, when it entered the pool."""
    d = customer_to_dict(c)
    d["enteredPoolAt"] = d["lastUpdateTime"]
    return d


def assignment_to_dict(h: AssignmentHistory) -> dict[str, Any]:
    return {
        "id": h.id,
        "customerId": h.customer_id,
        "customerName": h.customer_name,
        "fromRelatedSalesId": h.from_related_sales_id,
        "fromRelatedSalesName": h.from_related_sales_name,
        "toRelatedSalesId": h.to_related_sales_id,
        "toRelatedSalesName": h.to_related_sales_name,
        "fromRelatedAgentId": h.from_related_agent_id,
        "fromRelatedAgentName": h.from_related_agent_name,
        "toRelatedAgentId": h.to_related_agent_id,
        "toRelatedAgentName": h.to_related_agent_name,
        "operatorId": h.operator_id,
        "operatorName": h.operator_name,
        "operationType": _value(h.operation_type),
        "remark": h.remark,
        "createdAt": _iso(h.created_at),
    }


def progress_to_dict(h: ProgressHistory) -> dict[str, Any]:
    return {
        "id": h.id,
        "customerId": h.customer_id,
        "customerName": h.customer_name,
        "fromProgress": h.from_progress,
        "toProgress": h.to_progress,
        "operatorId": h.operator_id,
        "operatorName": h.operator_name,
        "remark": h.remark,
        "createdAt": _iso(h.created_at),
    }


def optional_int(data: dict[str, Any], key: str) -> int | None:
    """Reads an optional integer id from a JSON body; "" and null mean absent."""
    raw = data.get(key)
    if raw is None or (isinstance(raw, str) and raw.strip() == ""):
        return None
    if isinstance(raw, bool):
        raise ValidationError([FieldError(key, f"{key} must be a number.")])
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError([FieldError(key, f"{key} must be a number.")]) from None


def customer_payload_from_json(data: dict[str, Any]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for json_key, key in CUSTOMER_FIELDS.items():
        if json_key in data:
            payload[key] = data[json_key]
    for json_key in ("relatedSalesId", "relatedAgentId"):
        if json_key in data:
            payload[CUSTOMER_FIELDS[json_key]] = optional_int(data, json_key)
    return payload
