from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, g, jsonify, request

from app.crm.db import db_session
from app.crm.models import User
from app.crm.modules.customer_lifecycle.errors import LifecycleError
from app.crm.modules.customer_lifecycle.history import (
    get_assignment_history,
    get_progress_history,
    get_public_pool_history,
    latest_claim,
)
from app.crm.modules.customer_lifecycle.service import (
    TransitionResult,
    assign_customer,
    change_progress,
    create_customer,
    delete_customer,
    disable_customer,
    get_customer,
    list_customers,
    list_public_pool_customers,
    move_to_public_pool,
    update_customer,
)
from app.crm.modules.customer_lifecycle.utils import (
    assignment_to_dict,
    clean_text,
    customer_payload_from_json,
    customer_to_dict,
    optional_int,
    pool_customer_to_dict,
    progress_to_dict,
)
from app.crm.rbac import require_login

bp = Blueprint("customer_lifecycle", __name__)

PER_PAGE = 50


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _result_to_dict(result: TransitionResult) -> dict[str, Any]:
    return {
        "customer": customer_to_dict(result.customer),
        "assignmentHistory": assignment_to_dict(result.assignment) if result.assignment else None,
        "progressHistory": progress_to_dict(result.progress) if result.progress else None,
        "replayed": result.replayed,
    }


@bp.errorhandler(LifecycleError)
def _lifecycle_error(e: LifecycleError):
    if e.status_code >= 500:
        current_app.logger.error("Lifecycle error (request_id=%s): %s", getattr(g, "request_id", None), e.message)
    elif e.status_code == 403:
        current_app.logger.warning(
            "Forbidden: user=%s path=%s request_id=%s",
            getattr(getattr(g, "current_user", None), "id", None),
            request.path,
            getattr(g, "request_id", None),
        )
    return jsonify(e.to_dict()), e.status_code


@bp.post("/customers")
@require_login
def customers_create():
    s = db_session()
    result = create_customer(s, customer_payload_from_json(_json_body()), user=_current_user())
    return jsonify(_result_to_dict(result)), 201


@bp.get("/customers")
@require_login
def customers_list():
    s = db_session()
    pooled = (request.args.get("isInPublicPool") or "").strip().lower()
    page = max(optional_int(request.args.to_dict(), "page") or 1, 1)
    rows, total = list_customers(
        s,
        user=_current_user(),
        nature=(request.args.get("nature") or "").strip() or None,
        importance=(request.args.get("importance") or "").strip() or None,
        progress=(request.args.get("progress") or "").strip() or None,
        in_public_pool={"true": True, "false": False}.get(pooled),
        keyword=request.args.get("keyword"),
        page=page,
        per_page=PER_PAGE,
    )
    return jsonify(
        {
            "items": [customer_to_dict(c) for c in rows],
            "total": total,
            "page": page,
            "perPage": PER_PAGE,
            "hasNext": page * PER_PAGE < total,
        }
    )


@bp.get("/customers/<int:customer_id>")
@require_login
def customers_detail(customer_id: int):
    s = db_session()
    view = get_customer(s, customer_id, user=_current_user())
    return jsonify(
        {
            "customer": customer_to_dict(view.customer),
            "allowedActions": sorted(a.value for a in view.allowed_actions),
        }
    )


@bp.put("/customers/<int:customer_id>")
@require_login
def customers_update(customer_id: int):
    s = db_session()
    payload = customer_payload_from_json(_json_body())
    reason = payload.pop("remark", None)
    result = update_customer(s, customer_id, payload, user=_current_user(), reason=reason)
    return jsonify(_result_to_dict(result))


@bp.delete("/customers/<int:customer_id>")
@require_login
def customers_delete(customer_id: int):
    s = db_session()
    reason = clean_text(_json_body().get("reason"))
    delete_customer(s, customer_id, user=_current_user(), reason=reason)
    return jsonify({"ok": True, "id": customer_id})


@bp.post("/customers/<int:customer_id>/assign")
@require_login
def customers_assign(customer_id: int):
    s = db_session()
    data = _json_body()
    kwargs: dict[str, Any] = {}
    if "expectedSalesId" in data:
        kwargs["expected_sales_id"] = optional_int(data, "expectedSalesId")
    result = assign_customer(
        s,
        customer_id,
        sales_id=optional_int(data, "salesId"),
        agent_id=optional_int(data, "agentId"),
        user=_current_user(),
        remark=data.get("remark"),
        request_key=(request.headers.get("Idempotency-Key") or "").strip() or None,
        **kwargs,
    )
    return jsonify(_result_to_dict(result))


@bp.post("/customers/<int:customer_id>/move-to-public-pool")
@require_login
def customers_move_to_public_pool(customer_id: int):
    s = db_session()
    result = move_to_public_pool(s, customer_id, user=_current_user(), remark=_json_body().get("remark"))
    return jsonify(_result_to_dict(result))


@bp.post("/customers/<int:customer_id>/progress")
@require_login
def customers_change_progress(customer_id: int):
    s = db_session()
    data = _json_body()
    result = change_progress(s, customer_id, data.get("progress"), user=_current_user(), remark=data.get("remark"))
    return jsonify(_result_to_dict(result))


@bp.post("/customers/<int:customer_id>/disable")
@require_login
def customers_disable(customer_id: int):
    s = db_session()
    result = disable_customer(s, customer_id, user=_current_user(), remark=_json_body().get("remark"))
    return jsonify(_result_to_dict(result))


@bp.get("/customers/<int:customer_id>/assignment-history")
@require_login
def customers_assignment_history(customer_id: int):
    s = db_session()
    rows = get_assignment_history(s, customer_id)
    return jsonify({"items": [assignment_to_dict(r) for r in rows]})


@bp.get("/customers/<int:customer_id>/progress-history")
@require_login
def customers_progress_history(customer_id: int):
    s = db_session()
    rows = get_progress_history(s, customer_id)
    return jsonify({"items": [progress_to_dict(r) for r in rows]})


@bp.get("/customers/<int:customer_id>/public-pool-history")
@require_login
def customers_public_pool_history(customer_id: int):
    s = db_session()
    rows = get_public_pool_history(s, customer_id)
    claim = latest_claim(s, customer_id)
    return jsonify(
        {
            "items": [assignment_to_dict(r) for r in rows],
            "latestClaim": assignment_to_dict(claim) if claim else None,
        }
    )


@bp.get("/public-pool")
@require_login
def public_pool_list():
    s = db_session()
    rows = list_public_pool_customers(
        s,
        nature=(request.args.get("nature") or "").strip() or None,
        importance=(request.args.get("importance") or "").strip() or None,
        keyword=request.args.get("keyword"),
        application_field=request.args.get("applicationField"),
    )
    return jsonify({"items": [pool_customer_to_dict(c) for c in rows]})
