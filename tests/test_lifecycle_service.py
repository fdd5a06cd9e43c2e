"""Customer lifecycle service scenarios against a real (sqlite) database."""
import json
from datetime import datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from app.crm.db import new_session
from app.crm.models import AuditEvent, User
from app.crm.modules.customer_lifecycle.constants import NO_PROGRESS, OperationType, Progress
from app.crm.modules.customer_lifecycle.errors import (
    AlreadyPooled,
    ConcurrencyConflict,
    Forbidden,
    InvalidLinkage,
    InvalidProgressValue,
    NotFound,
    ValidationError,
)
from app.crm.modules.customer_lifecycle.history import get_assignment_history, get_progress_history
from app.crm.modules.customer_lifecycle.models import AssignmentHistory, Customer, ProgressHistory
from app.crm.modules.customer_lifecycle.service import (
    _run_atomic,
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
from app.crm.rbac import Action, Role


def _count(s, model, **where) -> int:
    stmt = select(func.count()).select_from(model)
    for k, v in where.items():
        stmt = stmt.where(getattr(model, k) == v)
    return s.execute(stmt).scalar_one()


def _assert_invariants(c: Customer) -> None:
    assert c.is_in_public_pool == (c.related_sales_id is None)
    if c.related_agent_id is not None:
        assert c.related_sales_id is not None


# --- creation -------------------------------------------------------------


def test_sales_rep_owns_what_they_create(s, users, actor):
    payload = {"name": "Acme Coatings", "nature": "LISTED", "importance": "B", "related_sales_id": users["s2"]}
    result = create_customer(s, payload, user=actor("s1"))
    c = result.customer

    assert c.related_sales_id == users["s1"]
    assert c.owner_id == users["s1"] and c.owner_type == "FACTORY_SALES"
    assert result.assignment.operation_type is OperationType.CREATE_AND_CLAIM
    assert result.assignment.from_related_sales_id is None
    assert result.progress.from_progress == NO_PROGRESS
    assert result.progress.to_progress == Progress.INITIAL_CONTACT.value
    assert result.progress.remark == "customer created"


def test_agent_creation_is_owned_by_linked_sales_rep(s, users, actor):
    result = create_customer(s, {"name": "Beta Labs", "nature": "RESEARCH", "importance": "C"}, user=actor("a1"))
    c = result.customer
    assert (c.related_sales_id, c.related_agent_id) == (users["s1"], users["a1"])
    assert result.assignment.operation_type is OperationType.CREATE_AND_CLAIM


def test_admin_creation_for_someone_else_is_create_and_assign(s, users, actor, make_customer):
    c = make_customer(sales="s1", agent="a1")
    rows = get_assignment_history(s, c.id)
    assert [r.operation_type for r in rows] == [OperationType.CREATE_AND_ASSIGN]
    assert rows[0].to_related_agent_id == users["a1"]


def test_admin_creation_without_sales_starts_pooled(s, make_customer):
    c = make_customer()
    assert c.is_in_public_pool is True
    assert c.progress is Progress.INITIAL_CONTACT
    assert get_assignment_history(s, c.id) == []
    assert len(get_progress_history(s, c.id)) == 1
    assert _count(s, AuditEvent, action="customer.create") == 1


def test_inventory_manager_cannot_create(s, actor):
    with pytest.raises(Forbidden):
        create_customer(s, {"name": "Gamma", "nature": "SME", "importance": "A"}, user=actor("inv"))


@pytest.mark.parametrize(
    "overrides,field",
    [
        ({"name": "x"}, "name"),
        ({"name": ""}, "name"),
        ({"annual_demand": -1}, "annual_demand"),
        ({"nature": "FOREIGN"}, "nature"),
        ({"importance": None}, "importance"),
        ({"annual_demand": float("inf")}, "annual_demand"),
        ({"annual_demand": float("nan")}, "annual_demand"),
        ({"annual_demand": 2_147_483_648}, "annual_demand"),
        ({"annual_demand": 10**400}, "annual_demand"),
        ({"annual_demand": 1.5}, "annual_demand"),
        ({"annual_demand": "lots"}, "annual_demand"),
        ({"contact_phone": ["138", "139"]}, "contact_phone"),
        ({"contact_person": {"first": "Li"}}, "contact_person"),
    ],
)
def test_create_validation(s, actor, overrides, field):
    payload = {"name": "Delta Plastics", "nature": "SME", "importance": "A"}
    payload.update(overrides)
    with pytest.raises(ValidationError) as ei:
        create_customer(s, payload, user=actor("admin"))
    assert field in {e.field for e in ei.value.errors}


def test_numeric_text_fields_are_stored_as_text(s, actor):
    payload = {
        "name": "Theta Resins",
        "nature": "SME",
        "importance": "A",
        "contact_phone": 13800138000,
        "contact_person": "  Li Wei ",
        "address": 42,
        "annual_demand": "1200",
    }
    c = create_customer(s, payload, user=actor("admin")).customer
    assert c.contact_phone == "13800138000"
    assert c.contact_person == "Li Wei"
    assert c.address == "42"
    assert c.annual_demand == 1200


def test_whole_float_demand_is_accepted(s, actor):
    payload = {"name": "Iota Films", "nature": "SME", "importance": "A", "annual_demand": 300.0}
    assert create_customer(s, payload, user=actor("admin")).customer.annual_demand == 300


def test_duplicate_name_is_rejected(s, actor, make_customer):
    c = make_customer()
    with pytest.raises(ValidationError):
        create_customer(s, {"name": c.name, "nature": "SME", "importance": "A"}, user=actor("admin"))


def test_create_rejects_public_pool_progress(s, actor):
    with pytest.raises(InvalidProgressValue):
        create_customer(
            s, {"name": "Epsilon", "nature": "SME", "importance": "A", "progress": "PUBLIC_POOL"}, user=actor("admin")
        )


def test_create_agent_without_sales_is_rejected(s, users, actor):
    payload = {"name": "Zeta", "nature": "SME", "importance": "A", "related_agent_id": users["a1"]}
    with pytest.raises(ValidationError):
        create_customer(s, payload, user=actor("admin"))
    assert _count(s, Customer) == 0


def test_create_with_foreign_agent_is_invalid_linkage(s, users, actor):
    payload = {"name": "Eta", "nature": "SME", "importance": "A", "related_agent_id": users["a2"]}
    with pytest.raises(InvalidLinkage):
        create_customer(s, payload, user=actor("s1"))
    assert _count(s, Customer) == 0
    assert _count(s, ProgressHistory) == 0


# --- claim / assign -------------------------------------------------------


def test_claim_from_pool(s, users, actor, make_customer):
    c1 = make_customer()
    result = assign_customer(s, c1.id, sales_id=users["s1"], agent_id=None, user=actor("s1"))

    c = result.customer
    assert c.related_sales_id == users["s1"]
    assert c.is_in_public_pool is False
    row = result.assignment
    assert row.operation_type is OperationType.CLAIM
    assert row.from_related_sales_id is None
    assert row.to_related_sales_id == users["s1"]
    _assert_invariants(c)


def test_agent_claims_for_its_own_sales_rep(s, users, actor, make_customer):
    c = make_customer()
    result = assign_customer(s, c.id, sales_id=users["s1"], agent_id=users["a1"], user=actor("a1"))
    assert result.assignment.operation_type is OperationType.CLAIM
    assert result.customer.related_agent_id == users["a1"]


@pytest.mark.parametrize(
    "who,sales,agent",
    [("s1", "s2", None), ("a1", "s2", "a2"), ("a1", "s1", None), ("inv", "s1", None)],
)
def test_claim_for_someone_else_is_forbidden(s, users, actor, make_customer, who, sales, agent):
    c = make_customer()
    with pytest.raises(Forbidden):
        assign_customer(s, c.id, sales_id=users[sales], agent_id=users[agent] if agent else None, user=actor(who))
    assert get_assignment_history(s, c.id) == []


def test_owner_reassigns_to_another_sales_rep(s, users, actor, make_customer):
    c = make_customer(sales="s1", agent="a1", progress="NORMAL_PROGRESS")
    result = assign_customer(s, c.id, sales_id=users["s2"], agent_id=users["a2"], user=actor("s1"), remark="territory")

    assert result.assignment.operation_type is OperationType.ASSIGN
    assert result.assignment.from_related_sales_id == users["s1"]
    assert result.assignment.from_related_agent_id == users["a1"]
    assert result.assignment.remark == "territory"
    assert result.customer.progress is Progress.NORMAL_PROGRESS
    assert result.progress is None


def test_invalid_agent_linkage_changes_nothing(s, users, actor, make_customer):
    c3 = make_customer(sales="s3")
    before = _count(s, AssignmentHistory)
    with pytest.raises(InvalidLinkage) as ei:
        assign_customer(s, c3.id, sales_id=users["s3"], agent_id=users["a1"], user=actor("admin"))

    assert ei.value.target_sales_id == users["s3"]
    assert ei.value.agent_sales_id == users["s1"]
    s.expire_all()
    fresh = s.get(Customer, c3.id)
    assert (fresh.related_sales_id, fresh.related_agent_id) == (users["s3"], None)
    assert _count(s, AssignmentHistory) == before


def test_agent_swap_under_same_sales_rep_is_validated(s, users, actor, make_customer):
    c = make_customer(sales="s1", agent="a1")
    result = assign_customer(s, c.id, sales_id=users["s1"], agent_id=users["a_s1b"], user=actor("s1"))
    assert result.customer.related_agent_id == users["a_s1b"]
    with pytest.raises(InvalidLinkage):
        assign_customer(s, c.id, sales_id=users["s1"], agent_id=users["a2"], user=actor("s1"))


def test_clearing_the_agent_is_always_allowed(s, users, actor, make_customer):
    c = make_customer(sales="s1", agent="a1")
    result = assign_customer(s, c.id, sales_id=users["s1"], agent_id=None, user=actor("s1"))
    assert result.customer.related_agent_id is None
    assert result.assignment.operation_type is OperationType.ASSIGN
    assert result.assignment.to_related_agent_id is None


def test_assigning_to_current_owner_is_a_no_op(s, users, actor, make_customer):
    c = make_customer(sales="s1")
    before = _count(s, AssignmentHistory)
    result = assign_customer(s, c.id, sales_id=users["s1"], user=actor("s1"))
    assert result.assignment is None
    assert _count(s, AssignmentHistory) == before


def test_assign_unknown_targets(s, users, actor, make_customer):
    c = make_customer(sales="s1")
    with pytest.raises(NotFound):
        assign_customer(s, 9999, sales_id=users["s1"], user=actor("admin"))
    with pytest.raises(NotFound):
        assign_customer(s, c.id, sales_id=9999, user=actor("admin"))
    with pytest.raises(NotFound):
        # an agent id is not a sales rep
        assign_customer(s, c.id, sales_id=users["a1"], user=actor("admin"))


def test_assign_requires_a_sales_rep(s, actor, make_customer):
    c = make_customer(sales="s1")
    with pytest.raises(ValidationError):
        assign_customer(s, c.id, sales_id=None, user=actor("admin"))


def test_idempotency_key_replays_the_original_row(s, users, actor, make_customer):
    c = make_customer()
    first = assign_customer(s, c.id, sales_id=users["s1"], user=actor("s1"), request_key="req-1")
    second = assign_customer(s, c.id, sales_id=users["s1"], user=actor("s1"), request_key="req-1")

    assert second.replayed is True
    assert second.assignment.id == first.assignment.id
    assert _count(s, AssignmentHistory, customer_id=c.id) == 1


def test_idempotency_key_cannot_be_reused_for_another_customer(s, users, actor, make_customer):
    c1 = make_customer()
    c2 = make_customer()
    assign_customer(s, c1.id, sales_id=users["s1"], user=actor("s1"), request_key="req-2")
    with pytest.raises(ValidationError):
        assign_customer(s, c2.id, sales_id=users["s1"], user=actor("s1"), request_key="req-2")


def test_expected_owner_mismatch_is_a_conflict(s, users, actor, make_customer):
    c = make_customer(sales="s2")
    with pytest.raises(ConcurrencyConflict):
        assign_customer(s, c.id, sales_id=users["s1"], user=actor("admin"), expected_sales_id=None)
    assert s.get(Customer, c.id).related_sales_id == users["s2"]


def test_concurrent_claim_race_produces_one_history_row(app, s, users, actor, make_customer):
    c5 = make_customer()
    other = new_session(app)
    try:
        # The second caller read the customer while it was still pooled.
        stale = other.get(Customer, c5.id)
        assert stale.is_in_public_pool

        assign_customer(s, c5.id, sales_id=users["s1"], user=actor("s1"))

        s2 = other.get(User, users["s2"])
        with pytest.raises(ConcurrencyConflict):
            assign_customer(other, c5.id, sales_id=users["s2"], user=s2)
    finally:
        other.close()

    s.expire_all()
    assert s.get(Customer, c5.id).related_sales_id == users["s1"]
    assert _count(s, AssignmentHistory, customer_id=c5.id) == 1


# --- move to public pool --------------------------------------------------


def test_move_to_pool_snapshot(s, users, actor, make_customer):
    c2 = make_customer(sales="s2", agent="a2", progress="NORMAL_PROGRESS")
    result = move_to_public_pool(s, c2.id, user=actor("admin"))

    c = result.customer
    assert c.previous_owner_name == "sales-2"
    assert c.previous_owner_id == users["s2"]
    assert c.previous_related_agent_name == "agent-2"
    assert c.related_sales_id is None and c.related_agent_id is None
    assert c.progress is Progress.PUBLIC_POOL
    assert result.assignment.operation_type is OperationType.MOVE_TO_PUBLIC_POOL
    assert (result.progress.from_progress, result.progress.to_progress) == ("NORMAL_PROGRESS", "PUBLIC_POOL")
    _assert_invariants(c)


def test_owner_can_release_to_pool_but_not_others(s, actor, make_customer):
    c = make_customer(sales="s1")
    with pytest.raises(Forbidden):
        move_to_public_pool(s, c.id, user=actor("s2"))
    with pytest.raises(Forbidden):
        move_to_public_pool(s, c.id, user=actor("a1"))
    move_to_public_pool(s, c.id, user=actor("s1"))


def test_move_twice_is_already_pooled(s, actor, make_customer):
    c = make_customer(sales="s1")
    move_to_public_pool(s, c.id, user=actor("admin"))
    with pytest.raises(AlreadyPooled):
        move_to_public_pool(s, c.id, user=actor("admin"))


def test_pooled_customer_release_is_forbidden_before_already_pooled(s, actor, make_customer):
    c = make_customer()
    with pytest.raises(Forbidden):
        move_to_public_pool(s, c.id, user=actor("s1"))
    with pytest.raises(AlreadyPooled):
        move_to_public_pool(s, c.id, user=actor("admin"))


def test_pool_snapshot_records_the_released_owner_role(s, users, actor, make_customer):
    c = make_customer(sales="s2")
    result = move_to_public_pool(s, c.id, user=actor("s2"), remark=5)

    assert result.customer.previous_owner_type == actor("s2").role.value == Role.FACTORY_SALES.value
    assert result.customer.owner_type == Role.SUPER_ADMIN.value
    assert result.assignment.remark == "5"
    assert result.progress.remark == "5"


def test_move_unknown_customer(s, actor):
    with pytest.raises(NotFound):
        move_to_public_pool(s, 4242, user=actor("admin"))


def test_claim_after_pool_entry_resets_progress(s, users, actor, make_customer):
    c = make_customer(sales="s1", progress="NORMAL_PROGRESS")
    move_to_public_pool(s, c.id, user=actor("s1"))
    result = assign_customer(s, c.id, sales_id=users["s2"], user=actor("s2"))

    assert result.assignment.operation_type is OperationType.CLAIM
    assert result.customer.progress is Progress.INITIAL_CONTACT
    assert (result.progress.from_progress, result.progress.to_progress) == ("PUBLIC_POOL", "INITIAL_CONTACT")


# --- progress -------------------------------------------------------------


@pytest.mark.parametrize("who", ["admin", "s1", "a1", "s2", "inv"])
def test_public_pool_progress_is_never_settable(s, actor, make_customer, who):
    c = make_customer(sales="s1", agent="a1")
    with pytest.raises(InvalidProgressValue):
        change_progress(s, c.id, "PUBLIC_POOL", user=actor(who))


def test_owning_agent_changes_progress(s, actor, make_customer):
    c = make_customer(sales="s1", agent="a1")
    result = change_progress(s, c.id, "NORMAL_PROGRESS", user=actor("a1"), remark="sample shipped")
    assert result.customer.progress is Progress.NORMAL_PROGRESS
    assert result.progress.remark == "sample shipped"
    assert [r.to_progress for r in get_progress_history(s, c.id)] == ["INITIAL_CONTACT", "NORMAL_PROGRESS"]


def test_progress_change_forbidden_for_non_owner(s, actor, make_customer):
    c = make_customer(sales="s1", agent="a1")
    with pytest.raises(Forbidden):
        change_progress(s, c.id, "NORMAL_PROGRESS", user=actor("a2"))


def test_progress_no_op_writes_nothing(s, actor, make_customer):
    c = make_customer(sales="s1")
    result = change_progress(s, c.id, "INITIAL_CONTACT", user=actor("s1"))
    assert result.progress is None
    assert len(get_progress_history(s, c.id)) == 1


# --- disable --------------------------------------------------------------


def test_disabled_customer_is_frozen_until_reassigned(s, users, actor, make_customer):
    c = make_customer(sales="s1", agent="a1", progress="NORMAL_PROGRESS")
    disable_customer(s, c.id, user=actor("admin"), remark="auto-transfer pending")

    for op in (
        lambda: change_progress(s, c.id, "INITIAL_CONTACT", user=actor("s1")),
        lambda: assign_customer(s, c.id, sales_id=users["s1"], user=actor("s1")),
        lambda: move_to_public_pool(s, c.id, user=actor("s1")),
    ):
        with pytest.raises(Forbidden):
            op()

    view = get_customer(s, c.id, user=actor("s1"))
    assert view.allowed_actions == frozenset({Action.VIEW})

    result = assign_customer(s, c.id, sales_id=users["s2"], user=actor("admin"))
    assert result.customer.progress is Progress.INITIAL_CONTACT
    assert result.customer.related_agent_id is None
    assert (result.progress.from_progress, result.progress.to_progress) == ("DISABLED", "INITIAL_CONTACT")


def test_admin_can_lift_disabled_through_progress(s, actor, make_customer):
    c = make_customer(sales="s1")
    disable_customer(s, c.id, user=actor("admin"))
    result = change_progress(s, c.id, "NORMAL_PROGRESS", user=actor("admin"))
    assert result.customer.progress is Progress.NORMAL_PROGRESS


def test_only_admin_disables(s, actor, make_customer):
    c = make_customer(sales="s1")
    with pytest.raises(Forbidden):
        disable_customer(s, c.id, user=actor("s1"))


def test_frozen_state_is_not_revealed_to_unauthorized_callers(s, users, actor, make_customer):
    c = make_customer(sales="s1", agent="a1")
    disable_customer(s, c.id, user=actor("admin"))
    generic = Forbidden().message

    for op in (
        lambda: change_progress(s, c.id, "NORMAL_PROGRESS", user=actor("s2")),
        lambda: assign_customer(s, c.id, sales_id=users["s2"], user=actor("s2")),
        lambda: move_to_public_pool(s, c.id, user=actor("a2")),
        lambda: update_customer(s, c.id, {"address": "Dock 1"}, user=actor("a2")),
    ):
        with pytest.raises(Forbidden) as ei:
            op()
        assert ei.value.message == generic

    with pytest.raises(Forbidden) as ei:
        change_progress(s, c.id, "NORMAL_PROGRESS", user=actor("s1"))
    assert ei.value.message != generic


# --- delete / read --------------------------------------------------------


def test_delete_keeps_history(s, users, actor, make_customer):
    c = make_customer(sales="s1")
    cid = c.id
    with pytest.raises(Forbidden):
        delete_customer(s, cid, user=actor("s1"))

    delete_customer(s, cid, user=actor("admin"), reason="duplicate")

    assert s.get(Customer, cid) is None
    assert [r.operation_type for r in get_assignment_history(s, cid)] == [OperationType.CREATE_AND_ASSIGN]
    assert _count(s, AuditEvent, action="customer.delete") == 1
    with pytest.raises(NotFound):
        get_customer(s, cid, user=actor("admin"))


def test_numeric_delete_reason_is_kept_as_text(s, actor, make_customer):
    c = make_customer(sales="s1")
    delete_customer(s, c.id, user=actor("admin"), reason=404)
    ev = s.execute(select(AuditEvent).where(AuditEvent.action == "customer.delete")).scalar_one()
    assert ev.reason == "404"


def test_get_customer_reports_allowed_actions(s, actor, make_customer):
    c = make_customer(sales="s1", agent="a1")
    assert get_customer(s, c.id, user=actor("a1")).allowed_actions == frozenset({Action.VIEW, Action.EDIT})
    assert Action.DELETE in get_customer(s, c.id, user=actor("admin")).allowed_actions


def test_unrelated_agent_is_forbidden_everywhere_but_reads(s, users, actor, make_customer):
    c4 = make_customer(sales="s1", agent="a1")
    a2 = actor("a2")
    for op in (
        lambda: assign_customer(s, c4.id, sales_id=users["s2"], agent_id=users["a2"], user=a2),
        lambda: move_to_public_pool(s, c4.id, user=a2),
        lambda: change_progress(s, c4.id, "NORMAL_PROGRESS", user=a2),
        lambda: disable_customer(s, c4.id, user=a2),
        lambda: delete_customer(s, c4.id, user=a2),
    ):
        with pytest.raises(Forbidden):
            op()

    assert get_customer(s, c4.id, user=a2).customer.id == c4.id
    assert len(get_assignment_history(s, c4.id)) == 1
    assert len(get_progress_history(s, c4.id)) == 1


def test_list_public_pool_customers_filters(s, actor, make_customer):
    pooled_a = make_customer(name="Pooled Alpha", nature="LISTED", importance="A", application_field="adhesives")
    pooled_b = make_customer(name="Pooled Beta", nature="SME", importance="B", contact_person="Jane Roe")
    make_customer(sales="s1", name="Owned Gamma", nature="LISTED")

    assert {c.id for c in list_public_pool_customers(s)} == {pooled_a.id, pooled_b.id}
    assert [c.id for c in list_public_pool_customers(s, nature="listed")] == [pooled_a.id]
    assert [c.id for c in list_public_pool_customers(s, importance="B")] == [pooled_b.id]
    assert [c.id for c in list_public_pool_customers(s, keyword="roe")] == [pooled_b.id]
    assert [c.id for c in list_public_pool_customers(s, application_field="adhes")] == [pooled_a.id]
    with pytest.raises(ValidationError):
        list_public_pool_customers(s, nature="ALIEN")


# --- edit -----------------------------------------------------------------


def test_owning_agent_edits_contact_fields(s, actor, make_customer):
    c = make_customer(sales="s1", agent="a1")
    result = update_customer(
        s,
        c.id,
        {"contact_phone": 13900139000, "address": " 1 Harbour Rd ", "importance": "b"},
        user=actor("a1"),
        reason="new office",
    )

    assert result.customer.contact_phone == "13900139000"
    assert result.customer.address == "1 Harbour Rd"
    assert result.customer.importance.value == "B"
    assert result.assignment is None and result.progress is None

    ev = s.execute(select(AuditEvent).where(AuditEvent.action == "customer.update")).scalar_one()
    assert ev.reason == "new office"
    meta = json.loads(ev.metadata_json)
    assert set(meta["fields_changed"]) == {"contact_phone", "address", "importance"}
    assert meta["before"]["importance"] == "A" and meta["after"]["importance"] == "B"


def test_edit_cannot_select_public_pool(s, actor, make_customer):
    c = make_customer(sales="s1", progress="NORMAL_PROGRESS")
    with pytest.raises(InvalidProgressValue):
        update_customer(s, c.id, {"progress": "PUBLIC_POOL", "address": "Elsewhere"}, user=actor("s1"))

    s.expire_all()
    fresh = s.get(Customer, c.id)
    assert fresh.progress is Progress.NORMAL_PROGRESS
    assert fresh.address is None
    assert fresh.related_sales_id is not None
    assert len(get_progress_history(s, c.id)) == 1


def test_edit_progress_writes_progress_history(s, actor, make_customer):
    c = make_customer(sales="s1")
    result = update_customer(s, c.id, {"progress": "normal_progress"}, user=actor("s1"), reason="quote sent")

    assert result.customer.progress is Progress.NORMAL_PROGRESS
    assert (result.progress.from_progress, result.progress.to_progress) == ("INITIAL_CONTACT", "NORMAL_PROGRESS")
    assert result.progress.remark == "quote sent"
    assert _count(s, AuditEvent, action="customer.update") == 0


def test_edit_requires_edit_rights(s, actor, make_customer):
    c = make_customer(sales="s1", agent="a1")
    for who in ("s2", "a2", "inv"):
        with pytest.raises(Forbidden):
            update_customer(s, c.id, {"address": "Dock 2"}, user=actor(who))

    pooled = make_customer()
    with pytest.raises(Forbidden):
        update_customer(s, pooled.id, {"address": "Dock 2"}, user=actor("s1"))


def test_edit_ownership_goes_through_assignment(s, users, actor, make_customer):
    c = make_customer(sales="s1", agent="a1")
    result = update_customer(
        s,
        c.id,
        {"related_sales_id": users["s2"], "related_agent_id": users["a2"], "address": "Dock 4"},
        user=actor("s1"),
        reason="territory change",
    )

    assert result.assignment.operation_type is OperationType.ASSIGN
    assert result.assignment.remark == "territory change"
    assert (result.customer.related_sales_id, result.customer.related_agent_id) == (users["s2"], users["a2"])
    assert result.customer.address == "Dock 4"
    _assert_invariants(result.customer)


def test_edit_with_foreign_agent_rolls_back_every_field(s, users, actor, make_customer):
    c = make_customer(sales="s1")
    with pytest.raises(InvalidLinkage):
        update_customer(s, c.id, {"related_agent_id": users["a2"], "address": "Dock 9"}, user=actor("s1"))

    s.expire_all()
    fresh = s.get(Customer, c.id)
    assert fresh.related_agent_id is None
    assert fresh.address is None
    assert len(get_assignment_history(s, c.id)) == 1


def test_agent_cannot_reassign_through_edit(s, users, actor, make_customer):
    c = make_customer(sales="s1", agent="a1")
    with pytest.raises(Forbidden):
        update_customer(s, c.id, {"related_sales_id": users["s2"]}, user=actor("a1"))


def test_edit_cannot_release_to_pool(s, actor, make_customer):
    c = make_customer(sales="s1")
    with pytest.raises(ValidationError):
        update_customer(s, c.id, {"related_sales_id": None}, user=actor("admin"))
    assert get_customer(s, c.id, user=actor("admin")).customer.related_sales_id is not None


def test_edit_name_is_unique_among_other_customers(s, actor, make_customer):
    a = make_customer(sales="s1")
    b = make_customer(sales="s1")

    update_customer(s, a.id, {"name": a.name}, user=actor("s1"))
    with pytest.raises(ValidationError):
        update_customer(s, a.id, {"name": b.name}, user=actor("s1"))


def test_edit_rejects_structured_text(s, actor, make_customer):
    c = make_customer(sales="s1")
    with pytest.raises(ValidationError):
        update_customer(s, c.id, {"contact_phone": ["138", "001"]}, user=actor("s1"))


# --- listing --------------------------------------------------------------


def test_list_customers_is_scoped_by_role(s, actor, make_customer):
    mine = make_customer(sales="s1", agent="a1")
    mine_direct = make_customer(sales="s1")
    theirs = make_customer(sales="s2", agent="a2")
    pooled = make_customer()

    def ids(**kw):
        rows, total = list_customers(s, **kw)
        assert total == len(rows)
        return {c.id for c in rows}

    assert ids(user=actor("admin")) == {mine.id, mine_direct.id, theirs.id, pooled.id}
    assert ids(user=actor("s1")) == {mine.id, mine_direct.id}
    assert ids(user=actor("a1")) == {mine.id}
    assert ids(user=actor("a2")) == {theirs.id}
    assert ids(user=actor("s1"), in_public_pool=True) == {pooled.id}
    assert ids(user=actor("a2"), in_public_pool=True) == {pooled.id}
    assert ids(user=actor("admin"), in_public_pool=False) == {mine.id, mine_direct.id, theirs.id}
    with pytest.raises(Forbidden):
        list_customers(s, user=actor("inv"))


def test_list_customers_filters_and_pages(s, actor, make_customer):
    for i in range(3):
        make_customer(sales="s1", name=f"Kappa {i}")
    hot = make_customer(sales="s1", name="Lambda", progress="NORMAL_PROGRESS", importance="C")

    rows, total = list_customers(s, user=actor("s1"), progress="normal_progress")
    assert [c.id for c in rows] == [hot.id] and total == 1
    rows, _ = list_customers(s, user=actor("s1"), importance="C")
    assert [c.id for c in rows] == [hot.id]

    rows, total = list_customers(s, user=actor("s1"), keyword="kappa", page=2, per_page=2)
    assert total == 3
    assert len(rows) == 1

    with pytest.raises(ValidationError):
        list_customers(s, user=actor("s1"), progress="WON")


# --- atomic unit ----------------------------------------------------------


def test_write_conflict_is_retried_once(s):
    calls = []

    def apply(attempt):
        calls.append(attempt)
        if attempt == 0:
            raise StaleDataError("stale")
        return "ok"

    assert _run_atomic(s, 1, apply) == "ok"
    assert calls == [0, 1]


def test_persistent_write_conflict_surfaces_as_conflict(s):
    def apply(attempt):
        raise StaleDataError("stale")

    with pytest.raises(ConcurrencyConflict):
        _run_atomic(s, 1, apply)


def test_last_update_time_moves_on_every_transition(s, users, actor, make_customer):
    c = make_customer(sales="s1")
    before = c.last_update_time
    result = change_progress(s, c.id, "NORMAL_PROGRESS", user=actor("s1"))
    assert result.customer.last_update_time >= before
    assert isinstance(result.customer.last_update_time, datetime)
