def test_health_ok(app):
    client = app.test_client()
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert r.json["db"] is True


def test_healthz_skips_db(app):
    r = app.test_client().get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_unknown_route_is_json_404(app):
    r = app.test_client().get("/no-such-page")
    assert r.status_code == 404
    assert r.json["code"] == "not_found"


def test_request_id_is_echoed_into_audit(app, users):
    from sqlalchemy import select

    from app.crm.db import session_scope
    from app.crm.models import AuditEvent

    client = app.test_client()
    with client.session_transaction() as sess:
        sess["user_id"] = users["admin"]
    r = client.post(
        "/api/customers",
        json={"name": "Audit Probe", "nature": "SME", "importance": "C"},
        headers={"X-Request-ID": "req-abc"},
    )
    assert r.status_code == 201

    with session_scope(app) as s:
        ev = s.execute(select(AuditEvent).where(AuditEvent.action == "customer.create")).scalar_one()
        assert ev.request_id == "req-abc"
        assert ev.actor_user_name == "admin"
