import itertools

import pytest

from app.crm import create_app
from app.crm.db import new_session, session_scope
from app.crm.models import Base, User
from app.crm.rbac import Role
from app.crm.modules.customer_lifecycle.service import create_customer


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    for k in ("AUTO_TRANSFER_ENABLED", "AUTO_TRANSFER_DAYS_WITHOUT_PROGRESS", "AUTO_TRANSFER_TARGET_SALES_ID", "LOG_LEVEL"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    app.config["TESTING"] = True
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


@pytest.fixture()
def users(app) -> dict[str, int]:
    """
    admin                 SuperAdmin
    s1, s2, s3            factory sales reps
    a1 -> s1, a2 -> s2    agents linked to their sales rep
    a_s1b -> s1           a second agent of s1 (unrelated to s2/s3)
    inv                   inventory manager
    """
    with session_scope(app) as s:
        admin = User(name="admin", role=Role.SUPER_ADMIN)
        s1 = User(name="sales-1", role=Role.FACTORY_SALES)
        s2 = User(name="sales-2", role=Role.FACTORY_SALES)
        s3 = User(name="sales-3", role=Role.FACTORY_SALES)
        inv = User(name="inventory", role=Role.INVENTORY_MANAGER)
        s.add_all([admin, s1, s2, s3, inv])
        s.flush()
        a1 = User(name="agent-1", role=Role.AGENT, related_sales_id=s1.id)
        a2 = User(name="agent-2", role=Role.AGENT, related_sales_id=s2.id)
        a_s1b = User(name="agent-1b", role=Role.AGENT, related_sales_id=s1.id)
        s.add_all([a1, a2, a_s1b])
        s.flush()
        ids = {
            "admin": admin.id,
            "s1": s1.id,
            "s2": s2.id,
            "s3": s3.id,
            "inv": inv.id,
            "a1": a1.id,
            "a2": a2.id,
            "a_s1b": a_s1b.id,
        }
    return ids


@pytest.fixture()
def s(app):
    sess = new_session(app)
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def actor(s, users):
    def _actor(key: str) -> User:
        return s.get(User, users[key])

    return _actor


@pytest.fixture()
def make_customer(s, users, actor):
    """Creates a customer as admin; sales/agent are user keys from the users fixture."""
    counter = itertools.count(1)

    def _make(*, sales: str | None = None, agent: str | None = None, **fields):
        payload = {
            "name": f"Customer {next(counter)}",
            "nature": "SME",
            "importance": "A",
            "application_field": "coatings",
            "related_sales_id": users[sales] if sales else None,
            "related_agent_id": users[agent] if agent else None,
        }
        payload.update(fields)
        return create_customer(s, payload, user=actor("admin")).customer

    return _make
