from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from app.backoffice.errors import NotFoundError
from app.backoffice.models import Base
from app.backoffice.modules.scheduled_lists.mis_source import Delivery, ItemSnapshot


def enable_sqlite_savepoints(engine) -> None:
    """pysqlite only handles SAVEPOINT correctly when SQLAlchemy emits BEGIN itself."""

    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest.fixture()
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path/'lists.db'}", future=True)
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False, future=True)
    yield sm
    engine.dispose()


@pytest.fixture()
def session(session_factory):
    s = session_factory()
    yield s
    s.close()


class FakeSource:
    """In-memory MIS stand-in keyed by item_key; keys in `failing` raise."""

    def __init__(self, snapshots=None, failing=()):
        self.snapshots = dict(snapshots or {})
        self.failing = set(failing)
        self.calls: list[str] = []

    def fetch(self, item_key):
        key = str(item_key)
        self.calls.append(key)
        if key in self.failing:
            raise ConnectionError(f"MIS unavailable for {key}")
        if key not in self.snapshots:
            raise NotFoundError(f"MIS item {key} not found")
        return self.snapshots[key]

    def search_items(self, q, limit=10):
        return [
            {"item_key": k, "article_name": snap.article_name, "article_number": snap.article_number}
            for k, snap in self.snapshots.items()
            if q.lower() in (snap.article_name or "").lower()
        ][:limit]


def make_snapshot(item_key="1", *, name="Widget", quantity=10, periods=None):
    deliveries = {
        period: Delivery(period=period, quantity=Decimal(str(qty)), cargo_numbers=[f"C{item_key}{i}"])
        for i, (period, qty) in enumerate((periods or {}).items())
    }
    return ItemSnapshot(
        item_key=str(item_key),
        article_name=name,
        article_number=f"A-{item_key}",
        item_no_de=None,
        image_url=None,
        default_quantity=Decimal(str(quantity)) if quantity is not None else None,
        deliveries=deliveries,
        unassigned_quantity=Decimal("0"),
    )


@pytest.fixture()
def app(tmp_path, monkeypatch):
    from werkzeug.security import generate_password_hash

    from app.backoffice import create_app
    from app.backoffice.constants import LIST_PERMISSIONS
    from app.backoffice.db import session_scope
    from app.backoffice.models import Permission, Role, User
    from app.backoffice.modules.customers.service import create_customer
    from app.backoffice.modules.scheduled_lists.scheduler import ListRefreshScheduler

    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("LIST_REFRESH_ENABLED", "0")
    monkeypatch.delenv("MIS_DATABASE_URL", raising=False)

    app = create_app()
    app.config["TESTING"] = True

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = {key: Permission(key=key, name=name) for key, name in LIST_PERMISSIONS}
        admin_role = Role(key="admin", name="Administrator")
        admin_role.permissions.extend(perms.values())
        viewer_role = Role(key="viewer", name="Viewer")
        viewer_role.permissions.append(perms["lists.view"])
        admin = User(email="admin@example.com", name="Ada Admin", password_hash=generate_password_hash("pw"), is_active=True)
        admin.roles.append(admin_role)
        viewer = User(email="viewer@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        viewer.roles.append(viewer_role)
        s.add_all([*perms.values(), admin_role, viewer_role, admin, viewer])
        create_customer(s, company_name="Acme Corp", email="buyer@acme.test", password="pw")
        create_customer(s, company_name="Globex", email="buyer@globex.test", password="pw")

    source = FakeSource(
        {
            "1": make_snapshot("1", name="Widget", periods={"2024-03": 12}),
            "2": make_snapshot("2", name="Bolt"),
        }
    )
    app.extensions["mis_source"] = source
    app.extensions["list_refresh_scheduler"] = ListRefreshScheduler(app.extensions["sqlalchemy_sessionmaker"], source)
    yield app
    app.extensions["list_refresh_scheduler"].stop()
    engine.dispose()


@pytest.fixture()
def client(app):
    return app.test_client()
