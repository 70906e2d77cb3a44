"""
Pytest configuration and fixtures

Every test gets a fresh in-memory SQLite schema built from the models, so
nothing leaks between tests. Tasks are called directly (not through a broker)
with `session_scope` pointed at the test session.
"""
import os
import sys
from contextlib import contextmanager

# Must be set before core.config / core.database are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ["REDIS_URL"] = "redis://127.0.0.1:1/0"

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest  # noqa: E402

from core.database import Base, SessionLocal, engine  # noqa: E402
import models  # noqa: E402,F401
from services.connectors import set_default_registry  # noqa: E402
from services.destinations import create_destination, update_destination  # noqa: E402
from services.profiles import create_profile, set_profile_property_values  # noqa: E402
from services.properties import create_property, make_property_ready  # noqa: E402
from services.sources import bootstrap_unique_property, create_app, create_source, make_app_ready, update_source  # noqa: E402
from fixtures.connectors import build_registry  # noqa: E402


@pytest.fixture(scope="function")
def db_session():
    """Fresh schema per test; dropped afterwards."""
    Base.metadata.create_all(engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)


@pytest.fixture
def registry():
    """Registry with the fake connectors; also installed as the process default."""
    reg = build_registry()
    set_default_registry(reg)
    yield reg
    set_default_registry(None)


@pytest.fixture
def fake_import(registry):
    return registry.get_connection("fake-import")


@pytest.fixture
def fake_export(registry):
    return registry.get_connection("fake-export")


@pytest.fixture
def app(db_session, registry):
    instance = create_app(db_session, registry, "fake", name="warehouse", options={"host": "db.internal"})
    return make_app_ready(db_session, registry, instance)


@pytest.fixture
def source(db_session, registry, app):
    """A ready import Source whose identity column `email` maps to the unique `email` property."""
    instance = create_source(db_session, registry, app.id, "fake-import", name="users", options={"table": "users"})
    bootstrap_unique_property(db_session, registry, instance, key="email", type="email", mapped_column="email")
    return update_source(db_session, registry, instance, state="ready")


@pytest.fixture
def make_property(db_session, source):
    def _make(key, type="string", is_array=False, options=None, filters=None, unique=False):
        prop = create_property(
            db_session,
            source,
            key=key,
            type=type,
            is_array=is_array,
            unique=unique,
            options=options if options is not None else {"column": key},
            filters=filters,
        )
        make_property_ready(db_session, prop)
        return prop

    return _make


@pytest.fixture
def make_profile(db_session, source):
    """A profile whose email is set; other properties are left pending."""
    def _make(email):
        profile = create_profile(db_session)
        email_prop = db_session.query(models.Property).filter(models.Property.key == "email").one()
        set_profile_property_values(db_session, profile, email_prop, [email])
        return profile

    return _make


@pytest.fixture
def task_session(monkeypatch, db_session):
    """Point every task module's session_scope at the test session."""
    @contextmanager
    def _scope():
        yield db_session
        db_session.flush()

    import tasks.export_tasks
    import tasks.group_tasks
    import tasks.import_tasks
    import tasks.profile_property_tasks
    import tasks.profile_tasks
    import tasks.retryable

    for module in (
        tasks.export_tasks,
        tasks.group_tasks,
        tasks.import_tasks,
        tasks.profile_property_tasks,
        tasks.profile_tasks,
        tasks.retryable,
    ):
        monkeypatch.setattr(module, "session_scope", _scope)
    return db_session


@pytest.fixture
def no_redis(monkeypatch):
    """App throttling without Redis: every slot is granted."""
    monkeypatch.setattr("services.app_throttle.get_redis_client", lambda: None)


@pytest.fixture
def make_destination(db_session, registry, app):
    """A ready destination tracking `group`; the group's remote name is its name upper-cased."""
    def _make(name="crm", type="fake-export", mapping=None, group=None, options=None):
        destination = create_destination(
            db_session,
            registry,
            app.id,
            type,
            name=name,
            options=options if options is not None else {"list": "customers"},
            mapping=mapping or {"Email": "email"},
            group_id=group.id if group else None,
            group_mappings={group.id: group.name.upper()} if group else {},
        )
        return update_destination(db_session, registry, destination, state="ready")

    return _make
