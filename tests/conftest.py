"""
Shared pytest fixtures for the Performance Indicator Platform test suite.

Provides:
    - app: Flask application (session-scoped) with fake collaborators installed
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - mailer / sink / storage: the recording fakes, reset per test
    - users: superadmin, admin, two members
    - categories: a main → level-2 → indicator leaf chain
    - make_indicator: factory creating an indicator through the lifecycle
"""

import threading
from datetime import date

import pytest

from app import create_app
from app.core.exceptions import StorageError
from app.models import db as _db
from app.models.auth import User
from app.models.category import Category
from app.services.blob_storage import StoredBlob, guess_format, guess_resource_kind
from app.services.permission import Actor


# ── Fake collaborators ───────────────────────────────────────────────────


class RecordingMailer:
    """Records every templated send; ``fail`` makes each call raise."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def reset(self):
        self.sent.clear()
        self.fail = False

    def send_from_template(self, *, to_email, template_name, context, to_name=None,
                           kind="system", indicator_id=None):
        if self.fail:
            raise ConnectionError("SMTP unavailable")
        self.sent.append({
            "to": to_email,
            "template": template_name,
            "context": dict(context),
            "kind": kind,
            "indicator_id": indicator_id,
        })

    def to(self, email):
        return [m for m in self.sent if m["to"] == email]


class RecordingSink:
    """Records notify / emit_to_role calls."""

    def __init__(self):
        self.notifications = []
        self.broadcasts = []
        self.fail = False

    def reset(self):
        self.notifications.clear()
        self.broadcasts.clear()
        self.fail = False

    def notify(self, *, target_user_id, title, message="", kind="system", metadata=None):
        if self.fail:
            raise RuntimeError("notification backend down")
        self.notifications.append({
            "target": target_user_id,
            "title": title,
            "message": message,
            "kind": kind,
            "metadata": metadata or {},
        })

    def emit_to_role(self, role, payload):
        self.broadcasts.append({"role": getattr(role, "value", role), **payload})

    def targets(self, kind=None):
        return [n["target"] for n in self.notifications if kind is None or n["kind"] == kind]


class InMemoryBlobStorage:
    """Thread-safe in-memory store.  File names in ``fail_names`` fail to upload."""

    def __init__(self):
        self._lock = threading.Lock()
        self.objects = {}
        self.deleted = []
        self.fail_names = set()
        self.fail_delete = False
        self._seq = 0

    def reset(self):
        with self._lock:
            self.objects.clear()
            self.deleted.clear()
            self.fail_names = set()
            self.fail_delete = False
            self._seq = 0

    def store(self, data, folder, name):
        if name in self.fail_names:
            raise OSError(f"upload of {name} rejected")
        with self._lock:
            self._seq += 1
            public_id = f"{folder}/{self._seq}-{name}"
            self.objects[public_id] = data
        return StoredBlob(
            public_id=public_id,
            resource_kind=guess_resource_kind(name),
            access_tier="authenticated",
            format=guess_format(name),
            secure_url=f"https://files.test/{public_id}",
        )

    def fetch(self, public_id, resource_kind="raw"):
        with self._lock:
            if public_id not in self.objects:
                raise StorageError(f"Could not read '{public_id}'", details={"public_id": public_id})
            return self.objects[public_id]

    def delete(self, public_id, resource_kind="raw"):
        if self.fail_delete:
            raise OSError("storage unreachable")
        with self._lock:
            self.objects.pop(public_id, None)
            self.deleted.append(public_id)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    application.extensions["mailer"] = RecordingMailer()
    application.extensions["notification_sink"] = RecordingSink()
    application.extensions["blob_storage"] = InMemoryBlobStorage()
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    for key in ("mailer", "notification_sink", "blob_storage"):
        app.extensions[key].reset()
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def mailer(app):
    return app.extensions["mailer"]


@pytest.fixture()
def sink(app):
    return app.extensions["notification_sink"]


@pytest.fixture()
def storage(app):
    return app.extensions["blob_storage"]


# ── Domain fixtures ──────────────────────────────────────────────────────


def _make_user(email, name, role):
    u = User(email=email, name=name, role=role)
    _db.session.add(u)
    _db.session.flush()
    return u


@pytest.fixture()
def users():
    """Return a dict of committed users keyed by their part in the workflow."""
    created = {
        "top": _make_user("registrar@court.test", "Registrar", "SuperAdmin"),
        "admin": _make_user("admin@court.test", "Admin", "admin"),
        "alice": _make_user("alice@court.test", "Alice", "member"),
        "bob": _make_user("bob@court.test", "Bob", "member"),
    }
    _db.session.commit()
    return created


@pytest.fixture()
def actors(users):
    return {key: Actor.from_user(user) for key, user in users.items()}


@pytest.fixture()
def categories():
    main = Category(code="C1", title="Access to Justice", level=1)
    _db.session.add(main)
    _db.session.flush()
    level2 = Category(code="C1.1", title="Case Management", level=2, parent_id=main.id)
    _db.session.add(level2)
    _db.session.flush()
    leaf = Category(code="C1.1.1", title="Clear case backlog", level=3, parent_id=level2.id)
    _db.session.add(leaf)
    _db.session.commit()
    return {"main": main, "level2": level2, "leaf": leaf}


@pytest.fixture()
def indicator_payload(categories, users):
    def _payload(**overrides):
        data = {
            "category_id": categories["main"].id,
            "level2_category_id": categories["level2"].id,
            "indicator_category_id": categories["leaf"].id,
            "unit_of_measure": "cases",
            "assigned_to": users["alice"].id,
            "start_date": date(2030, 1, 1).isoformat(),
            "due_date": date(2030, 6, 30).isoformat(),
        }
        data.update(overrides)
        return data
    return _payload


@pytest.fixture()
def make_indicator(indicator_payload, actors):
    from app.services import indicator_lifecycle

    def _make(**overrides):
        return indicator_lifecycle.create(indicator_payload(**overrides), actors["top"])
    return _make
