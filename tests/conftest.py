"""Shared fixtures: a throwaway SQLite ledger, seeded users and a task, a fake clock."""

import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

# Module-level engine in avanti.database reads this on import
os.environ.setdefault("DATABASE_URL", f"sqlite:///{tempfile.mkdtemp(prefix='avanti-tests-')}/avanti.db")
os.environ.setdefault("SECRET_KEY", "test-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from avanti.auth import create_jwt, hash_password
from avanti.database import Base, get_db, make_engine
from avanti.models import Task, User
from avanti.sse import SSEManager
from avanti.timer.breadcrumbs import BreadcrumbStore
from avanti.timer.errors import PersistenceError, SyncFlushError
from avanti.timer.ledger import SqlSessionLedger
from avanti.timer.lifecycle import PageLifecycle

START = datetime(2026, 10, 1, 9, 0, 0, tzinfo=timezone.utc)

_password_hash = None


def password_hash():
    global _password_hash
    if _password_hash is None:
        _password_hash = hash_password("secret")
    return _password_hash


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FlakyLedger(SqlSessionLedger):
    """SQL ledger whose operations can be made to fail by name"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing = set()

    def _check(self, op):
        if op in self.failing:
            raise PersistenceError(f"{op} unavailable")

    async def insert(self, task_id, user_id, start_time):
        self._check("insert")
        return await super().insert(task_id, user_id, start_time)

    async def get(self, session_id):
        self._check("get")
        return await super().get(session_id)

    async def update(self, session_id, end_time, duration_seconds):
        self._check("update")
        return await super().update(session_id, end_time, duration_seconds)

    async def delete(self, session_id):
        self._check("delete")
        return await super().delete(session_id)

    async def query(self, task_id=None, user_id=None, status=None):
        self._check("query")
        return await super().query(task_id, user_id, status)

    async def total_duration(self, task_id):
        self._check("total_duration")
        return await super().total_duration(task_id)

    def flush_sync(self, session_id, task_id, end_time, duration_seconds):
        if "flush_sync" in self.failing:
            raise SyncFlushError("end-session timed out")
        return super().flush_sync(session_id, task_id, end_time, duration_seconds)


async def wait_until(predicate, timeout=2.0):
    """Poll until predicate() is true; background tasks need a few loop turns"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seed(db):
    agent = User(username="alice", hashed_password=password_hash(), full_name="Alice", role="agent")
    other = User(username="bob", hashed_password=password_hash(), full_name="Bob", role="agent")
    admin = User(username="root", hashed_password=password_hash(), full_name="Root", role="admin")
    db.add_all([agent, other, admin])
    db.commit()

    task = Task(title="Printer on fire", status="new", created_by_id=agent.id)
    second = Task(title="VPN drops every hour", status="in_progress", created_by_id=agent.id)
    done = Task(title="Reset password", status="completed", created_by_id=agent.id)
    db.add_all([task, second, done])
    db.commit()

    return SimpleNamespace(
        agent_id=agent.id,
        other_id=other.id,
        admin_id=admin.id,
        task_id=task.id,
        second_task_id=second.id,
        done_task_id=done.id,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def feed():
    return SSEManager()


@pytest.fixture
def ledger(session_factory, feed):
    return FlakyLedger(session_factory, feed=feed)


@pytest.fixture
def breadcrumbs(tmp_path):
    return BreadcrumbStore(tmp_path / "crumbs" / "current_task_session.json")


@pytest.fixture
def lifecycle():
    return PageLifecycle()


@pytest.fixture
def client(session_factory):
    from avanti.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def auth_headers(username):
    return {"Authorization": f"Bearer {create_jwt({'sub': username})}"}


@pytest.fixture
def alice():
    return auth_headers("alice")


@pytest.fixture
def bob():
    return auth_headers("bob")


@pytest.fixture
def root():
    return auth_headers("root")
