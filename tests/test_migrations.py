import importlib.util
import sqlite3
from pathlib import Path

MIGRATIONS = Path(__file__).resolve().parent.parent / "migrations"


def load(name):
    spec = importlib.util.spec_from_file_location(name, MIGRATIONS / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def base_database():
    conn = sqlite3.connect(":memory:")
    conn.executescript("""
        CREATE TABLE users (id INTEGER PRIMARY KEY, username TEXT);
        CREATE TABLE tasks (id INTEGER PRIMARY KEY, title TEXT, status TEXT, created_by_id INTEGER);
        INSERT INTO users VALUES (1, 'alice');
        INSERT INTO tasks VALUES (1, 'Printer on fire', 'new', 1);
        INSERT INTO tasks VALUES (2, 'Monitor flickers', 'new', 1);
    """)
    return conn


def columns(conn, table):
    return [row[1] for row in conn.execute(f"PRAGMA table_info({table})")]


def test_creates_ledger_table():
    conn = base_database()
    load("20261001_create_task_sessions").upgrade(conn)

    assert columns(conn, "task_sessions") == [
        "id", "task_id", "user_id", "start_time", "end_time", "duration_seconds", "created_at", "updated_at"
    ]
    indexes = {row[1] for row in conn.execute("PRAGMA index_list(task_sessions)")}
    assert {"ix_task_sessions_task_id", "ix_task_sessions_user_id"} <= indexes


def test_upgrade_is_idempotent():
    conn = base_database()
    upgrade = load("20261001_create_task_sessions").upgrade
    upgrade(conn)
    conn.execute("INSERT INTO task_sessions (id, task_id, user_id, start_time) VALUES ('a1', 1, 1, '2026-10-01 09:00:00')")
    upgrade(conn)

    assert conn.execute("SELECT id FROM task_sessions").fetchall() == [("a1",)]


def test_total_duration_backfilled_from_closed_sessions():
    conn = base_database()
    load("20261001_create_task_sessions").upgrade(conn)
    conn.executescript("""
        INSERT INTO task_sessions (id, task_id, user_id, start_time, end_time, duration_seconds)
            VALUES ('a1', 1, 1, '2026-10-01 09:00:00', '2026-10-01 09:10:00', 600);
        INSERT INTO task_sessions (id, task_id, user_id, start_time, end_time, duration_seconds)
            VALUES ('a2', 1, 1, '2026-10-01 11:00:00', '2026-10-01 11:00:45', 45);
        INSERT INTO task_sessions (id, task_id, user_id, start_time) VALUES ('a3', 1, 1, '2026-10-01 12:00:00');
    """)

    load("20261002_add_task_total_duration").upgrade(conn)

    totals = conn.execute("SELECT id, total_duration_seconds FROM tasks ORDER BY id").fetchall()
    assert totals == [(1, 645), (2, 0)]
