"""
Migration: task_sessions ledger table

Creates the ledger table for databases that predate it: string session ids,
the owning user, and the duration stored once when the session is closed.
"""


def upgrade(conn):
    conn.execute("""
        CREATE TABLE IF NOT EXISTS task_sessions (
            id VARCHAR PRIMARY KEY,
            task_id INTEGER NOT NULL REFERENCES tasks (id) ON DELETE CASCADE,
            user_id INTEGER NOT NULL REFERENCES users (id),
            start_time DATETIME NOT NULL,
            end_time DATETIME,
            duration_seconds INTEGER,
            created_at DATETIME,
            updated_at DATETIME
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS ix_task_sessions_task_id ON task_sessions (task_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS ix_task_sessions_user_id ON task_sessions (user_id)")
