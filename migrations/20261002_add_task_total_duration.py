"""
Migration: cached task totals

Adds tasks.total_duration_seconds and fills it from the closed sessions.
"""


def upgrade(conn):
    columns = {row[1] for row in conn.execute("PRAGMA table_info(tasks)")}
    if "total_duration_seconds" not in columns:
        conn.execute("ALTER TABLE tasks ADD COLUMN total_duration_seconds INTEGER")

    conn.execute("""
        UPDATE tasks SET total_duration_seconds = (
            SELECT coalesce(sum(duration_seconds), 0)
            FROM task_sessions
            WHERE task_sessions.task_id = tasks.id AND task_sessions.end_time IS NOT NULL
        )
    """)
