#!/usr/bin/env python3
"""
Migration runner for the avanti ledger database

Usage:
    python run_migrations.py            # apply pending migrations
    python run_migrations.py --status   # list applied and pending migrations

Each file in /migrations exposes upgrade(conn) taking a sqlite3 connection.
Applied files are recorded by name and checksum in migrations_applied and
moved to /migrations/old. Fresh databases are skipped because the application
creates the current schema itself on startup.
"""

import hashlib
import importlib.util
import os
import sqlite3
import sys
from datetime import datetime
from pathlib import Path

project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from avanti.database import get_database_url

MIGRATIONS_DIR = project_root / 'migrations'
OLD_DIR = MIGRATIONS_DIR / 'old'


def sqlite_path(db_url):
    if db_url.startswith('sqlite:///'):
        return db_url[len('sqlite:///'):]
    return None


def checksum(path):
    return hashlib.sha256(path.read_bytes()).hexdigest()


def ensure_history_table(conn):
    conn.execute("""
        CREATE TABLE IF NOT EXISTS migrations_applied (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            filename TEXT UNIQUE NOT NULL,
            checksum TEXT,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)
    conn.commit()


def applied_migrations(conn):
    rows = conn.execute("SELECT filename, checksum FROM migrations_applied").fetchall()
    return {name: digest for name, digest in rows}


def pending_migrations(applied):
    if not MIGRATIONS_DIR.exists():
        return []

    pending = []
    for path in sorted(MIGRATIONS_DIR.glob('*.py')):
        if path.name.startswith(('.', '_')):
            continue
        digest = checksum(path)
        if path.name not in applied:
            pending.append((path, digest))
        elif applied[path.name] != digest:
            print(f"⚠️  {path.name} changed after it was applied, skipping")
    return pending


def load_upgrade(path):
    spec = importlib.util.spec_from_file_location(f"migration_{path.stem}", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    if not hasattr(module, 'upgrade'):
        raise AttributeError(f"{path.name} has no upgrade(conn) function")
    return module.upgrade


def apply_migration(conn, path, digest):
    print(f"▶️  Applying {path.name}")
    try:
        load_upgrade(path)(conn)
        conn.execute(
            "INSERT INTO migrations_applied (filename, checksum, applied_at) VALUES (?, ?, ?)",
            (path.name, digest, datetime.utcnow())
        )
        conn.commit()
    except (sqlite3.Error, AttributeError) as e:
        conn.rollback()
        print(f"❌ {path.name} failed: {e}")
        return False

    OLD_DIR.mkdir(parents=True, exist_ok=True)
    path.rename(OLD_DIR / path.name)
    print(f"✅ Applied {path.name}")
    return True


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv

    db_path = sqlite_path(get_database_url())
    if not db_path:
        print("❌ Migrations only support SQLite databases")
        return 1
    if not os.path.exists(db_path):
        print(f"ℹ️  {db_path} does not exist yet, the application will create it")
        return 0

    conn = sqlite3.connect(db_path)
    try:
        ensure_history_table(conn)
        applied = applied_migrations(conn)
        pending = pending_migrations(applied)

        if '--status' in argv:
            for name in sorted(applied):
                print(f"  applied  {name}")
            for path, _ in pending:
                print(f"  pending  {path.name}")
            return 0

        if not pending:
            print("✅ Database is up to date")
            return 0

        print(f"📋 {len(pending)} pending migration(s) for {db_path}")
        for path, digest in pending:
            if not apply_migration(conn, path, digest):
                return 1
        return 0
    finally:
        conn.close()


if __name__ == '__main__':
    sys.exit(main())
