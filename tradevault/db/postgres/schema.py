from __future__ import annotations

import psycopg2

from tradevault.db.postgres.pool import _require_database_url


def init_db() -> None:
    """Initialise/upgrade the PostgreSQL schema (idempotent)."""
    dsn = _require_database_url()
    conn = psycopg2.connect(dsn)
    try:
        conn.autocommit = True
        cur = conn.cursor()

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS items (
                id BIGSERIAL PRIMARY KEY,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                custodian_id TEXT NOT NULL,
                asset_handle TEXT NOT NULL,
                type_id TEXT NOT NULL,
                state TEXT NOT NULL,
                owner_id TEXT,
                request_id TEXT
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_items_state_type ON items (state, type_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_items_custodian ON items (custodian_id)")

        # Best-effort schema upgrades for existing databases.
        cur.execute("ALTER TABLE items ADD COLUMN IF NOT EXISTS owner_id TEXT")
        cur.execute("ALTER TABLE items ADD COLUMN IF NOT EXISTS request_id TEXT")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS used_handles (
                asset_handle TEXT PRIMARY KEY,
                used_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS event_stream (
                id BIGSERIAL PRIMARY KEY,
                timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                level TEXT,
                subject TEXT,
                step TEXT,
                message TEXT
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS live_status (
                id INTEGER PRIMARY KEY,
                current_subject TEXT,
                current_step TEXT,
                last_update TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        cur.execute(
            """
            INSERT INTO live_status (id, current_subject, current_step)
            VALUES (1, 'Idle', 'Waiting for cycle')
            ON CONFLICT (id) DO NOTHING
            """
        )
    finally:
        conn.close()
