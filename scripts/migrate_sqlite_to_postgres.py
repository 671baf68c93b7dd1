import argparse
import os
import sqlite3
from typing import Iterable


def _require_postgres_url(cli_url: str | None) -> str:
    url = (cli_url or os.environ.get("TRADEVAULT_DATABASE_URL") or os.environ.get("DATABASE_URL") or "").strip()
    if not url:
        raise SystemExit(
            "PostgreSQL URL not set. Provide --postgres or set TRADEVAULT_DATABASE_URL."
        )
    if not (url.startswith("postgres://") or url.startswith("postgresql://")):
        raise SystemExit("TRADEVAULT_DATABASE_URL must start with postgres:// or postgresql://")
    return url


def _ensure_sqlite_columns(conn: sqlite3.Connection, table: str, expected: list[str]) -> None:
    cur = conn.cursor()
    cur.execute(f"PRAGMA table_info({table})")
    cols = [r[1] for r in cur.fetchall()]
    missing = [c for c in expected if c not in cols]
    if missing:
        raise SystemExit(
            f"SQLite table {table!r} is missing columns: {missing}. "
            "Start the desk once against this file to upgrade its schema, then re-run migration."
        )


def _chunks(cur: sqlite3.Cursor, size: int) -> Iterable[list[tuple]]:
    while True:
        rows = cur.fetchmany(size)
        if not rows:
            break
        yield rows


# Ledger tables first; event history last.
TABLES: dict[str, list[str]] = {
    "items": [
        "id",
        "created_at",
        "updated_at",
        "custodian_id",
        "asset_handle",
        "type_id",
        "state",
        "owner_id",
        "request_id",
    ],
    "used_handles": ["asset_handle", "used_at"],
    "live_status": ["id", "current_subject", "current_step", "last_update"],
    "event_stream": ["id", "timestamp", "level", "subject", "step", "message"],
}

CONFLICT_KEYS = {"used_handles": "asset_handle"}
UPSERT_TABLES = {"live_status"}
SERIAL_TABLES = ["items", "event_stream"]


def _insert_sql(table: str, cols: list[str]) -> str:
    col_list = ", ".join(cols)
    key = CONFLICT_KEYS.get(table, "id")
    if table in UPSERT_TABLES:
        return (
            f"INSERT INTO {table} ({col_list}) VALUES %s "
            f"ON CONFLICT ({key}) DO UPDATE SET "
            + ", ".join([f"{c}=EXCLUDED.{c}" for c in cols if c != key])
        )
    return f"INSERT INTO {table} ({col_list}) VALUES %s ON CONFLICT ({key}) DO NOTHING"


def main() -> None:
    parser = argparse.ArgumentParser(description="Migrate tradevault.db (SQLite) into PostgreSQL.")
    parser.add_argument("--sqlite", default="tradevault.db", help="Path to SQLite file (default: tradevault.db)")
    parser.add_argument(
        "--postgres",
        default=None,
        help="PostgreSQL URL. If omitted, uses TRADEVAULT_DATABASE_URL.",
    )
    parser.add_argument("--batch", type=int, default=2000, help="Insert batch size (default: 2000)")
    args = parser.parse_args()

    pg_url = _require_postgres_url(args.postgres)

    # The Postgres backend reads its URL at import time.
    os.environ["TRADEVAULT_DATABASE_URL"] = pg_url

    from tradevault.utils import database_postgres as pgdb

    pgdb.init_db()

    import psycopg2
    from psycopg2.extras import execute_values

    sqlite_conn = sqlite3.connect(str(args.sqlite))
    pg_conn = psycopg2.connect(pg_url)
    pg_conn.autocommit = False

    try:
        pg_cur = pg_conn.cursor()

        for table, cols in TABLES.items():
            _ensure_sqlite_columns(sqlite_conn, table, cols)
            s_cur = sqlite_conn.cursor()
            s_cur.execute(f"SELECT {', '.join(cols)} FROM {table}")
            insert_sql = _insert_sql(table, cols)

            total = 0
            for batch in _chunks(s_cur, int(args.batch)):
                execute_values(pg_cur, insert_sql, batch, page_size=int(args.batch))
                pg_conn.commit()
                total += len(batch)

            print(f"{table}: migrated {total} rows")

        for table in SERIAL_TABLES:
            pg_cur.execute(
                f"""
                SELECT setval(
                    pg_get_serial_sequence('{table}', 'id'),
                    COALESCE((SELECT MAX(id) FROM {table}), 1),
                    true
                )
                """
            )
        pg_conn.commit()
        print("Sequences updated.")
    finally:
        sqlite_conn.close()
        pg_conn.close()


if __name__ == "__main__":
    main()
