import os
import sqlite3
import logging
import threading
import time
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from typing import Callable, Iterable, Iterator, Sequence, TypeVar, ParamSpec

import pandas as pd

from tradevault.domain.models import ItemState, LedgerError, LedgerItem, NewItem, validate_transitions

logger = logging.getLogger(__name__)

# Keep the database in the project root regardless of where the process is started from.
DB_PATH = os.environ.get("TRADEVAULT_DB_PATH") or str(Path(__file__).resolve().parents[2] / "tradevault.db")

# Columns callers may filter on through find_items.
ITEM_LOOKUP_COLUMNS = frozenset({"id", "custodian_id", "asset_handle", "type_id", "owner_id", "request_id"})

P = ParamSpec("P")
T = TypeVar("T")

# ----- PERSISTENT WRITE CONNECTION -----
# Event/status writes are batched; ledger mutations commit immediately as one transaction.
# Every statement on the shared connection runs under _write_lock so a ledger transaction
# never picks up (or commits) half of another thread's work.
_write_conn_lock = threading.Lock()
_write_lock = threading.RLock()
_write_conn: sqlite3.Connection | None = None
_pending_writes = 0
_last_commit_time = 0.0
_BATCH_COMMIT_INTERVAL = 2.0  # Commit at most every 2 seconds
_BATCH_COMMIT_THRESHOLD = 50  # Or after 50 pending writes


def _get_write_conn() -> sqlite3.Connection:
    """
    Get the persistent write connection for the trader process.
    Creates the connection on first use. Thread-safe.
    """
    global _write_conn
    if _write_conn is None:
        with _write_conn_lock:
            if _write_conn is None:
                _write_conn = sqlite3.connect(DB_PATH, timeout=30, check_same_thread=False, isolation_level="DEFERRED")
                _write_conn.execute("PRAGMA journal_mode=WAL")
                _write_conn.execute("PRAGMA synchronous=NORMAL")
                _write_conn.execute("PRAGMA busy_timeout=10000")
                logger.info("Opened persistent write connection to %s", DB_PATH)
    return _write_conn


def _maybe_commit() -> None:
    """Commit if we've accumulated enough writes or enough time has passed."""
    global _pending_writes, _last_commit_time
    now = time.time()
    should_commit = (
        _pending_writes >= _BATCH_COMMIT_THRESHOLD or
        (now - _last_commit_time) >= _BATCH_COMMIT_INTERVAL
    )
    if should_commit and _write_conn is not None:
        try:
            _write_conn.commit()
            _pending_writes = 0
            _last_commit_time = now
        except sqlite3.Error as e:
            logger.warning(f"Batch commit failed: {e}")


def _increment_pending() -> None:
    global _pending_writes
    _pending_writes += 1
    _maybe_commit()


def force_commit() -> None:
    """Force an immediate commit (call at end of cycle or before long operations)."""
    global _pending_writes, _last_commit_time
    with _write_lock:
        if _write_conn is not None:
            try:
                _write_conn.commit()
                _pending_writes = 0
                _last_commit_time = time.time()
            except sqlite3.Error as e:
                logger.warning(f"Force commit failed: {e}")


def close_write_conn() -> None:
    """Close the persistent write connection (call on shutdown)."""
    global _write_conn
    with _write_lock:
        if _write_conn is not None:
            with _write_conn_lock:
                if _write_conn is not None:
                    try:
                        _write_conn.commit()
                    finally:
                        _write_conn.close()
                        _write_conn = None
                    logger.info("Closed persistent write connection")


def safe_db_read(default_factory: Callable[[], T]) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Decorator for reporting reads that returns a default value on error.
    Keeps the API responsive when the database is locked or unavailable.
    """
    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except sqlite3.OperationalError as e:
                logger.warning(f"Database read failed ({func.__name__}): {e}")
                return default_factory()
            except sqlite3.DatabaseError as e:
                logger.error(f"Database error ({func.__name__}): {e}")
                return default_factory()
        return wrapper
    return decorator


def _connect_fresh() -> sqlite3.Connection:
    return sqlite3.connect(DB_PATH, timeout=30)


def _connect_ro() -> sqlite3.Connection:
    """
    Read connection with a short timeout; sees everything committed so far.
    """
    conn = sqlite3.connect(DB_PATH, timeout=2, isolation_level=None)  # autocommit mode
    conn.execute("PRAGMA query_only = 1")
    return conn


def init_db() -> None:
    """Initialise/upgrade the SQLite database schema (idempotent)."""
    conn = _connect_fresh()
    try:
        cursor = conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                custodian_id TEXT NOT NULL,
                asset_handle TEXT NOT NULL,
                type_id TEXT NOT NULL,
                state TEXT NOT NULL,
                owner_id TEXT,
                request_id TEXT
            )
            """
        )
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_items_state_type ON items (state, type_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_items_custodian ON items (custodian_id)")

        # Append-only: a handle committed to an outgoing offer is never allocated again.
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS used_handles (
                asset_handle TEXT PRIMARY KEY,
                used_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
            """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS event_stream (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                level TEXT,
                subject TEXT,
                step TEXT,
                message TEXT
            )
            """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS live_status (
                id INTEGER PRIMARY KEY,
                current_subject TEXT,
                current_step TEXT,
                last_update DATETIME DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        cursor.execute(
            """
            INSERT OR IGNORE INTO live_status (id, current_subject, current_step)
            VALUES (1, 'Idle', 'Waiting for cycle')
            """
        )

        # Best-effort schema upgrades for older databases.
        for ddl in [
            "ALTER TABLE items ADD COLUMN owner_id TEXT",
            "ALTER TABLE items ADD COLUMN request_id TEXT",
        ]:
            try:
                cursor.execute(ddl)
            except sqlite3.OperationalError:
                # Duplicate column.
                pass

        conn.commit()
    finally:
        conn.close()


# ----- LEDGER -----

def _marks(values: Sequence) -> str:
    return ",".join("?" for _ in values)


def _row_to_item(row: sqlite3.Row | tuple) -> LedgerItem:
    return LedgerItem(
        id=int(row[0]),
        custodian_id=str(row[1]),
        asset_handle=str(row[2]),
        type_id=str(row[3]),
        state=ItemState(row[4]),
        owner_id=row[5],
        request_id=row[6],
    )


_ITEM_COLUMNS = "id, custodian_id, asset_handle, type_id, state, owner_id, request_id"


@contextmanager
def _ledger_txn() -> Iterator[sqlite3.Cursor]:
    """
    Run a ledger mutation as a single IMMEDIATE transaction on the write connection.
    Pending batched writes are flushed first so a rollback only discards this batch.
    """
    global _pending_writes, _last_commit_time
    with _write_lock:
        conn = _get_write_conn()
        conn.commit()
        _pending_writes = 0
        _last_commit_time = time.time()
        cur = conn.cursor()
        cur.execute("BEGIN IMMEDIATE")
        try:
            yield cur
            conn.commit()
        except BaseException:
            conn.rollback()
            raise


def _load_states(cur: sqlite3.Cursor, ids: Sequence[int]) -> dict[int, str]:
    cur.execute(f"SELECT id, state FROM items WHERE id IN ({_marks(ids)})", tuple(ids))
    return {int(r[0]): str(r[1]) for r in cur.fetchall()}


def _require_unique(ids: Sequence[int]) -> None:
    if len(set(ids)) != len(ids):
        raise LedgerError(f"duplicate item ids in batch: {list(ids)}")


def insert_items(items: Iterable[NewItem]) -> bool:
    rows = list(items)
    if not rows:
        return True
    try:
        with _ledger_txn() as cur:
            cur.executemany(
                """
                INSERT INTO items (custodian_id, asset_handle, type_id, state, owner_id, request_id)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (r.custodian_id, r.asset_handle, r.type_id, ItemState(r.state).value, r.owner_id, r.request_id)
                    for r in rows
                ],
            )
    except sqlite3.Error as e:
        logger.error("insert_items(%s rows) failed: %s", len(rows), e)
        return False
    return True


def update_item_states(ids: Iterable[int], new_state: ItemState) -> bool:
    """Move every row to `new_state`, or none of them if any transition is illegal."""
    ids = [int(i) for i in ids]
    if not ids:
        return True
    try:
        _require_unique(ids)
        with _ledger_txn() as cur:
            validate_transitions(_load_states(cur, ids), ids, new_state)
            cur.execute(
                f"UPDATE items SET state = ?, updated_at = CURRENT_TIMESTAMP WHERE id IN ({_marks(ids)})",
                (ItemState(new_state).value, *ids),
            )
    except (LedgerError, sqlite3.Error) as e:
        logger.error("update_item_states(%s -> %s) rejected: %s", ids, ItemState(new_state).value, e)
        return False
    return True


def update_item_custodians(
    ids: Sequence[int],
    custodian_id: str,
    handles: Sequence[str] | None = None,
    state: ItemState | None = None,
) -> bool:
    """
    Reassign rows to `custodian_id`; optionally refresh each row's handle and state
    in the same transaction (a transfer landing on its destination).
    """
    ids = [int(i) for i in ids]
    if not ids:
        return True
    try:
        _require_unique(ids)
        if handles is not None and len(handles) != len(ids):
            raise LedgerError(f"{len(handles)} handles for {len(ids)} items")
        with _ledger_txn() as cur:
            current = _load_states(cur, ids)
            if state is not None:
                validate_transitions(current, ids, state)
            else:
                missing = [i for i in ids if i not in current]
                if missing:
                    raise LedgerError(f"items not found: {missing}")
            state_value = ItemState(state).value if state is not None else None
            for idx, row_id in enumerate(ids):
                handle = str(handles[idx]) if handles is not None else None
                cur.execute(
                    """
                    UPDATE items
                    SET custodian_id = ?, asset_handle = COALESCE(?, asset_handle),
                        state = COALESCE(?, state), updated_at = CURRENT_TIMESTAMP
                    WHERE id = ?
                    """,
                    (str(custodian_id), handle, state_value, row_id),
                )
    except (LedgerError, sqlite3.Error) as e:
        logger.error("update_item_custodians(%s -> %s) rejected: %s", ids, custodian_id, e)
        return False
    return True


def commit_transfer(ids: Sequence[int], handles: Sequence[str], state: ItemState) -> bool:
    """
    Record rows leaving in an outgoing offer: refresh their handles, move them to
    `state` and mark the handles used, all in one transaction. Rejected if any
    handle is already used.
    """
    ids = [int(i) for i in ids]
    handles = [str(h) for h in handles]
    if not ids:
        return True
    try:
        _require_unique(ids)
        if len(handles) != len(ids) or len(set(handles)) != len(handles):
            raise LedgerError(f"handles {handles} do not map one-to-one onto items {ids}")
        with _ledger_txn() as cur:
            validate_transitions(_load_states(cur, ids), ids, state)
            cur.execute(f"SELECT asset_handle FROM used_handles WHERE asset_handle IN ({_marks(handles)})", tuple(handles))
            already = [r[0] for r in cur.fetchall()]
            if already:
                raise LedgerError(f"handles already used: {already}")
            for row_id, handle in zip(ids, handles):
                cur.execute(
                    "UPDATE items SET asset_handle = ?, state = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (handle, ItemState(state).value, row_id),
                )
            cur.executemany("INSERT INTO used_handles (asset_handle) VALUES (?)", [(h,) for h in handles])
    except (LedgerError, sqlite3.Error) as e:
        logger.error("commit_transfer(%s -> %s) rejected: %s", ids, ItemState(state).value, e)
        return False
    return True


def mark_used(handles: Iterable[str]) -> bool:
    handles = [str(h) for h in handles]
    if not handles:
        return True
    try:
        with _ledger_txn() as cur:
            cur.executemany("INSERT OR IGNORE INTO used_handles (asset_handle) VALUES (?)", [(h,) for h in handles])
    except sqlite3.Error as e:
        logger.error("mark_used(%s handles) failed: %s", len(handles), e)
        return False
    return True


def is_used(handle: str) -> bool:
    conn = _connect_ro()
    try:
        cur = conn.cursor()
        cur.execute("SELECT 1 FROM used_handles WHERE asset_handle = ?", (str(handle),))
        return cur.fetchone() is not None
    finally:
        conn.close()


def used_handles() -> set[str]:
    conn = _connect_ro()
    try:
        cur = conn.cursor()
        cur.execute("SELECT asset_handle FROM used_handles")
        return {str(r[0]) for r in cur.fetchall()}
    finally:
        conn.close()


def find_items(
    column: str,
    value: object | Sequence[object],
    states: Iterable[ItemState] | None = None,
) -> list[LedgerItem]:
    """
    Rows where `column` equals `value` (or is in `value` when a list/tuple/set is given),
    optionally restricted to `states`. Ordered by id.
    """
    if column not in ITEM_LOOKUP_COLUMNS:
        raise ValueError(f"find_items: unsupported column {column!r}")
    values = list(value) if isinstance(value, (list, tuple, set, frozenset)) else [value]
    if not values:
        return []
    params: list[object] = [int(v) if column == "id" else str(v) for v in values]
    sql = f"SELECT {_ITEM_COLUMNS} FROM items WHERE {column} IN ({_marks(values)})"
    state_values = [ItemState(s).value for s in states] if states is not None else None
    if state_values is not None:
        if not state_values:
            return []
        sql += f" AND state IN ({_marks(state_values)})"
        params.extend(state_values)
    sql += " ORDER BY id ASC"

    conn = _connect_ro()
    try:
        cur = conn.cursor()
        cur.execute(sql, tuple(params))
        return [_row_to_item(r) for r in cur.fetchall()]
    finally:
        conn.close()


def count_items(
    states: Iterable[ItemState] | None = None,
    custodian_id: str | None = None,
    usable_only: bool = False,
) -> int:
    """Count rows; `usable_only` skips rows whose handle is already used."""
    clauses: list[str] = []
    params: list[object] = []
    if states is not None:
        state_values = [ItemState(s).value for s in states]
        if not state_values:
            return 0
        clauses.append(f"state IN ({_marks(state_values)})")
        params.extend(state_values)
    if custodian_id is not None:
        clauses.append("custodian_id = ?")
        params.append(str(custodian_id))
    if usable_only:
        clauses.append("asset_handle NOT IN (SELECT asset_handle FROM used_handles)")
    sql = "SELECT COUNT(*) FROM items"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)

    conn = _connect_ro()
    try:
        cur = conn.cursor()
        cur.execute(sql, tuple(params))
        return int(cur.fetchone()[0])
    finally:
        conn.close()


def list_usable_items(custodian_id: str, limit: int) -> list[LedgerItem]:
    """Active rows at a custodian whose handles are not used, oldest first."""
    conn = _connect_ro()
    try:
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT {_ITEM_COLUMNS} FROM items
            WHERE custodian_id = ? AND state = ?
              AND asset_handle NOT IN (SELECT asset_handle FROM used_handles)
            ORDER BY id ASC
            LIMIT ?
            """,
            (str(custodian_id), ItemState.ACTIVE.value, int(limit)),
        )
        return [_row_to_item(r) for r in cur.fetchall()]
    finally:
        conn.close()


@safe_db_read(default_factory=pd.DataFrame)
def get_items(limit: int = 500, custodian_id: str | None = None, state: str | None = None) -> pd.DataFrame:
    clauses: list[str] = []
    params: list[object] = []
    if custodian_id:
        clauses.append("custodian_id = ?")
        params.append(str(custodian_id))
    if state:
        clauses.append("state = ?")
        params.append(ItemState(state).value)
    sql = "SELECT * FROM items"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY id DESC LIMIT ?"
    params.append(int(limit))

    conn = _connect_ro()
    try:
        return pd.read_sql_query(sql, conn, params=tuple(params))
    finally:
        conn.close()


@safe_db_read(default_factory=pd.DataFrame)
def get_item_summary() -> pd.DataFrame:
    conn = _connect_ro()
    try:
        df = pd.read_sql_query(
            "SELECT custodian_id, state, COUNT(*) AS items FROM items GROUP BY custodian_id, state ORDER BY custodian_id, state",
            conn,
        )
        return df
    finally:
        conn.close()


# ----- EVENTS / LIVE STATUS -----

def log_event(level: str, message: str, subject: str | None = None, step: str | None = None) -> None:
    with _write_lock:
        conn = _get_write_conn()
        cursor = conn.cursor()
        cursor.execute(
            "INSERT INTO event_stream (level, subject, step, message) VALUES (?, ?, ?, ?)",
            (level, subject, step, message),
        )
        _increment_pending()  # Batched commit


@safe_db_read(default_factory=pd.DataFrame)
def get_events(limit: int = 200) -> pd.DataFrame:
    conn = _connect_ro()
    try:
        df = pd.read_sql_query(
            "SELECT * FROM event_stream ORDER BY timestamp DESC, id DESC LIMIT ?",
            conn,
            params=(int(limit),),
        )
        return df
    finally:
        conn.close()


def update_live_status(subject: str, step: str) -> None:
    with _write_lock:
        conn = _get_write_conn()
        cursor = conn.cursor()
        cursor.execute(
            """
            UPDATE live_status
            SET current_subject = ?, current_step = ?, last_update = CURRENT_TIMESTAMP
            WHERE id = 1
            """,
            (subject, step),
        )
        _increment_pending()  # Batched commit


@safe_db_read(default_factory=lambda: None)
def get_live_status():
    conn = _connect_ro()
    try:
        df = pd.read_sql_query("SELECT * FROM live_status WHERE id = 1", conn)
        if df.empty:
            return None
        return df.iloc[0]
    finally:
        conn.close()
