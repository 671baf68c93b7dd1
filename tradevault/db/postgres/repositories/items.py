from __future__ import annotations

import logging
from typing import Iterable, Sequence

import pandas as pd
import psycopg2

from tradevault.db.postgres.pool import _connect_ro, _pg_write_conn, safe_db_read
from tradevault.domain.models import ItemState, LedgerError, LedgerItem, NewItem, validate_transitions

logger = logging.getLogger(__name__)

ITEM_LOOKUP_COLUMNS = frozenset({"id", "custodian_id", "asset_handle", "type_id", "owner_id", "request_id"})

_ITEM_COLUMNS = "id, custodian_id, asset_handle, type_id, state, owner_id, request_id"


def _row_to_item(row) -> LedgerItem:
    return LedgerItem(
        id=int(row[0]),
        custodian_id=str(row[1]),
        asset_handle=str(row[2]),
        type_id=str(row[3]),
        state=ItemState(row[4]),
        owner_id=row[5],
        request_id=row[6],
    )


def _lock_states(cur, ids: Sequence[int]) -> dict[int, str]:
    cur.execute("SELECT id, state FROM items WHERE id = ANY(%s) FOR UPDATE", (list(ids),))
    return {int(r[0]): str(r[1]) for r in cur.fetchall()}


def _require_unique(ids: Sequence[int]) -> None:
    if len(set(ids)) != len(ids):
        raise LedgerError(f"duplicate item ids in batch: {list(ids)}")


def insert_items(items: Iterable[NewItem]) -> bool:
    rows = list(items)
    if not rows:
        return True
    try:
        with _pg_write_conn() as conn:
            cur = conn.cursor()
            cur.executemany(
                """
                INSERT INTO items (custodian_id, asset_handle, type_id, state, owner_id, request_id)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                [
                    (r.custodian_id, r.asset_handle, r.type_id, ItemState(r.state).value, r.owner_id, r.request_id)
                    for r in rows
                ],
            )
    except psycopg2.Error as e:
        logger.error("insert_items(%s rows) failed: %s", len(rows), e)
        return False
    return True


def update_item_states(ids: Iterable[int], new_state: ItemState) -> bool:
    ids = [int(i) for i in ids]
    if not ids:
        return True
    try:
        _require_unique(ids)
        with _pg_write_conn() as conn:
            cur = conn.cursor()
            validate_transitions(_lock_states(cur, ids), ids, new_state)
            cur.execute(
                "UPDATE items SET state = %s, updated_at = CURRENT_TIMESTAMP WHERE id = ANY(%s)",
                (ItemState(new_state).value, ids),
            )
    except (LedgerError, psycopg2.Error) as e:
        logger.error("update_item_states(%s -> %s) rejected: %s", ids, ItemState(new_state).value, e)
        return False
    return True


def update_item_custodians(
    ids: Sequence[int],
    custodian_id: str,
    handles: Sequence[str] | None = None,
    state: ItemState | None = None,
) -> bool:
    ids = [int(i) for i in ids]
    if not ids:
        return True
    try:
        _require_unique(ids)
        if handles is not None and len(handles) != len(ids):
            raise LedgerError(f"{len(handles)} handles for {len(ids)} items")
        with _pg_write_conn() as conn:
            cur = conn.cursor()
            current = _lock_states(cur, ids)
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
                    SET custodian_id = %s, asset_handle = COALESCE(%s, asset_handle),
                        state = COALESCE(%s, state), updated_at = CURRENT_TIMESTAMP
                    WHERE id = %s
                    """,
                    (str(custodian_id), handle, state_value, row_id),
                )
    except (LedgerError, psycopg2.Error) as e:
        logger.error("update_item_custodians(%s -> %s) rejected: %s", ids, custodian_id, e)
        return False
    return True


def commit_transfer(ids: Sequence[int], handles: Sequence[str], state: ItemState) -> bool:
    ids = [int(i) for i in ids]
    handles = [str(h) for h in handles]
    if not ids:
        return True
    try:
        _require_unique(ids)
        if len(handles) != len(ids) or len(set(handles)) != len(handles):
            raise LedgerError(f"handles {handles} do not map one-to-one onto items {ids}")
        with _pg_write_conn() as conn:
            cur = conn.cursor()
            validate_transitions(_lock_states(cur, ids), ids, state)
            cur.execute("SELECT asset_handle FROM used_handles WHERE asset_handle = ANY(%s)", (handles,))
            already = [r[0] for r in cur.fetchall()]
            if already:
                raise LedgerError(f"handles already used: {already}")
            for row_id, handle in zip(ids, handles):
                cur.execute(
                    "UPDATE items SET asset_handle = %s, state = %s, updated_at = CURRENT_TIMESTAMP WHERE id = %s",
                    (handle, ItemState(state).value, row_id),
                )
            cur.executemany("INSERT INTO used_handles (asset_handle) VALUES (%s)", [(h,) for h in handles])
    except (LedgerError, psycopg2.Error) as e:
        logger.error("commit_transfer(%s -> %s) rejected: %s", ids, ItemState(state).value, e)
        return False
    return True


def mark_used(handles: Iterable[str]) -> bool:
    handles = [str(h) for h in handles]
    if not handles:
        return True
    try:
        with _pg_write_conn() as conn:
            cur = conn.cursor()
            cur.executemany(
                "INSERT INTO used_handles (asset_handle) VALUES (%s) ON CONFLICT (asset_handle) DO NOTHING",
                [(h,) for h in handles],
            )
    except psycopg2.Error as e:
        logger.error("mark_used(%s handles) failed: %s", len(handles), e)
        return False
    return True


def is_used(handle: str) -> bool:
    conn = _connect_ro()
    try:
        cur = conn.cursor()
        cur.execute("SELECT 1 FROM used_handles WHERE asset_handle = %s", (str(handle),))
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
    if column not in ITEM_LOOKUP_COLUMNS:
        raise ValueError(f"find_items: unsupported column {column!r}")
    values = list(value) if isinstance(value, (list, tuple, set, frozenset)) else [value]
    if not values:
        return []
    params: list[object] = [[int(v) if column == "id" else str(v) for v in values]]
    sql = f"SELECT {_ITEM_COLUMNS} FROM items WHERE {column} = ANY(%s)"
    if states is not None:
        state_values = [ItemState(s).value for s in states]
        if not state_values:
            return []
        sql += " AND state = ANY(%s)"
        params.append(state_values)
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
    clauses: list[str] = []
    params: list[object] = []
    if states is not None:
        state_values = [ItemState(s).value for s in states]
        if not state_values:
            return 0
        clauses.append("state = ANY(%s)")
        params.append(state_values)
    if custodian_id is not None:
        clauses.append("custodian_id = %s")
        params.append(str(custodian_id))
    if usable_only:
        clauses.append("NOT EXISTS (SELECT 1 FROM used_handles u WHERE u.asset_handle = items.asset_handle)")
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
    conn = _connect_ro()
    try:
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT {_ITEM_COLUMNS} FROM items
            WHERE custodian_id = %s AND state = %s
              AND NOT EXISTS (SELECT 1 FROM used_handles u WHERE u.asset_handle = items.asset_handle)
            ORDER BY id ASC
            LIMIT %s
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
        clauses.append("custodian_id = %s")
        params.append(str(custodian_id))
    if state:
        clauses.append("state = %s")
        params.append(ItemState(state).value)
    sql = "SELECT * FROM items"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY id DESC LIMIT %s"
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
