"""
PostgreSQL database backend.

The concrete implementation is split into:
- `tradevault/db/postgres/pool.py` (connection pool + helpers)
- `tradevault/db/postgres/schema.py` (schema initialisation)
- `tradevault/db/postgres/repositories/*` (table-focused repository functions)

This module re-exports the same surface as `database_sqlite`.
"""

from __future__ import annotations

from tradevault.db.postgres.pool import DB_PATH, DATABASE_URL, _connect_ro, safe_db_read  # noqa: F401
from tradevault.db.postgres.schema import init_db  # noqa: F401
from tradevault.db.postgres.repositories.events import get_events, log_event  # noqa: F401
from tradevault.db.postgres.repositories.live_status import get_live_status, update_live_status  # noqa: F401
from tradevault.db.postgres.repositories.items import (  # noqa: F401
    ITEM_LOOKUP_COLUMNS,
    commit_transfer,
    count_items,
    find_items,
    get_item_summary,
    get_items,
    insert_items,
    is_used,
    list_usable_items,
    mark_used,
    update_item_custodians,
    update_item_states,
    used_handles,
)


# No-op for Postgres mode (we commit per operation).
def force_commit() -> None:
    return


def close_write_conn() -> None:
    # Pool handles lifecycle; nothing to do here.
    return
