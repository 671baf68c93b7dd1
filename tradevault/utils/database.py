"""
Database backend selector.

SQLite (`tradevault.db`) is the default. Selection is configuration-driven:

- If `TRADEVAULT_DATABASE_URL` (or `DATABASE_URL`) starts with `postgres://` or `postgresql://`,
  the PostgreSQL backend is used.
- Otherwise the SQLite backend is used.

This module re-exports one function surface so callers never import a backend directly.
"""

from __future__ import annotations

import os


def _use_postgres() -> bool:
    url = (os.environ.get("TRADEVAULT_DATABASE_URL") or os.environ.get("DATABASE_URL") or "").strip()
    return url.startswith("postgres://") or url.startswith("postgresql://")


if _use_postgres():
    from .database_postgres import *  # noqa: F401,F403
    from .database_postgres import _connect_ro  # noqa: F401
else:
    from .database_sqlite import *  # noqa: F401,F403
    from .database_sqlite import _connect_ro  # noqa: F401
