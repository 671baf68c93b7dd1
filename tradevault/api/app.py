from __future__ import annotations

import asyncio
import logging
import traceback
from concurrent.futures import ThreadPoolExecutor
from typing import Any, TYPE_CHECKING

import pandas as pd
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tradevault.utils.database import (
    DB_PATH,
    _connect_ro,
    get_events,
    get_item_summary,
    get_items,
    get_live_status,
)

if TYPE_CHECKING:
    from tradevault.trader.commands import ControlSurface

logger = logging.getLogger(__name__)

# Blocking work (DB reads, admin commands that wait for the loops) runs off the event loop.
_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="api")


class CommandBody(BaseModel):
    args: list[str] = Field(default_factory=list)


def _df_to_records(df: pd.DataFrame | None) -> list[dict[str, Any]]:
    if df is None or df.empty:
        return []
    return jsonable_encoder(df.to_dict(orient="records"))


async def _run_in_executor(func, *args, timeout_seconds: float = 3.0, **kwargs):
    """
    Run a blocking function in the thread pool with a timeout.
    Returns None if it takes longer than timeout_seconds or fails.
    """
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(_executor, lambda: func(*args, **kwargs)),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.warning(f"Call timed out after {timeout_seconds}s: {func.__name__}")
        return None
    except Exception as e:
        logger.warning(f"Call failed: {func.__name__}: {e}")
        return None


def create_app(control: ControlSurface | None = None, admin_token: str = "") -> FastAPI:
    """
    Build the admin API. `control` is None when the API runs without a desk
    (read-only ledger and event views).
    """
    app = FastAPI(title="tradevault API", version="0.1.0")

    def _require_admin(token: str | None) -> None:
        if admin_token and token != admin_token:
            raise HTTPException(status_code=401, detail="Invalid admin token")

    def _require_control() -> ControlSurface:
        if control is None:
            raise HTTPException(status_code=503, detail="Trade desk not running")
        return control

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {type(exc).__name__}: {exc}")
        logger.debug(traceback.format_exc())
        return JSONResponse(
            status_code=500,
            content={
                "detail": f"Internal server error: {type(exc).__name__}",
                "message": str(exc)[:200],
            },
        )

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        db_ok = False
        db_error = None
        try:
            conn = _connect_ro()
            try:
                cur = conn.cursor()
                cur.execute("SELECT 1")
                cur.fetchone()
                db_ok = True
            finally:
                conn.close()
        except Exception as e:
            db_error = f"{type(e).__name__}: {str(e)[:100]}"

        loops: dict[str, bool] = {}
        if control is not None:
            loops = {loop.name: loop.is_alive() for loop in control.desk.loops}

        return {
            "status": "ok" if db_ok else "degraded",
            "db_path": DB_PATH if "://" not in str(DB_PATH) else "postgresql",
            "db_connected": db_ok,
            "db_error": db_error,
            "desk_running": control is not None,
            "loops": loops,
        }

    @app.get("/api/status")
    async def status(x_admin_token: str | None = Header(default=None)) -> dict[str, Any]:
        _require_admin(x_admin_token)
        ctl = _require_control()
        desk = ctl.desk
        counts = desk.book.counts()
        return {
            "session": desk.gate.state.value,
            "uptime_seconds": int(desk.uptime_seconds()),
            "book": {
                "deposits_active": counts.deposits_active,
                "deposits_queued": counts.deposits_queued,
                "withdraws_active": counts.withdraws_active,
                "withdraws_queued": counts.withdraws_queued,
                "withdraws_pending": counts.withdraws_pending,
                "transfers": counts.transfers,
            },
            "report": await _run_in_executor(ctl.status, [], timeout_seconds=10.0),
        }

    @app.get("/api/live-status")
    async def live_status() -> dict[str, Any]:
        row = await _run_in_executor(get_live_status)
        if row is None:
            return {}
        return jsonable_encoder(row.to_dict())

    @app.get("/api/events")
    async def events(limit: int = Query(default=200, ge=1, le=2000)) -> list[dict[str, Any]]:
        df = await _run_in_executor(get_events, limit=limit)
        return _df_to_records(df)

    @app.get("/api/items")
    async def items(
        limit: int = Query(default=500, ge=1, le=5000),
        custodian_id: str | None = None,
        state: str | None = None,
    ) -> list[dict[str, Any]]:
        df = await _run_in_executor(get_items, limit=limit, custodian_id=custodian_id, state=state)
        return _df_to_records(df)

    @app.get("/api/items/summary")
    async def items_summary() -> list[dict[str, Any]]:
        df = await _run_in_executor(get_item_summary)
        return _df_to_records(df)

    @app.get("/api/offers")
    async def offers(x_admin_token: str | None = Header(default=None)) -> dict[str, Any]:
        _require_admin(x_admin_token)
        return _require_control().desk.book.snapshot()

    @app.post("/api/commands/{name}")
    async def run_command(
        name: str,
        body: CommandBody | None = None,
        x_admin_token: str | None = Header(default=None),
    ) -> dict[str, Any]:
        _require_admin(x_admin_token)
        ctl = _require_control()
        if name.lower() not in ctl.commands:
            raise HTTPException(status_code=404, detail=f"Unknown command: {name}")
        args = body.args if body is not None else []
        # Commands may wait for both loops to go idle.
        timeout = ctl.desk.settings.lock_timeout_seconds + ctl.desk.settings.restart_grace_seconds + 30.0
        loop = asyncio.get_running_loop()
        try:
            text = await asyncio.wait_for(
                loop.run_in_executor(_executor, lambda: ctl.dispatch(name, args)),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise HTTPException(status_code=504, detail=f"Command timed out: {name}") from e
        return {"command": name.lower(), "output": text}

    return app
