from __future__ import annotations

import logging
import os
import threading
from copy import deepcopy
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_cache_lock = threading.Lock()
_cached: dict[str, Any] | None = None
_cached_path: str | None = None

REQUIRED_CUSTODIAN_FIELDS = ("name", "id", "role", "gateway_url", "trade_token")
CUSTODIAN_ROLES = {"coordinator", "storage"}


def _project_root() -> Path:
    # tradevault/utils/config_loader.py -> tradevault/utils -> tradevault -> project root
    return Path(__file__).resolve().parents[2]


def default_config_path() -> Path:
    return _project_root() / "config" / "config.yaml"


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    """
    Override selected YAML settings with environment variables.

    Secrets (admin token, webhook URL) normally arrive this way via `config/secrets.env`.
    """
    queue = cfg.setdefault("queue", {})
    if os.getenv("TRADEVAULT_QUEUE_FETCH_URL"):
        queue["fetch_url"] = os.environ["TRADEVAULT_QUEUE_FETCH_URL"]
    if os.getenv("TRADEVAULT_QUEUE_CALLBACK_URL"):
        queue["callback_url"] = os.environ["TRADEVAULT_QUEUE_CALLBACK_URL"]

    control = cfg.setdefault("control", {})
    if os.getenv("TRADEVAULT_ADMIN_TOKEN"):
        control["admin_token"] = os.environ["TRADEVAULT_ADMIN_TOKEN"]
    if os.getenv("TRADEVAULT_WEBHOOK_URL"):
        control["webhook_url"] = os.environ["TRADEVAULT_WEBHOOK_URL"]
    if os.getenv("TRADEVAULT_API_PORT"):
        control["port"] = int(os.environ["TRADEVAULT_API_PORT"])

    trading = cfg.setdefault("trading", {})
    if os.getenv("TRADEVAULT_INTAKE_INTERVAL_SECONDS"):
        trading["intake_interval_seconds"] = float(os.environ["TRADEVAULT_INTAKE_INTERVAL_SECONDS"])
    if os.getenv("TRADEVAULT_RECONCILE_INTERVAL_SECONDS"):
        trading["reconcile_interval_seconds"] = float(os.environ["TRADEVAULT_RECONCILE_INTERVAL_SECONDS"])


def validate_config(cfg: dict[str, Any]) -> None:
    """
    Fail fast if the configuration is missing required sections or custodian fields.
    """
    required_top = ["custodians", "trading", "storage", "queue"]
    missing = [k for k in required_top if k not in cfg]
    if missing:
        raise ValueError(f"Missing required config sections: {', '.join(missing)}")

    custodians = cfg.get("custodians") or []
    if not isinstance(custodians, list) or not custodians:
        raise ValueError("custodians must be a non-empty list")

    seen_ids: set[str] = set()
    for idx, c in enumerate(custodians):
        if not isinstance(c, dict):
            raise ValueError(f"custodians[{idx}] must be a mapping")
        empty = [k for k in REQUIRED_CUSTODIAN_FIELDS if not str(c.get(k) or "").strip()]
        if empty:
            raise ValueError(f"custodians[{idx}] has empty fields: {', '.join(empty)}")
        if str(c["role"]).lower() not in CUSTODIAN_ROLES:
            raise ValueError(f"custodians[{idx}].role must be one of {sorted(CUSTODIAN_ROLES)}")
        cid = str(c["id"])
        if cid in seen_ids:
            raise ValueError(f"Duplicate custodian id: {cid}")
        seen_ids.add(cid)

    queue = cfg.get("queue") or {}
    for k in ["fetch_url", "callback_url"]:
        if not queue.get(k):
            raise ValueError(f"Missing queue.{k} in config")


def load_config(config_path: str | Path | None = None, *, force_reload: bool = False) -> dict[str, Any]:
    """
    Load the YAML config once and reuse it across the process.

    - Reads `config/config.yaml` by default.
    - Applies environment overrides for a small set of operational settings.
    - Returns a deep copy so callers can safely mutate local copies.
    """
    global _cached, _cached_path

    path = Path(config_path) if config_path else default_config_path()
    path_str = str(path.resolve())

    with _cache_lock:
        if not force_reload and _cached is not None and _cached_path == path_str:
            return deepcopy(_cached)

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}

        if not isinstance(cfg, dict):
            raise ValueError(f"Config must be a YAML mapping (dict); got {type(cfg).__name__}")

        _apply_env_overrides(cfg)
        validate_config(cfg)

        _cached = cfg
        _cached_path = path_str
        logger.info("Loaded config from %s", path_str)
        return deepcopy(cfg)
