from __future__ import annotations

from dataclasses import dataclass

from tradevault.domain.models import CustodianRole


@dataclass(frozen=True)
class CustodianConfig:
    name: str
    id: str
    role: CustodianRole
    gateway_url: str
    trade_token: str
    api_key: str = ""


@dataclass(frozen=True)
class DeskSettings:
    intake_interval_seconds: float
    reconcile_interval_seconds: float
    offer_expire_seconds: float
    send_attempts: int
    send_retry_delay_seconds: float
    offer_message_prefix: str
    gateway_timeout_seconds: float
    host_item_limit: int
    item_limit_per_bot: int
    storage_offer_max_items: int
    storage_offer_expire_seconds: float
    queue_fetch_url: str
    queue_callback_url: str
    queue_timeout_seconds: float
    api_enabled: bool
    api_host: str
    api_port: int
    admin_token: str
    webhook_url: str
    restart_grace_seconds: float
    lock_timeout_seconds: float
    custodians: tuple[CustodianConfig, ...]


def load_custodian_configs(config: dict) -> tuple[CustodianConfig, ...]:
    out = []
    for c in (config.get("custodians") or []) if isinstance(config, dict) else []:
        out.append(
            CustodianConfig(
                name=str(c["name"]),
                id=str(c["id"]),
                role=CustodianRole(str(c["role"]).lower()),
                gateway_url=str(c["gateway_url"]).rstrip("/"),
                trade_token=str(c["trade_token"]),
                api_key=str(c.get("api_key") or ""),
            )
        )
    return tuple(out)


def load_desk_settings(config: dict) -> DeskSettings:
    t = (config.get("trading") or {}) if isinstance(config, dict) else {}
    s = (config.get("storage") or {}) if isinstance(config, dict) else {}
    q = (config.get("queue") or {}) if isinstance(config, dict) else {}
    c = (config.get("control") or {}) if isinstance(config, dict) else {}
    return DeskSettings(
        intake_interval_seconds=float(t.get("intake_interval_seconds", 5)),
        reconcile_interval_seconds=float(t.get("reconcile_interval_seconds", 7)),
        offer_expire_seconds=float(t.get("offer_expire_seconds", 600)),
        send_attempts=int(t.get("send_attempts", 3)),
        send_retry_delay_seconds=float(t.get("send_retry_delay_seconds", 3)),
        offer_message_prefix=str(t.get("offer_message_prefix", "TRADEVAULT")).upper(),
        gateway_timeout_seconds=float(t.get("gateway_timeout_seconds", 20)),
        host_item_limit=int(s.get("host_item_limit", 500)),
        item_limit_per_bot=int(s.get("item_limit_per_bot", 1000)),
        storage_offer_max_items=int(s.get("storage_offer_max_items", 250)),
        storage_offer_expire_seconds=float(s.get("storage_offer_expire_seconds", 900)),
        queue_fetch_url=str(q.get("fetch_url", "")),
        queue_callback_url=str(q.get("callback_url", "")),
        queue_timeout_seconds=float(q.get("timeout_seconds", 20)),
        api_enabled=bool(c.get("api_enabled", True)),
        api_host=str(c.get("host", "127.0.0.1")),
        api_port=int(c.get("port", 8000)),
        admin_token=str(c.get("admin_token") or ""),
        webhook_url=str(c.get("webhook_url") or ""),
        restart_grace_seconds=float(c.get("restart_grace_seconds", 5)),
        lock_timeout_seconds=float(c.get("lock_timeout_seconds", 60)),
        custodians=load_custodian_configs(config),
    )
