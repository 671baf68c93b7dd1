import pytest
import yaml

from tradevault.domain.models import CustodianRole
from tradevault.trader.settings import load_desk_settings
from tradevault.utils.config_loader import default_config_path, load_config, validate_config


def _config(**overrides):
    cfg = {
        "custodians": [
            {"name": "host", "id": "1", "role": "coordinator", "gateway_url": "http://gw/1/", "trade_token": "t1"},
            {"name": "vault-1", "id": "2", "role": "STORAGE", "gateway_url": "http://gw/2", "trade_token": "t2", "api_key": "k"},
        ],
        "trading": {"intake_interval_seconds": 5, "offer_message_prefix": "vault"},
        "storage": {"host_item_limit": 10},
        "queue": {"fetch_url": "http://q/pending", "callback_url": "http://q/cb"},
    }
    cfg.update(overrides)
    return cfg


def _write(tmp_path, cfg):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(cfg), encoding="utf-8")
    return path


def test_shipped_config_is_valid():
    cfg = load_config(default_config_path(), force_reload=True)
    settings = load_desk_settings(cfg)
    assert sum(1 for c in settings.custodians if c.role == CustodianRole.COORDINATOR) == 1


def test_settings_from_config():
    settings = load_desk_settings(_config())
    assert settings.intake_interval_seconds == 5.0
    assert settings.offer_message_prefix == "VAULT"
    assert settings.host_item_limit == 10
    assert settings.item_limit_per_bot == 1000
    assert settings.send_attempts == 3
    host, vault = settings.custodians
    assert (host.role, host.gateway_url) == (CustodianRole.COORDINATOR, "http://gw/1")
    assert (vault.role, vault.api_key) == (CustodianRole.STORAGE, "k")


@pytest.mark.parametrize(
    "cfg, message",
    [
        ({"trading": {}}, "Missing required config sections"),
        (_config(custodians=[]), "non-empty list"),
        (_config(custodians=[{"name": "host", "id": "1", "role": "coordinator", "gateway_url": "", "trade_token": "t"}]), "gateway_url"),
        (_config(custodians=[{"name": "x", "id": "1", "role": "broker", "gateway_url": "u", "trade_token": "t"}]), "role"),
        (
            _config(
                custodians=[
                    {"name": "a", "id": "1", "role": "coordinator", "gateway_url": "u", "trade_token": "t"},
                    {"name": "b", "id": "1", "role": "storage", "gateway_url": "u", "trade_token": "t"},
                ]
            ),
            "Duplicate custodian id",
        ),
        (_config(queue={"fetch_url": "http://q"}), "queue.callback_url"),
    ],
)
def test_validate_config_rejects(cfg, message):
    with pytest.raises(ValueError, match=message):
        validate_config(cfg)


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("TRADEVAULT_ADMIN_TOKEN", "from-env")
    monkeypatch.setenv("TRADEVAULT_QUEUE_FETCH_URL", "http://env/pending")
    monkeypatch.setenv("TRADEVAULT_INTAKE_INTERVAL_SECONDS", "1.5")

    cfg = load_config(_write(tmp_path, _config()), force_reload=True)

    assert cfg["control"]["admin_token"] == "from-env"
    assert cfg["queue"]["fetch_url"] == "http://env/pending"
    assert cfg["trading"]["intake_interval_seconds"] == 1.5


def test_load_config_returns_copies(tmp_path):
    path = _write(tmp_path, _config())
    first = load_config(path, force_reload=True)
    first["trading"]["intake_interval_seconds"] = 99
    assert load_config(path)["trading"]["intake_interval_seconds"] == 5


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml", force_reload=True)
