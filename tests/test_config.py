"""Tests for environment-driven settings."""

from __future__ import annotations

import pytest

from logtide.config import NETWORK_URLS, load_settings
from logtide.domain.errors import ConfigurationError


def test_defaults() -> None:
    s = load_settings()
    assert s.preset == "last-tap"
    assert s.sink == "console"
    assert s.request_timeout == 30.0
    assert s.sink_max_attempts == 3
    assert s.status_port == 8080


def test_env_prefix_and_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOGTIDE_POLL_INTERVAL", "0.5")
    monkeypatch.setenv("LOGTIDE_ENDPOINTS", "https://a.example, https://b.example")
    monkeypatch.setenv("LOGTIDE_LOG_LEVEL", "debug")

    s = load_settings(poll_interval=None, sink="sqlite")

    assert s.poll_interval == 0.5
    assert s.sink == "sqlite"
    assert s.log_level == "DEBUG"
    assert s.endpoint_urls() == ["https://a.example", "https://b.example"]


def test_network_map_fallback() -> None:
    s = load_settings()
    assert s.endpoint_urls("megaethTestnet") == list(NETWORK_URLS["megaethTestnet"])
    assert len(s.endpoint_urls("megaethTestnet")) == 2
    assert load_settings(network="ethereum").endpoint_urls("megaethTestnet") == ["https://eth.hypersync.xyz"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"network": "atlantis"},
        {"source": "rpc"},
    ],
)
def test_unresolvable_endpoints(overrides: dict) -> None:
    with pytest.raises(ConfigurationError):
        load_settings(**overrides).endpoint_urls("ethereum")


@pytest.mark.parametrize(
    "overrides",
    [
        {"sink": "supabase"},
        {"sink": "nowhere"},
        {"log_level": "LOUD"},
        {"request_timeout": 0},
        {"sink_max_attempts": 0},
        {"reconnect_delay": 10, "max_backoff": 5},
    ],
)
def test_invalid_settings_raise_configuration_error(overrides: dict) -> None:
    with pytest.raises(ConfigurationError):
        load_settings(**overrides)


def test_supabase_with_credentials_is_accepted() -> None:
    s = load_settings(sink="supabase", supabase_url="https://p.supabase.co", supabase_service_key="s3cr3t-key")
    assert s.supabase_service_key == "s3cr3t-key"
    assert "s3cr3t-key" not in repr(s)


def test_list_helpers() -> None:
    s = load_settings(contract_addresses="0xA, 0xB,", signatures="Transfer(address,address,uint256); Ping(uint8 x)")
    assert s.contract_list() == ("0xA", "0xB")
    assert s.signature_list() == ["Transfer(address,address,uint256)", "Ping(uint8 x)"]
