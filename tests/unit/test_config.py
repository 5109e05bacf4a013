"""Unit tests for configuration defaults and environment overrides."""

import pytest

from arb_engine.config import config_from_env, default_config, merge_config


ENV_KEYS = [
    "EXCHANGES", "EXCHANGE_SANDBOX", "BINANCE_API_KEY", "BINANCE_SECRET",
    "OKX_API_KEY", "OKX_SECRET", "MIN_NET_PROFIT", "AUDIT_INTERVAL",
    "MIN_EDGE_PERCENT", "TARGET_NET_PROFIT", "MAX_ALLOCATION_PERCENT",
    "SCAN_SYMBOLS", "SCAN_INTERVAL_SECONDS", "AUTO_DEPLOY_ENABLED",
    "ADVISOR_ENABLED", "ADVISOR_API_KEY", "JOURNAL_PATH",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Empty environment with .env loading disabled."""
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr("arb_engine.config.load_dotenv", lambda: False)
    return monkeypatch


class TestDefaults:

    def test_safe_defaults(self):
        config = default_config()

        assert config["exchange"]["sandbox"] is True
        assert config["advisor"]["enabled"] is False
        assert config["capital"]["auto_deploy_enabled"] is False
        assert config["trading"]["min_net_profit"] == 0.50
        assert len(config["scanner"]["symbols"]) == 10

    def test_fresh_copy_each_call(self):
        default_config()["exchanges"].append("okx")
        assert default_config()["exchanges"] == ["binance"]


class TestMerge:

    def test_nested_merge(self):
        merged = merge_config(default_config(), {"trading": {"audit_interval": 5}})

        assert merged["trading"]["audit_interval"] == 5
        assert merged["trading"]["min_net_profit"] == 0.50

    def test_lists_replaced(self):
        merged = merge_config(default_config(), {"exchanges": ["okx", "kraken"]})
        assert merged["exchanges"] == ["okx", "kraken"]

    def test_base_untouched(self):
        base = default_config()
        merge_config(base, {"sizing": {"fee_rates": {"binance": 0.00075}}})
        assert base["sizing"]["fee_rates"] == {}

    def test_none_overrides(self):
        assert merge_config({"a": 1}, None) == {"a": 1}


class TestEnvironment:

    def test_empty_environment(self, clean_env):
        assert config_from_env() == {}

    def test_exchanges_and_credentials(self, clean_env):
        clean_env.setenv("EXCHANGES", "binance, okx")
        clean_env.setenv("EXCHANGE_SANDBOX", "false")
        clean_env.setenv("OKX_API_KEY", "key")
        clean_env.setenv("OKX_SECRET", "secret")

        config = config_from_env()

        assert config["exchanges"] == ["binance", "okx"]
        assert config["exchange"] == {"sandbox": False}
        assert config["credentials"] == {"okx": {"apiKey": "key", "secret": "secret"}}

    def test_default_exchange_credentials(self, clean_env):
        clean_env.setenv("BINANCE_API_KEY", "key")

        config = config_from_env()

        assert "exchanges" not in config
        assert config["credentials"]["binance"] == {"apiKey": "key", "secret": None}

    def test_numeric_overrides(self, clean_env):
        clean_env.setenv("MIN_NET_PROFIT", "0.75")
        clean_env.setenv("AUDIT_INTERVAL", "10")
        clean_env.setenv("MIN_EDGE_PERCENT", "0.8")
        clean_env.setenv("SCAN_INTERVAL_SECONDS", "2.5")

        config = config_from_env()

        assert config["trading"] == {"min_net_profit": 0.75, "audit_interval": 10}
        assert config["sizing"] == {"min_edge_percent": 0.8}
        assert config["scanner"] == {"scan_interval_seconds": 2.5}

    def test_flags_and_paths(self, clean_env):
        clean_env.setenv("SCAN_SYMBOLS", "BTC/USDT,ETH/USDT")
        clean_env.setenv("AUTO_DEPLOY_ENABLED", "yes")
        clean_env.setenv("ADVISOR_ENABLED", "true")
        clean_env.setenv("ADVISOR_API_KEY", "sk-test")
        clean_env.setenv("JOURNAL_PATH", "/tmp/journal.db")

        config = config_from_env()

        assert config["scanner"]["symbols"] == ["BTC/USDT", "ETH/USDT"]
        assert config["capital"] == {"auto_deploy_enabled": True}
        assert config["advisor"] == {"enabled": True, "api_key": "sk-test"}
        assert config["journal"] == {"path": "/tmp/journal.db"}

    def test_unrecognised_flag_ignored(self, clean_env):
        clean_env.setenv("AUTO_DEPLOY_ENABLED", "maybe")
        assert "capital" not in config_from_env()

    def test_env_merges_over_defaults(self, clean_env):
        clean_env.setenv("EXCHANGES", "okx")
        merged = merge_config(default_config(), config_from_env())
        assert merged["exchanges"] == ["okx"]
        assert merged["exchange"]["sandbox"] is True
