"""Tests for configuration loading and validation."""

import os

import pytest

from veil.context import ProxyContext
from veil.core.config import DEFAULT_DNS_SERVERS, VeilConfig
from veil.core.exceptions import ConfigError


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Isolated environment with no VEIL_* variables and no default env file."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("VEIL_") and k != "PORT"}
    monkeypatch.setattr(os, "environ", env)
    monkeypatch.chdir(tmp_path)
    return env


class TestDefaults:

    def test_defaults(self, clean_env):
        config = VeilConfig()
        assert config.get("port") == 3000
        assert config.get("obfuscation_level") == 2
        assert config.get("dns_servers") == DEFAULT_DNS_SERVERS
        assert config.get("dns_strategy_order") == ["recursive", "doh", "dot", "static"]
        assert config.validate() == []

    def test_defaults_are_copies(self, clean_env):
        config = VeilConfig()
        config.get("dns_servers").append("192.0.2.1")
        assert "192.0.2.1" not in VeilConfig().get("dns_servers")


class TestEnvironment:

    def test_env_overrides(self, clean_env):
        clean_env.update({
            "VEIL_PORT": "8443",
            "VEIL_OBFUSCATION_LEVEL": "3",
            "VEIL_FRONTING": "false",
            "VEIL_DNS_SERVERS": "192.0.2.53, 192.0.2.54",
            "VEIL_DNS_ORDER": "static,doh",
            "VEIL_STATIC_HOSTS": '{"a.test": ["192.0.2.1"]}',
        })
        config = VeilConfig()
        assert config.get("port") == 8443
        assert config.get("obfuscation_level") == 3
        assert config.get("fronting_enabled") is False
        assert config.get("dns_servers") == ["192.0.2.53", "192.0.2.54"]
        assert config.get("dns_strategy_order") == ["static", "doh"]
        assert config.get("static_hosts") == {"a.test": ["192.0.2.1"]}

    def test_veil_port_beats_port(self, clean_env):
        clean_env.update({"PORT": "5000", "VEIL_PORT": "6000"})
        assert VeilConfig().get("port") == 6000

    def test_invalid_value_keeps_default(self, clean_env):
        clean_env["VEIL_PORT"] = "not-a-port"
        assert VeilConfig().get("port") == 3000

    def test_env_file(self, clean_env, tmp_path):
        env_file = tmp_path / "relay.env"
        env_file.write_text(
            "# comment\n"
            "VEIL_PORT=4100\n"
            "$env:VEIL_WS_PATH = \"/tunnel\"\n"
            "VEIL_LOG_LEVEL='DEBUG'\n",
            encoding="utf-8",
        )
        config = VeilConfig(env_file=str(env_file))
        assert config.get("port") == 4100
        assert config.get("ws_path") == "/tunnel"
        assert config.get("log_level") == "DEBUG"

    def test_environment_beats_env_file(self, clean_env, tmp_path):
        env_file = tmp_path / "relay.env"
        env_file.write_text("VEIL_PORT=4100\n", encoding="utf-8")
        clean_env["VEIL_PORT"] = "4200"
        assert VeilConfig(env_file=str(env_file)).get("port") == 4200


class TestValidation:

    @pytest.mark.parametrize("key,value,fragment", [
        ("obfuscation_level", 7, "obfuscation_level"),
        ("port", 70000, "port"),
        ("min_fragment", 2000, "min_fragment must not exceed"),
        ("dns_strategy_order", ["static", "smoke-signal"], "unknown DNS strategies"),
        ("dns_strategy_order", [], "at least one strategy"),
        ("ws_path", "stream", "ws_path"),
        ("idle_timeout", 0, "idle_timeout"),
        ("fronting_rules", [{"pattern": "*.x"}], "invalid fronting rule"),
    ])
    def test_reports_errors(self, clean_env, key, value, fragment):
        config = VeilConfig()
        config.set(key, value)
        errors = config.validate()
        assert any(fragment in e for e in errors), errors

    def test_context_refuses_invalid_config(self, clean_env):
        config = VeilConfig()
        config.set("obfuscation_level", 9)
        with pytest.raises(ConfigError) as exc_info:
            ProxyContext.from_config(config)
        assert exc_info.value.details["errors"]

    def test_context_from_valid_config(self, clean_env):
        config = VeilConfig()
        config.update({"dns_strategy_order": ["static"], "port": 0})
        context = ProxyContext.from_config(config)
        try:
            assert [s.name for s in context.resolver.strategies] == ["static"]
            assert context.obfuscation.level == 2
            assert context.fronting.enabled
        finally:
            context.close()
