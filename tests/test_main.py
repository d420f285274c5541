"""Tests for the command line entry point."""

import logging
import os

import pytest

from veil.main import ColoredFormatter, build_config, parse_args


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    env = {k: v for k, v in os.environ.items() if not k.startswith("VEIL_") and k != "PORT"}
    monkeypatch.setattr(os, "environ", env)
    monkeypatch.chdir(tmp_path)
    return env


def test_cli_overrides(clean_env):
    args = parse_args(["--port", "4000", "--level", "3", "--no-fronting", "--admin"])
    config = build_config(args)
    assert config.get("port") == 4000
    assert config.get("obfuscation_level") == 3
    assert config.get("fronting_enabled") is False
    assert config.get("web_admin_enabled") is True
    assert config.get("host") == "0.0.0.0"


def test_cli_level_bounds():
    with pytest.raises(SystemExit):
        parse_args(["--level", "5"])


def test_colored_formatter_restores_record():
    record = logging.LogRecord("veil", logging.WARNING, __file__, 1, "careful", None, None)
    output = ColoredFormatter("%(levelname)s %(message)s").format(record)
    assert "careful" in output
    assert record.levelname == "WARNING"
