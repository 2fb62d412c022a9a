"""Tests for environment-driven settings."""

from pathlib import Path

import pytest

from procwarden.config import load_settings
from procwarden.exceptions import ConfigurationError

_VARS = (
    "SERVICE_PORT", "PAPERLESS_AI_PORT", "DATA_DIR", "LOG_LEVEL",
    "MAX_RESTARTS", "WAIT_FOR_READY", "PRIMARY_COMMAND", "GRACE_PERIOD",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in _VARS:
        monkeypatch.delenv(var, raising=False)


def test_defaults():
    settings = load_settings()
    assert settings.service_port == 3000
    assert settings.data_dir == Path("/app/data")
    assert settings.primary_ready_url is None
    assert settings.worker_required is True
    assert settings.start_order == "worker,primary"
    assert settings.grace_period == 10.0
    assert settings.staleness_window == 30.0
    assert settings.backoff_cap == 60.0


def test_reads_environment(monkeypatch):
    monkeypatch.setenv("SERVICE_PORT", "8080")
    monkeypatch.setenv("DATA_DIR", "/srv/data")
    monkeypatch.setenv("MAX_RESTARTS", "9")
    monkeypatch.setenv("WAIT_FOR_READY", "true")
    monkeypatch.setenv("PRIMARY_COMMAND", "node dist/server.js")

    settings = load_settings()
    assert settings.service_port == 8080
    assert settings.data_dir == Path("/srv/data")
    assert settings.max_restarts == 9
    assert settings.wait_for_ready is True
    assert settings.primary_command == "node dist/server.js"


def test_legacy_port_variable(monkeypatch):
    monkeypatch.setenv("PAPERLESS_AI_PORT", "3555")
    assert load_settings().service_port == 3555


def test_log_level_normalized(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    assert load_settings().log_level == "DEBUG"


@pytest.mark.parametrize("var,value", [
    ("SERVICE_PORT", "not-a-port"),
    ("SERVICE_PORT", "70000"),
    ("LOG_LEVEL", "chatty"),
    ("GRACE_PERIOD", "-1"),
    ("MAX_RESTARTS", "-3"),
])
def test_invalid_values_are_configuration_errors(monkeypatch, var, value):
    monkeypatch.setenv(var, value)
    with pytest.raises(ConfigurationError) as exc_info:
        load_settings()
    assert exc_info.value.problems


def test_keyword_overrides():
    settings = load_settings(service_port=9090, grace_period=1.5)
    assert settings.service_port == 9090
    assert settings.grace_period == 1.5
