"""
Shared test fixtures for harvester tests.

Provides environment variable fixtures for HarvesterSettings configuration
tests. All harvester env vars are cleaned before each test to ensure
isolation.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations

import pytest

# All HarvesterSettings environment variable names, used for cleanup.
_ALL_HARVESTER_ENV_VARS = (
    "PORTAL_BASE_URL",
    "PORTAL_LOGIN_URL",
    "PORTAL_USERNAME",
    "PORTAL_PASSWORD",
    "SITES",
    "SIGNALS_PATH",
    "CYCLE_INTERVAL_S",
    "LOGIN_RETRY_S",
    "TOKEN_WAIT_S",
    "INVERTER_BATCH_SIZE",
    "METER_BATCH_SIZE",
    "JITTER_MIN_MS",
    "JITTER_MAX_MS",
    "CHUNK_TIMEOUT_S",
    "REQUEST_TIMEOUT_S",
    "TIMEZONE_OFFSET_MIN",
    "SPOOL_PATH",
    "HEALTH_PATH",
    "HEADLESS",
    "EMIT_STRING_RECORDS",
)


@pytest.fixture(autouse=True)
def _clean_harvester_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all harvester env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_HARVESTER_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set all required and optional environment variables for HarvesterSettings."""
    env = {
        "PORTAL_BASE_URL": "https://portal.example.com",
        "PORTAL_LOGIN_URL": "https://portal.example.com/unisso/login.action",
        "PORTAL_USERNAME": "operator",
        "PORTAL_PASSWORD": "s3cret-pass",
        "SITES": '[{"id": "NE=50987774", "name": "Shundao 1"}, {"id": "NE=50988001", "name": "Shundao 2"}]',
        "SIGNALS_PATH": "/etc/harvester/signals.json",
        "CYCLE_INTERVAL_S": "600",
        "LOGIN_RETRY_S": "90",
        "TOKEN_WAIT_S": "45",
        "INVERTER_BATCH_SIZE": "10",
        "METER_BATCH_SIZE": "25",
        "JITTER_MIN_MS": "100",
        "JITTER_MAX_MS": "300",
        "CHUNK_TIMEOUT_S": "30",
        "REQUEST_TIMEOUT_S": "10",
        "TIMEZONE_OFFSET_MIN": "60",
        "SPOOL_PATH": "/tmp/test-spool.db",
        "HEALTH_PATH": "/tmp/test-health.json",
        "HEADLESS": "false",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the required environment variables (no optional ones)."""
    env = {
        "PORTAL_USERNAME": "operator",
        "PORTAL_PASSWORD": "s3cret-pass",
        "SITES": '[{"id": "NE=50987774", "name": "Shundao 1"}]',
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env
