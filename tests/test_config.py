from pathlib import Path

import pytest

from relay_library.config import RelayConfig
from relay_library.constants import BACKOFF_MAX_SECONDS


def test_defaults() -> None:
    config = RelayConfig(data_dir=Path("/tmp/relay"))
    assert config.accounts_file == Path("/tmp/relay/accounts.json")
    assert config.quota_file == Path("/tmp/relay/quota_state.json")
    assert config.logs_dir == Path("/tmp/relay/logs")
    assert config.backoff_max_seconds == BACKOFF_MAX_SECONDS
    assert config.dialect_for("Anthropic") == "anthropic"
    assert config.dialect_for("antigravity") == "gemini"
    assert config.dialect_for("my_custom") == "openai"
    assert config.api_base_for("gemini").startswith("https://generativelanguage")
    assert config.api_base_for("my_custom") is None


def test_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MYLOCAL_API_BASE", "http://localhost:8080/v1/")
    monkeypatch.setenv("MYLOCAL_DIALECT", "Anthropic")
    monkeypatch.setenv("RELAY_BACKOFF_BASE", "2.5")
    monkeypatch.setenv("RELAY_BACKOFF_MAX", "120")
    monkeypatch.setenv("RELAY_RATE_LIMIT_WINDOW_MS", "0")
    monkeypatch.setenv("RELAY_RATE_LIMIT_REQUESTS", "not a number")
    monkeypatch.setenv("RELAY_FAILURE_LOG", "no")
    monkeypatch.setenv("RELAY_LOAD_BALANCE_PROVIDERS", "Gemini, openai ,")

    config = RelayConfig.from_env(data_dir=tmp_path)

    assert config.data_dir == tmp_path.resolve()
    assert config.api_base_for("mylocal") == "http://localhost:8080/v1"
    assert config.dialect_for("mylocal") == "anthropic"
    assert config.backoff_base_seconds == 2.5
    assert config.backoff_max_seconds == 120.0
    assert config.rate_limit_window_ms == 0
    assert config.rate_limit_requests == 2
    assert config.enable_failure_log is False
    assert config.load_balance_default_providers == ("gemini", "openai")


def test_data_dir_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("RELAY_DATA_DIR", str(tmp_path / "state"))
    assert RelayConfig.from_env().data_dir == (tmp_path / "state").resolve()
