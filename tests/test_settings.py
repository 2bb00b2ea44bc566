from __future__ import annotations

import logging
from pathlib import Path

import pytest
from pydantic import ValidationError

from provisioning_console.logging_config import configure_logging
from provisioning_console.settings import EngineSettings, get_settings


def test_defaults_match_supervisor_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("OVERALL_TIMEOUT", "IDLE_TIMEOUT", "LOG_LEVEL", "REBOOT_DELAY"):
        monkeypatch.delenv(f"PROVISION_{name}", raising=False)

    settings = EngineSettings(_env_file=None)

    assert settings.overall_timeout == 3600
    assert settings.idle_timeout == 300
    assert settings.reboot_delay == 10
    policy = settings.default_timeout()
    assert policy.idle_enabled
    assert policy.idle_seconds == 300


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROVISION_IDLE_TIMEOUT", "45")
    monkeypatch.setenv("PROVISION_LOG_LEVEL", "debug")

    settings = EngineSettings(_env_file=None)

    assert settings.idle_timeout == 45
    assert settings.log_level == "DEBUG"


def test_invalid_values_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROVISION_LOG_LEVEL", "chatty")
    with pytest.raises(ValidationError):
        EngineSettings(_env_file=None)

    monkeypatch.setenv("PROVISION_LOG_LEVEL", "INFO")
    monkeypatch.setenv("PROVISION_OVERALL_TIMEOUT", "0")
    with pytest.raises(ValidationError):
        EngineSettings(_env_file=None)


def test_get_settings_is_cached_and_resolves_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PROVISION_CATALOG_DIR", str(tmp_path))
    get_settings.cache_clear()
    try:
        first = get_settings()
        assert first is get_settings()
        assert first.catalog_dir == tmp_path.resolve()
    finally:
        get_settings.cache_clear()


def test_configure_logging_writes_transcript(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "session.log"

    root = logging.getLogger()
    configure_logging("INFO", log_file)
    try:
        logging.getLogger("services.test").info("transcript line")
        for handler in root.handlers:
            handler.flush()
        assert "transcript line" in log_file.read_text(encoding="utf-8")
    finally:
        for handler in list(root.handlers):
            handler.close()
            root.removeHandler(handler)
