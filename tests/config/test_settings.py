from __future__ import annotations

from pathlib import Path
import sys

import pytest


ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from src.config import load_settings, resolve_runtime_path


_ENV_KEYS = (
    "LOG_LEVEL",
    "AUTOMATION_API_KEY",
    "AUTOMATION_WEBHOOK_SECRET",
    "AUTOMATION_ACTION_MAX_RETRIES",
    "AUTOMATION_TICK_SCHEDULER_ENABLED",
    "CHANNEL_GATEWAY_URL",
)


def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_load_settings_expands_env_placeholders(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("HOOK_SECRET", "from-env")
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
automation:
  default_signing_secret: ${HOOK_SECRET}
  api_key: ${MISSING_AUTOMATION_KEY:-fallback-key}
  webhook_signing_secrets:
    ws-1: ${HOOK_SECRET}
  webhook_default_retry_count: 4
""",
        encoding="utf-8",
    )

    settings = load_settings(str(config_path))

    assert settings.automation.default_signing_secret == "from-env"
    assert settings.automation.api_key == "fallback-key"
    assert settings.automation.webhook_signing_secrets == {"ws-1": "from-env"}
    assert settings.automation.webhook_default_retry_count == 4
    assert settings.automation.action_max_retries == 1


def test_env_overrides_take_precedence(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    config_path = tmp_path / "config.yaml"
    config_path.write_text("automation:\n  action_max_retries: 1\n", encoding="utf-8")
    monkeypatch.setenv("AUTOMATION_ACTION_MAX_RETRIES", "3")
    monkeypatch.setenv("AUTOMATION_TICK_SCHEDULER_ENABLED", "true")
    monkeypatch.setenv("CHANNEL_GATEWAY_URL", "https://gateway.example.com")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    settings = load_settings(str(config_path))

    assert settings.automation.action_max_retries == 3
    assert settings.automation.tick_scheduler_enabled is True
    assert settings.channels.gateway_url == "https://gateway.example.com"
    assert settings.logging.level == "DEBUG"


def test_missing_config_file_uses_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)

    settings = load_settings(str(tmp_path / "absent.yaml"))

    assert settings.server.port == 8082
    assert settings.automation.webhook_signature_header == "X-Automation-Signature"
    assert settings.automation.webhook_default_retry_count == 2


def test_resolve_runtime_path_uses_base_dir(tmp_path: Path) -> None:
    assert resolve_runtime_path("data/a.db", base_dir=tmp_path) == (tmp_path / "data" / "a.db").resolve()
    absolute = tmp_path / "abs.db"
    assert resolve_runtime_path(absolute) == absolute
