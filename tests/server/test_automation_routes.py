from __future__ import annotations

import asyncio
from pathlib import Path
import sys
from types import SimpleNamespace
from typing import Any

import httpx
import pytest


ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

import src.server.app_factory as app_factory
import src.server.automation as automation_server
from src.automation.channels import ChannelMessage
from src.automation.errors import RuleStoreUnavailableError
from src.automation.models import AutomationRule
from src.automation.service import AutomationEngine, build_engine
from src.config import AutomationSettings, LoggingSettings, Settings


class _FakeChannelSender:
    def __init__(self) -> None:
        self.direct: list[ChannelMessage] = []

    async def send_direct_message(self, message: ChannelMessage) -> dict[str, Any]:
        self.direct.append(message)
        return {"message_id": "dm-1"}

    async def send_public_reply(self, message: ChannelMessage) -> dict[str, Any]:
        return {"message_id": "reply-1"}


class _OfflineCoordinator:
    async def handle_comment_event(self, event, now=None):
        raise RuleStoreUnavailableError("rule store offline")


def _build_settings(tmp_path: Path, **automation: Any) -> Settings:
    values: dict[str, Any] = {
        "api_key": "k-123",
        "db_file": str(tmp_path / "automation.db"),
        "action_retry_delay_seconds": 0.0,
    }
    values.update(automation)
    return Settings(
        logging=LoggingSettings(level="WARNING", format="text"),
        automation=AutomationSettings(**values),
    )


def _install(monkeypatch: pytest.MonkeyPatch, settings: Settings, engine: Any):
    monkeypatch.setattr(app_factory, "get_settings", lambda: settings)
    monkeypatch.setattr(automation_server, "get_settings", lambda: settings)
    monkeypatch.setattr(automation_server, "get_automation_engine", lambda _settings: engine)
    return app_factory.create_app()


def _engine(settings: Settings, sender: _FakeChannelSender) -> AutomationEngine:
    engine = build_engine(settings, channel_sender=sender)
    engine.store.upsert_rule(
        AutomationRule(
            id="r-dm",
            workspace_id="ws-1",
            agent_id="agent-1",
            trigger_type="keyword",
            trigger_config={"keywords": ["price"]},
            action_type="send_dm",
            action_config={"template": "Hi {{input.authorName}}, prices are in your inbox"},
        )
    )
    return engine


def _request(app, method: str, path: str, **kwargs: Any) -> httpx.Response:
    async def _call() -> httpx.Response:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            return await client.request(method, path, **kwargs)

    return asyncio.run(_call())


COMMENT = {
    "workspace_id": "ws-1",
    "agent_id": "agent-1",
    "occurrence_id": "c-1",
    "platform": "instagram",
    "content": "what is the price?",
    "author_id": "user-9",
    "author_name": "Ann",
    "scope_id": "post-1",
}


def test_health_reports_automation_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings = _build_settings(tmp_path)
    app = _install(monkeypatch, settings, SimpleNamespace())

    response = _request(app, "GET", "/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "automation_enabled": True}


def test_routes_require_api_key(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings = _build_settings(tmp_path)
    app = _install(monkeypatch, settings, _engine(settings, _FakeChannelSender()))

    missing = _request(app, "POST", "/automation/events/comment", json=COMMENT)
    wrong = _request(app, "POST", "/automation/events/comment", json=COMMENT, headers={"x-automation-key": "nope"})

    assert missing.status_code == 401
    assert wrong.status_code == 401


def test_comment_event_executes_matching_rule_once(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings = _build_settings(tmp_path)
    sender = _FakeChannelSender()
    app = _install(monkeypatch, settings, _engine(settings, sender))
    headers = {"x-automation-key": "k-123"}

    first = _request(app, "POST", "/automation/events/comment", json=COMMENT, headers=headers)
    replay = _request(app, "POST", "/automation/events/comment", json=COMMENT, headers=headers)

    assert first.status_code == 200
    body = first.json()
    assert body["status"] == "ok"
    assert body["result"]["processed"] is True
    assert body["result"]["outcomes"][0]["outcome"] == "matched_executed"
    assert replay.json()["result"]["outcomes"][0]["outcome"] == "matched_skipped_duplicate"
    assert [message.text for message in sender.direct] == ["Hi Ann, prices are in your inbox"]


def test_reply_comment_is_not_answered_by_comment_rule(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings = _build_settings(tmp_path)
    sender = _FakeChannelSender()
    engine = build_engine(settings, channel_sender=sender)
    engine.store.upsert_rule(
        AutomationRule(
            id="r-post",
            workspace_id="ws-1",
            agent_id="agent-1",
            trigger_type="comment",
            trigger_config={"scope_id": "post-1"},
            action_type="send_dm",
            action_config={},
        )
    )
    app = _install(monkeypatch, settings, engine)
    reply = dict(COMMENT, occurrence_id="c-2", parent_id="c-1")

    response = _request(app, "POST", "/automation/events/comment", json=reply, headers={"x-automation-key": "k-123"})

    assert response.status_code == 200
    assert response.json()["result"]["outcomes"][0]["outcome"] == "not_matched"
    assert sender.direct == []
    assert engine.store.list_executions("r-post")[0].action_result == {"reason": "reply"}


def test_message_event_and_schedule_tick(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings = _build_settings(tmp_path)
    app = _install(monkeypatch, settings, _engine(settings, _FakeChannelSender()))
    headers = {"x-automation-key": "k-123"}

    message = _request(
        app,
        "POST",
        "/automation/events/message",
        json={**COMMENT, "occurrence_id": "m-1"},
        headers=headers,
    )
    tick = _request(
        app,
        "POST",
        "/automation/schedule/tick",
        json={"workspace_id": "ws-1", "agent_id": "agent-1", "now": "2024-01-08T09:00:00Z"},
        headers=headers,
    )

    assert message.status_code == 200
    assert message.json()["result"]["processed"] is True
    assert tick.status_code == 200
    assert tick.json()["result"] == {
        "processed": False,
        "occurrence_id": "tick:2024-01-08T09:00Z",
        "outcomes": [],
    }


def test_manual_run_for_unknown_rule_is_not_matched(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings = _build_settings(tmp_path)
    app = _install(monkeypatch, settings, _engine(settings, _FakeChannelSender()))

    response = _request(
        app,
        "POST",
        "/automation/rules/r-missing/run",
        json={"workspace_id": "ws-1", "agent_id": "agent-1"},
        headers={"x-automation-key": "k-123"},
    )

    assert response.status_code == 200
    outcome = response.json()["result"]["outcomes"][0]
    assert outcome["outcome"] == "not_matched"
    assert "not found" in outcome["error"]


def test_manual_run_sends_override_to_recipient(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings = _build_settings(tmp_path)
    sender = _FakeChannelSender()
    app = _install(monkeypatch, settings, _engine(settings, sender))

    response = _request(
        app,
        "POST",
        "/automation/rules/r-dm/run",
        json={"workspace_id": "ws-1", "agent_id": "agent-1", "recipient": "user-2", "message_override": "hello"},
        headers={"x-automation-key": "k-123"},
    )

    assert response.status_code == 200
    assert response.json()["result"]["processed"] is True
    assert sender.direct[0].recipient_id == "user-2"
    assert sender.direct[0].text == "hello"


def test_invalid_payload_returns_400(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings = _build_settings(tmp_path)
    app = _install(monkeypatch, settings, _engine(settings, _FakeChannelSender()))

    response = _request(
        app,
        "POST",
        "/automation/events/comment",
        json={"agent_id": "agent-1", "occurrence_id": "c-1"},
        headers={"x-automation-key": "k-123"},
    )

    assert response.status_code == 400


def test_store_outage_returns_503(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings = _build_settings(tmp_path)
    app = _install(monkeypatch, settings, SimpleNamespace(coordinator=_OfflineCoordinator()))

    response = _request(
        app,
        "POST",
        "/automation/events/comment",
        json=COMMENT,
        headers={"x-automation-key": "k-123"},
    )

    assert response.status_code == 503
    assert "offline" in response.json()["detail"]


def test_disabled_automation_returns_503(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings = _build_settings(tmp_path, enabled=False, api_key="")
    app = _install(monkeypatch, settings, SimpleNamespace())

    response = _request(app, "POST", "/automation/events/comment", json=COMMENT)

    assert response.status_code == 503
