from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
import sqlite3
import sys

import pytest


ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from src.automation.errors import AutomationValidationError, DuplicateOccurrenceError, RuleStoreUnavailableError
from src.automation.idempotency import IdempotencyGuard
from src.automation.models import AutomationRule, Event, EventKind, ExecutionRecord, Outcome
from src.automation.store import SQLiteRuleStore, import_rules_file


NOW = datetime(2024, 1, 8, 9, 0, 10, tzinfo=timezone.utc)


def _store(tmp_path: Path) -> SQLiteRuleStore:
    return SQLiteRuleStore(tmp_path / "automation.db")


def _time_rule(rule_id: str = "r-time") -> AutomationRule:
    return AutomationRule(
        id=rule_id,
        workspace_id="ws-1",
        agent_id="agent-1",
        trigger_type="time",
        trigger_config={"cron_pattern": "* * * * *"},
        action_type="send_webhook",
        action_config={"url": "https://hooks.example.com/a"},
        created_at=NOW - timedelta(days=1),
    )


def test_list_rules_filters_scope_and_types_in_creation_order(tmp_path: Path) -> None:
    store = _store(tmp_path)
    base = NOW - timedelta(days=3)
    store.upsert_rule(_time_rule("r-time"))
    store.upsert_rule(
        AutomationRule(
            id="r-kw-2", workspace_id="ws-1", agent_id="agent-1",
            trigger_type="keyword", action_type="send_dm", created_at=base + timedelta(hours=2),
        )
    )
    store.upsert_rule(
        AutomationRule(
            id="r-kw-1", workspace_id="ws-1", agent_id="agent-1",
            trigger_type="keyword", action_type="send_dm", created_at=base + timedelta(hours=1),
        )
    )
    store.upsert_rule(
        AutomationRule(
            id="r-other", workspace_id="ws-2", agent_id="agent-1",
            trigger_type="keyword", action_type="send_dm", created_at=base,
        )
    )

    keyword_rules = store.list_rules("ws-1", "agent-1", ["keyword"])
    all_rules = store.list_rules("ws-1", "agent-1")

    assert [rule.id for rule in keyword_rules] == ["r-kw-1", "r-kw-2"]
    assert [rule.id for rule in all_rules] == ["r-kw-1", "r-kw-2", "r-time"]
    assert store.get_rule("ws-2", "agent-1", "r-kw-1") is None
    assert store.get_rule("ws-1", "agent-1", "r-time").trigger_config == {"cron_pattern": "* * * * *"}
    assert store.list_scopes("keyword") == [("ws-1", "agent-1"), ("ws-2", "agent-1")]
    assert store.list_scopes("time") == [("ws-1", "agent-1")]


def test_compare_and_set_last_executed_allows_one_winner_per_minute(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.upsert_rule(_time_rule())
    bucket = NOW.replace(second=0)

    assert store.compare_and_set_last_executed("r-time", bucket, NOW) is True
    assert store.compare_and_set_last_executed("r-time", bucket, NOW + timedelta(seconds=20)) is False

    next_bucket = bucket + timedelta(minutes=1)
    assert store.compare_and_set_last_executed("r-time", next_bucket, next_bucket) is True
    assert store.get_rule("ws-1", "agent-1", "r-time").last_executed_at == next_bucket


def test_restore_last_executed_only_when_value_unchanged(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.upsert_rule(_time_rule())
    bucket = NOW.replace(second=0)
    store.compare_and_set_last_executed("r-time", bucket, NOW)

    assert store.restore_last_executed("r-time", NOW + timedelta(seconds=1), None) is False
    assert store.restore_last_executed("r-time", NOW, None) is True
    assert store.get_rule("ws-1", "agent-1", "r-time").last_executed_at is None


def test_occurrence_claim_is_exclusive_until_released(tmp_path: Path) -> None:
    store = _store(tmp_path)

    assert store.claim_occurrence("r-1", "c-1") is True
    assert store.claim_occurrence("r-1", "c-1") is False
    assert store.claim_occurrence("r-2", "c-1") is True

    store.release_occurrence("r-1", "c-1")
    assert store.claim_occurrence("r-1", "c-1") is True


def test_stale_claims_are_pruned_after_ttl(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = SQLiteRuleStore(tmp_path / "automation.db", claim_ttl_seconds=3600)
    clock = {"now": 1000.0}
    monkeypatch.setattr(store, "_now_ts", lambda: clock["now"])

    assert store.claim_occurrence("r-1", "c-1") is True
    assert store.claim_occurrence("r-2", "c-9") is True
    clock["now"] = 1000.0 + 3599
    assert store.claim_occurrence("r-1", "c-1") is False

    clock["now"] = 1000.0 + 3601
    assert store.claim_occurrence("r-1", "c-1") is True
    assert store.cleanup() == 0

    clock["now"] = 1000.0 + 3601 + 3601
    assert store.cleanup() == 1


def test_execution_records_are_appended_and_queried(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.append_execution(
        ExecutionRecord(rule_id="r-1", occurrence_key="c-1", outcome=Outcome.MATCHED_FAILED, error="boom", attempts=2)
    )
    store.append_execution(
        ExecutionRecord(
            rule_id="r-1",
            occurrence_key="c-1",
            outcome=Outcome.MATCHED_EXECUTED,
            action_result={"status_code": 200},
            attempts=1,
        )
    )

    records = store.list_executions("r-1")

    assert [record.outcome for record in records] == [Outcome.MATCHED_EXECUTED, Outcome.MATCHED_FAILED]
    assert records[0].action_result == {"status_code": 200}
    assert records[1].error == "boom"
    assert store.has_executed("r-1", "c-1") is True
    assert store.has_executed("r-1", "c-2") is False


def test_list_rules_wraps_storage_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = _store(tmp_path)

    def _broken_connect() -> sqlite3.Connection:
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "_connect", _broken_connect)

    with pytest.raises(RuleStoreUnavailableError):
        store.list_rules("ws-1", "agent-1")


def test_import_rules_file_loads_rules_and_secrets(tmp_path: Path) -> None:
    rules_file = tmp_path / "rules.yaml"
    rules_file.write_text(
        """
rules:
  - id: r-urgent
    workspace_id: ws-1
    agent_id: agent-1
    name: urgent hook
    trigger_type: keyword
    trigger_config:
      keywords: [urgent]
    action_type: send_webhook
    action_config:
      url: https://hooks.example.com/urgent
      sign_payload: true
    created_at: "2024-01-01T00:00:00Z"
workspace_secrets:
  ws-1: s3cret
""",
        encoding="utf-8",
    )
    store = _store(tmp_path)

    assert import_rules_file(store, rules_file) == 1

    rule = store.get_rule("ws-1", "agent-1", "r-urgent")
    assert rule is not None
    assert rule.name == "urgent hook"
    assert rule.action_config["sign_payload"] is True
    assert rule.created_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert store.get_workspace_secret("ws-1") == "s3cret"
    assert store.get_workspace_secret("ws-2") is None


def test_import_rejects_non_mapping_rule_config(tmp_path: Path) -> None:
    rules_file = tmp_path / "rules.yaml"
    rules_file.write_text(
        """
rules:
  - id: r-broken
    workspace_id: ws-1
    agent_id: agent-1
    trigger_type: keyword
    trigger_config: "oops"
    action_type: send_dm
""",
        encoding="utf-8",
    )
    store = _store(tmp_path)

    with pytest.raises(AutomationValidationError) as exc_info:
        import_rules_file(store, rules_file)

    assert "trigger_config" in exc_info.value.message
    assert store.get_rule("ws-1", "agent-1", "r-broken") is None
    with pytest.raises(AutomationValidationError):
        AutomationRule.from_dict({"id": "r-2", "action_config": ["send"]})


def test_guard_uses_minute_claim_for_time_ticks(tmp_path: Path) -> None:
    store = _store(tmp_path)
    rule = store.upsert_rule(_time_rule())
    guard = IdempotencyGuard(store)
    tick = Event(kind=EventKind.TIME_TICK, workspace_id="ws-1", agent_id="agent-1", occurrence_id="tick")

    claim = guard.claim(rule, tick, NOW)

    assert claim.time_based is True
    assert claim.occurrence_key == "minute:2024-01-08T09:00Z"
    with pytest.raises(DuplicateOccurrenceError):
        guard.claim(rule, tick, NOW + timedelta(seconds=30))

    guard.release(claim)
    assert store.get_rule("ws-1", "agent-1", "r-time").last_executed_at is None
    assert guard.claim(rule, tick, NOW + timedelta(seconds=40)).time_based is True


def test_guard_rejects_replayed_occurrence_after_success(tmp_path: Path) -> None:
    store = _store(tmp_path)
    rule = AutomationRule(
        id="r-kw", workspace_id="ws-1", agent_id="agent-1", trigger_type="keyword", action_type="send_dm"
    )
    guard = IdempotencyGuard(store)
    event = Event(kind=EventKind.COMMENT, workspace_id="ws-1", agent_id="agent-1", occurrence_id="c-9")

    claim = guard.claim(rule, event, NOW)
    with pytest.raises(DuplicateOccurrenceError) as in_flight:
        guard.claim(rule, event, NOW)
    assert in_flight.value.reason == "claimed"

    store.append_execution(
        ExecutionRecord(rule_id="r-kw", occurrence_key=claim.occurrence_key, outcome=Outcome.MATCHED_EXECUTED)
    )
    guard.release(claim)
    with pytest.raises(DuplicateOccurrenceError) as replay:
        guard.claim(rule, event, NOW)
    assert replay.value.reason == "already_executed"
