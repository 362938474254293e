"""
描述: 基于 SQLite 的规则存储参考实现
主要功能:
    - 规则读取（按创建顺序）与 YAML 批量导入
    - last_executed_at 的单语句条件更新（CAS）
    - 非定时触发占用记录与执行审计
    - 工作区签名密钥
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Iterable, Iterator

import yaml

from src.automation.errors import AutomationValidationError, RuleStoreUnavailableError, StoreConflictError
from src.automation.models import AutomationRule, ExecutionRecord, Outcome, ensure_utc


LOGGER = logging.getLogger(__name__)


def _to_ts(value: datetime | None) -> float | None:
    if value is None:
        return None
    return ensure_utc(value).timestamp()


def _from_ts(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class SQLiteRuleStore:
    """规则存储（SQLite + WAL + 进程内锁）"""

    def __init__(
        self,
        db_path: str | Path = "automation_data/automation.db",
        claim_ttl_seconds: int = 86400,
    ) -> None:
        self._db_path = Path(db_path)
        self._claim_ttl_seconds = max(0, int(claim_ttl_seconds))
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._init_db()

    @property
    def db_path(self) -> Path:
        return self._db_path

    # region 连接管理
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS automation_rules (
                    id TEXT PRIMARY KEY,
                    workspace_id TEXT NOT NULL,
                    agent_id TEXT NOT NULL,
                    name TEXT NOT NULL DEFAULT '',
                    trigger_type TEXT NOT NULL,
                    trigger_config TEXT NOT NULL DEFAULT '{}',
                    action_type TEXT NOT NULL,
                    action_config TEXT NOT NULL DEFAULT '{}',
                    enabled INTEGER NOT NULL DEFAULT 1,
                    last_executed_at REAL,
                    created_at REAL NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_rules_scope
                ON automation_rules (workspace_id, agent_id, created_at)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS occurrence_claims (
                    rule_id TEXT NOT NULL,
                    occurrence_key TEXT NOT NULL,
                    claimed_at REAL NOT NULL,
                    PRIMARY KEY (rule_id, occurrence_key)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_claims_claimed_at ON occurrence_claims (claimed_at)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS execution_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    rule_id TEXT NOT NULL,
                    occurrence_key TEXT NOT NULL,
                    workspace_id TEXT NOT NULL DEFAULT '',
                    agent_id TEXT NOT NULL DEFAULT '',
                    outcome TEXT NOT NULL,
                    action_result TEXT,
                    error TEXT,
                    warning TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_execution_rule_occurrence
                ON execution_records (rule_id, occurrence_key, outcome)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workspace_secrets (
                    workspace_id TEXT PRIMARY KEY,
                    secret TEXT NOT NULL
                )
                """
            )
    # endregion

    # region 规则读写
    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> AutomationRule:
        return AutomationRule(
            id=str(row["id"]),
            workspace_id=str(row["workspace_id"]),
            agent_id=str(row["agent_id"]),
            name=str(row["name"] or ""),
            trigger_type=str(row["trigger_type"]),
            trigger_config=json.loads(row["trigger_config"] or "{}"),
            action_type=str(row["action_type"]),
            action_config=json.loads(row["action_config"] or "{}"),
            enabled=bool(row["enabled"]),
            last_executed_at=_from_ts(row["last_executed_at"]),
            created_at=_from_ts(row["created_at"]),
        )

    def upsert_rule(self, rule: AutomationRule) -> AutomationRule:
        if not rule.id or not rule.workspace_id or not rule.agent_id:
            raise AutomationValidationError("rule requires id, workspace_id and agent_id")
        if rule.created_at is None:
            rule.created_at = datetime.now(timezone.utc)
        with self._lock:
            with self._session() as conn:
                conn.execute(
                    """
                    INSERT INTO automation_rules(
                        id, workspace_id, agent_id, name, trigger_type, trigger_config,
                        action_type, action_config, enabled, last_executed_at, created_at
                    ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        workspace_id = excluded.workspace_id,
                        agent_id = excluded.agent_id,
                        name = excluded.name,
                        trigger_type = excluded.trigger_type,
                        trigger_config = excluded.trigger_config,
                        action_type = excluded.action_type,
                        action_config = excluded.action_config,
                        enabled = excluded.enabled
                    """,
                    (
                        rule.id,
                        rule.workspace_id,
                        rule.agent_id,
                        rule.name,
                        rule.trigger_type,
                        json.dumps(rule.trigger_config, ensure_ascii=False),
                        rule.action_type,
                        json.dumps(rule.action_config, ensure_ascii=False),
                        1 if rule.enabled else 0,
                        _to_ts(rule.last_executed_at),
                        _to_ts(rule.created_at),
                    ),
                )
        return rule

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            with self._session() as conn:
                cursor = conn.execute("DELETE FROM automation_rules WHERE id = ?", (rule_id,))
                return cursor.rowcount > 0

    def list_rules(
        self,
        workspace_id: str,
        agent_id: str,
        trigger_types: Iterable[str] | None = None,
    ) -> list[AutomationRule]:
        sql = "SELECT * FROM automation_rules WHERE workspace_id = ? AND agent_id = ?"
        params: list[Any] = [workspace_id, agent_id]
        if trigger_types is not None:
            types = [str(item) for item in trigger_types]
            if not types:
                return []
            sql += f" AND trigger_type IN ({', '.join('?' for _ in types)})"
            params.extend(types)
        sql += " ORDER BY created_at ASC, id ASC"
        try:
            with self._session() as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise RuleStoreUnavailableError(f"failed to list rules: {exc}") from exc
        return [self._row_to_rule(row) for row in rows]

    def list_scopes(self, trigger_type: str | None = None) -> list[tuple[str, str]]:
        """返回存在启用规则的 (workspace_id, agent_id) 组合"""
        sql = "SELECT DISTINCT workspace_id, agent_id FROM automation_rules WHERE enabled = 1"
        params: list[Any] = []
        if trigger_type:
            sql += " AND trigger_type = ?"
            params.append(trigger_type)
        sql += " ORDER BY workspace_id, agent_id"
        try:
            with self._session() as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise RuleStoreUnavailableError(f"failed to list rule scopes: {exc}") from exc
        return [(str(row["workspace_id"]), str(row["agent_id"])) for row in rows]

    def get_rule(self, workspace_id: str, agent_id: str, rule_id: str) -> AutomationRule | None:
        try:
            with self._session() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM automation_rules
                    WHERE id = ? AND workspace_id = ? AND agent_id = ?
                    """,
                    (rule_id, workspace_id, agent_id),
                ).fetchone()
        except sqlite3.Error as exc:
            raise RuleStoreUnavailableError(f"failed to load rule {rule_id}: {exc}") from exc
        if row is None:
            return None
        return self._row_to_rule(row)
    # endregion

    # region 定时触发 CAS
    def compare_and_set_last_executed(
        self,
        rule_id: str,
        bucket_start: datetime,
        executed_at: datetime,
    ) -> bool:
        try:
            with self._lock:
                with self._session() as conn:
                    cursor = conn.execute(
                        """
                        UPDATE automation_rules
                        SET last_executed_at = ?
                        WHERE id = ?
                          AND (last_executed_at IS NULL OR last_executed_at < ?)
                        """,
                        (_to_ts(executed_at), rule_id, _to_ts(bucket_start)),
                    )
                    return cursor.rowcount == 1
        except sqlite3.OperationalError as exc:
            raise StoreConflictError(f"last_executed_at update rejected for rule {rule_id}: {exc}") from exc

    def restore_last_executed(
        self,
        rule_id: str,
        claimed_value: datetime,
        previous_value: datetime | None,
    ) -> bool:
        try:
            with self._lock:
                with self._session() as conn:
                    cursor = conn.execute(
                        """
                        UPDATE automation_rules
                        SET last_executed_at = ?
                        WHERE id = ? AND last_executed_at = ?
                        """,
                        (_to_ts(previous_value), rule_id, _to_ts(claimed_value)),
                    )
                    return cursor.rowcount == 1
        except sqlite3.OperationalError as exc:
            raise StoreConflictError(f"last_executed_at restore rejected for rule {rule_id}: {exc}") from exc
    # endregion

    # region 触发占用
    @staticmethod
    def _now_ts() -> float:
        return time.time()

    def _cleanup_expired_claims(self, conn: sqlite3.Connection, now_ts: float) -> int:
        if self._claim_ttl_seconds <= 0:
            return 0
        cursor = conn.execute(
            "DELETE FROM occurrence_claims WHERE claimed_at < ?",
            (now_ts - self._claim_ttl_seconds,),
        )
        return int(cursor.rowcount or 0)

    def cleanup(self) -> int:
        """清理过期的触发占用，返回删除条数"""
        with self._lock:
            with self._session() as conn:
                return self._cleanup_expired_claims(conn, self._now_ts())

    def claim_occurrence(self, rule_id: str, occurrence_key: str) -> bool:
        try:
            with self._lock:
                with self._session() as conn:
                    now_ts = self._now_ts()
                    self._cleanup_expired_claims(conn, now_ts)
                    conn.execute(
                        "INSERT INTO occurrence_claims(rule_id, occurrence_key, claimed_at) VALUES(?, ?, ?)",
                        (rule_id, occurrence_key, now_ts),
                    )
            return True
        except sqlite3.IntegrityError:
            return False
        except sqlite3.OperationalError as exc:
            raise StoreConflictError(f"occurrence claim rejected for rule {rule_id}: {exc}") from exc

    def release_occurrence(self, rule_id: str, occurrence_key: str) -> None:
        with self._lock:
            with self._session() as conn:
                conn.execute(
                    "DELETE FROM occurrence_claims WHERE rule_id = ? AND occurrence_key = ?",
                    (rule_id, occurrence_key),
                )
    # endregion

    # region 执行审计
    def has_executed(self, rule_id: str, occurrence_key: str) -> bool:
        with self._session() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM execution_records
                WHERE rule_id = ? AND occurrence_key = ? AND outcome = ?
                LIMIT 1
                """,
                (rule_id, occurrence_key, Outcome.MATCHED_EXECUTED.value),
            ).fetchone()
        return row is not None

    def append_execution(self, record: ExecutionRecord) -> None:
        with self._lock:
            with self._session() as conn:
                conn.execute(
                    """
                    INSERT INTO execution_records(
                        rule_id, occurrence_key, workspace_id, agent_id, outcome,
                        action_result, error, warning, attempts, created_at
                    ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.rule_id,
                        record.occurrence_key,
                        record.workspace_id,
                        record.agent_id,
                        record.outcome.value,
                        json.dumps(record.action_result, ensure_ascii=False, default=str)
                        if record.action_result is not None
                        else None,
                        record.error,
                        record.warning,
                        int(record.attempts),
                        _to_ts(record.created_at),
                    ),
                )

    def list_executions(self, rule_id: str | None = None, limit: int = 100) -> list[ExecutionRecord]:
        sql = "SELECT * FROM execution_records"
        params: list[Any] = []
        if rule_id:
            sql += " WHERE rule_id = ?"
            params.append(rule_id)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._session() as conn:
            rows = conn.execute(sql, params).fetchall()
        records: list[ExecutionRecord] = []
        for row in rows:
            action_result = json.loads(row["action_result"]) if row["action_result"] else None
            records.append(
                ExecutionRecord(
                    rule_id=str(row["rule_id"]),
                    occurrence_key=str(row["occurrence_key"]),
                    workspace_id=str(row["workspace_id"] or ""),
                    agent_id=str(row["agent_id"] or ""),
                    outcome=Outcome(str(row["outcome"])),
                    action_result=action_result,
                    error=row["error"],
                    warning=row["warning"],
                    attempts=int(row["attempts"] or 0),
                    created_at=_from_ts(row["created_at"]) or datetime.now(timezone.utc),
                )
            )
        return records
    # endregion

    # region 工作区密钥
    def set_workspace_secret(self, workspace_id: str, secret: str) -> None:
        with self._lock:
            with self._session() as conn:
                conn.execute(
                    """
                    INSERT INTO workspace_secrets(workspace_id, secret) VALUES(?, ?)
                    ON CONFLICT(workspace_id) DO UPDATE SET secret = excluded.secret
                    """,
                    (workspace_id, secret),
                )

    def get_workspace_secret(self, workspace_id: str) -> str | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT secret FROM workspace_secrets WHERE workspace_id = ?",
                (workspace_id,),
            ).fetchone()
        if row is None:
            return None
        return str(row["secret"])
    # endregion


# region YAML 规则导入
def load_rules_file(path: str | Path) -> tuple[list[AutomationRule], dict[str, str]]:
    """
    读取规则 YAML 文件

    格式:
        rules: [ {id, workspace_id, agent_id, trigger_type, ...}, ... ]
        workspace_secrets: { workspace_id: secret }
    """
    file_path = Path(path)
    if not file_path.exists():
        raise AutomationValidationError(f"rules file not found: {file_path}")
    data = yaml.safe_load(file_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise AutomationValidationError("rules file must be a mapping")

    raw_rules = data.get("rules") or []
    if not isinstance(raw_rules, list):
        raise AutomationValidationError("rules must be a list")
    rules: list[AutomationRule] = []
    for index, item in enumerate(raw_rules):
        if not isinstance(item, dict):
            raise AutomationValidationError(f"rule #{index} must be a mapping")
        rules.append(AutomationRule.from_dict(item))

    raw_secrets = data.get("workspace_secrets") or {}
    if not isinstance(raw_secrets, dict):
        raise AutomationValidationError("workspace_secrets must be a mapping")
    secrets = {str(key): str(value) for key, value in raw_secrets.items() if value}
    return rules, secrets


def import_rules_file(store: SQLiteRuleStore, path: str | Path) -> int:
    rules, secrets = load_rules_file(path)
    for rule in rules:
        store.upsert_rule(rule)
    for workspace_id, secret in secrets.items():
        store.set_workspace_secret(workspace_id, secret)
    LOGGER.info("imported %s automation rules from %s", len(rules), path)
    return len(rules)
# endregion
