"""
描述: 自动化规则引擎数据模型
主要功能:
    - 规则、事件、执行记录与批次结果定义
    - 触发器/动作配置的标签联合类型与解析
    - 时间戳归一化工具
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from src.automation.errors import AutomationValidationError


# region 枚举
class TriggerType(str, Enum):
    COMMENT = "comment"
    KEYWORD = "keyword"
    TIME = "time"
    MANUAL = "manual"


class ActionType(str, Enum):
    SEND_DM = "send_dm"
    SEND_PUBLIC_REPLY = "send_public_reply"
    SEND_EMAIL = "send_email"
    SEND_WEBHOOK = "send_webhook"


class EventKind(str, Enum):
    COMMENT = "comment"
    MESSAGE = "message"
    TIME_TICK = "time_tick"
    MANUAL = "manual"


class Outcome(str, Enum):
    NOT_MATCHED = "not_matched"
    MATCHED_SKIPPED_DUPLICATE = "matched_skipped_duplicate"
    MATCHED_EXECUTED = "matched_executed"
    MATCHED_FAILED = "matched_failed"


WEBHOOK_METHODS = ("GET", "POST", "PUT")
# endregion


# region 时间工具
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """无时区的时间按 UTC 解释"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """解析 ISO8601 时间戳，保留原始时区信息（可能为 naive）"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise AutomationValidationError(f"invalid timestamp: {value}") from exc


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def minute_bucket(value: datetime) -> datetime:
    """截断到 UTC 分钟"""
    return ensure_utc(value).replace(second=0, microsecond=0)
# endregion


# region 触发器配置
def _string_list(raw: Any, field_name: str) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        raise AutomationValidationError(f"{field_name} must be a list of strings")
    result: list[str] = []
    for item in raw:
        text = str(item or "").strip()
        if text:
            result.append(text)
    return result


def _optional_text(raw: Any) -> str | None:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


@dataclass(frozen=True)
class CommentTrigger:
    keywords: list[str] = field(default_factory=list)
    scope_id: str | None = None
    platforms: list[str] = field(default_factory=list)
    exclude_keywords: list[str] = field(default_factory=list)
    skip_replies: bool = True


@dataclass(frozen=True)
class KeywordTrigger:
    keywords: list[str] = field(default_factory=list)
    platforms: list[str] = field(default_factory=list)
    exclude_keywords: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TimeTrigger:
    scheduled_time: str | None = None
    cron_pattern: str | None = None
    timezone: str = "UTC"
    message_template: str | None = None


@dataclass(frozen=True)
class ManualTrigger:
    message_template: str | None = None


TriggerConfig = Union[CommentTrigger, KeywordTrigger, TimeTrigger, ManualTrigger]


def parse_trigger(trigger_type: Any, config: Any) -> TriggerConfig:
    """
    解析触发器配置为类型化变体

    异常:
        AutomationValidationError: 类型未知或配置结构不匹配
    """
    try:
        kind = TriggerType(str(trigger_type))
    except ValueError as exc:
        raise AutomationValidationError(f"unknown trigger_type: {trigger_type}") from exc
    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise AutomationValidationError(f"trigger_config for {kind.value} must be an object")

    if kind is TriggerType.COMMENT:
        return CommentTrigger(
            keywords=_string_list(config.get("keywords"), "keywords"),
            scope_id=_optional_text(config.get("scope_id")),
            platforms=_string_list(config.get("platforms"), "platforms"),
            exclude_keywords=_string_list(config.get("exclude_keywords"), "exclude_keywords"),
            skip_replies=bool(config.get("skip_replies", config.get("auto_skip_replies", True))),
        )
    if kind is TriggerType.KEYWORD:
        return KeywordTrigger(
            keywords=_string_list(config.get("keywords"), "keywords"),
            platforms=_string_list(config.get("platforms"), "platforms"),
            exclude_keywords=_string_list(config.get("exclude_keywords"), "exclude_keywords"),
        )
    if kind is TriggerType.TIME:
        scheduled_time = _optional_text(config.get("scheduled_time"))
        cron_pattern = _optional_text(config.get("cron_pattern"))
        if not scheduled_time and not cron_pattern:
            raise AutomationValidationError("time trigger requires scheduled_time or cron_pattern")
        return TimeTrigger(
            scheduled_time=scheduled_time,
            cron_pattern=cron_pattern,
            timezone=_optional_text(config.get("timezone")) or "UTC",
            message_template=_optional_text(config.get("message_template")),
        )
    return ManualTrigger(message_template=_optional_text(config.get("message_template")))
# endregion


# region 动作配置
@dataclass(frozen=True)
class DirectMessageAction:
    template: str | None = None


@dataclass(frozen=True)
class PublicReplyAction:
    template: str


@dataclass(frozen=True)
class EmailAction:
    template: str
    to: list[str] = field(default_factory=list)
    subject: str = ""
    from_name: str | None = None
    reply_to: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookAction:
    url: str
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    payload_template: Any = None
    sign_payload: bool = False
    retry_count: int | None = None


ActionConfig = Union[DirectMessageAction, PublicReplyAction, EmailAction, WebhookAction]


def parse_action(action_type: Any, config: Any) -> ActionConfig:
    """
    解析动作配置为类型化变体

    异常:
        AutomationValidationError: 类型未知或配置结构不匹配
    """
    try:
        kind = ActionType(str(action_type))
    except ValueError as exc:
        raise AutomationValidationError(f"unknown action_type: {action_type}") from exc
    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise AutomationValidationError(f"action_config for {kind.value} must be an object")

    if kind is ActionType.SEND_DM:
        template = config.get("template")
        if template is not None and not isinstance(template, str):
            raise AutomationValidationError("send_dm template must be a string")
        return DirectMessageAction(template=template or None)

    if kind is ActionType.SEND_PUBLIC_REPLY:
        template = config.get("template")
        if not isinstance(template, str) or not template.strip():
            raise AutomationValidationError("send_public_reply requires template")
        return PublicReplyAction(template=template)

    if kind is ActionType.SEND_EMAIL:
        template = config.get("template")
        if not isinstance(template, str) or not template:
            raise AutomationValidationError("send_email requires template")
        variables = config.get("variables") or {}
        if not isinstance(variables, dict):
            raise AutomationValidationError("send_email variables must be an object")
        return EmailAction(
            template=template,
            to=_string_list(config.get("to"), "to"),
            subject=str(config.get("subject") or ""),
            from_name=_optional_text(config.get("from_name")),
            reply_to=_optional_text(config.get("reply_to")),
            variables=dict(variables),
        )

    url = _optional_text(config.get("url"))
    if not url or not url.lower().startswith(("http://", "https://")):
        raise AutomationValidationError("send_webhook requires an http(s) url")
    method = str(config.get("method") or "POST").strip().upper()
    if method not in WEBHOOK_METHODS:
        raise AutomationValidationError(f"unsupported webhook method: {method}")
    headers = config.get("headers") or {}
    if not isinstance(headers, dict):
        raise AutomationValidationError("send_webhook headers must be an object")
    retry_count = config.get("retry_count")
    if retry_count is not None:
        try:
            retry_count = int(retry_count)
        except (TypeError, ValueError) as exc:
            raise AutomationValidationError("send_webhook retry_count must be an integer") from exc
        if retry_count < 0:
            raise AutomationValidationError("send_webhook retry_count must be >= 0")
    payload_template = config.get("payload_template")
    if isinstance(payload_template, str):
        # 字符串模板先解析为 JSON 结构，占位符只在字符串叶子上渲染
        try:
            payload_template = json.loads(payload_template)
        except ValueError as exc:
            raise AutomationValidationError("send_webhook payload_template must be valid JSON") from exc
    return WebhookAction(
        url=url,
        method=method,
        headers={str(key): str(value) for key, value in headers.items()},
        payload_template=payload_template,
        sign_payload=bool(config.get("sign_payload", False)),
        retry_count=retry_count,
    )
# endregion


# region 规则与事件
@dataclass
class AutomationRule:
    """租户自动化规则（引擎只读）"""

    id: str
    workspace_id: str
    agent_id: str
    trigger_type: str
    action_type: str
    trigger_config: dict[str, Any] = field(default_factory=dict)
    action_config: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    name: str = ""
    last_executed_at: datetime | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "agent_id": self.agent_id,
            "name": self.name,
            "trigger_type": self.trigger_type,
            "trigger_config": dict(self.trigger_config),
            "action_type": self.action_type,
            "action_config": dict(self.action_config),
            "enabled": self.enabled,
            "last_executed_at": format_timestamp(self.last_executed_at),
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AutomationRule":
        rule_id = str(data.get("id") or "")
        for key in ("trigger_config", "action_config"):
            value = data.get(key)
            if value is not None and not isinstance(value, dict):
                raise AutomationValidationError(f"rule {rule_id} {key} must be a mapping")
        last_executed_at = parse_timestamp(data.get("last_executed_at"))
        created_at = parse_timestamp(data.get("created_at"))
        return cls(
            id=rule_id,
            workspace_id=str(data.get("workspace_id") or ""),
            agent_id=str(data.get("agent_id") or ""),
            name=str(data.get("name") or ""),
            trigger_type=str(data.get("trigger_type") or ""),
            trigger_config=dict(data.get("trigger_config") or {}),
            action_type=str(data.get("action_type") or ""),
            action_config=dict(data.get("action_config") or {}),
            enabled=bool(data.get("enabled", True)),
            last_executed_at=ensure_utc(last_executed_at) if last_executed_at else None,
            created_at=ensure_utc(created_at) if created_at else None,
        )


@dataclass
class Event:
    """单次评估的输入事件"""

    kind: EventKind
    workspace_id: str
    agent_id: str
    occurrence_id: str
    platform: str = ""
    content: str = ""
    author_id: str | None = None
    author_name: str | None = None
    scope_id: str | None = None
    comment_id: str | None = None
    parent_id: str | None = None
    target_rule_id: str | None = None
    recipient: str | None = None
    message_override: str | None = None
    received_at: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)
# endregion


# region 执行结果
@dataclass
class ExecutionRecord:
    """单条规则单次触发的审计记录（只追加）"""

    rule_id: str
    occurrence_key: str
    outcome: Outcome
    workspace_id: str = ""
    agent_id: str = ""
    action_result: dict[str, Any] | None = None
    error: str | None = None
    warning: str | None = None
    attempts: int = 0
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "occurrence_key": self.occurrence_key,
            "workspace_id": self.workspace_id,
            "agent_id": self.agent_id,
            "outcome": self.outcome.value,
            "action_result": self.action_result,
            "error": self.error,
            "warning": self.warning,
            "attempts": self.attempts,
            "created_at": format_timestamp(self.created_at),
        }


@dataclass
class RuleOutcome:
    rule_id: str
    outcome: Outcome
    action_result: dict[str, Any] | None = None
    error: str | None = None
    warning: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"rule_id": self.rule_id, "outcome": self.outcome.value}
        if self.action_result is not None:
            payload["action_result"] = self.action_result
        if self.error:
            payload["error"] = self.error
        if self.warning:
            payload["warning"] = self.warning
        return payload


@dataclass
class ExecutionBatchResult:
    """入口调用的聚合结果"""

    occurrence_id: str
    outcomes: list[RuleOutcome] = field(default_factory=list)

    @property
    def processed(self) -> bool:
        return any(item.outcome is Outcome.MATCHED_EXECUTED for item in self.outcomes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "occurrence_id": self.occurrence_id,
            "outcomes": [item.to_dict() for item in self.outcomes],
        }
# endregion
