"""
描述: 触发器匹配
主要功能:
    - comment / keyword 关键词与作用域匹配
    - time 触发（一次性时间点 + 五段 cron，按规则时区）
    - manual 触发按目标规则匹配
    - 配置错误转为不匹配 + 校验警告，不中断批次
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from src.automation.errors import AutomationValidationError
from src.automation.models import (
    AutomationRule,
    CommentTrigger,
    Event,
    EventKind,
    KeywordTrigger,
    ManualTrigger,
    TimeTrigger,
    TriggerConfig,
    ensure_utc,
    minute_bucket,
    parse_timestamp,
    parse_trigger,
)


LOGGER = logging.getLogger(__name__)

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


# region 时间工具
def resolve_timezone(name: str | None) -> ZoneInfo:
    key = str(name or "").strip() or "UTC"
    try:
        return ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise AutomationValidationError(f"unknown timezone: {key}") from exc


def validate_cron(pattern: str) -> str:
    normalized = " ".join(str(pattern or "").split())
    if len(normalized.split(" ")) != 5:
        raise AutomationValidationError(f"cron_pattern must have five fields: {pattern}")
    if not croniter.is_valid(normalized):
        raise AutomationValidationError(f"invalid cron_pattern: {pattern}")
    return normalized


def cron_matches(pattern: str, moment: datetime) -> bool:
    """分钟粒度判断 moment（已转换到规则时区）是否命中 cron"""
    normalized = validate_cron(pattern)
    return bool(croniter.match(normalized, moment.replace(second=0, microsecond=0)))


def scheduled_time_matches(scheduled_time: str, now: datetime, tz: ZoneInfo) -> bool:
    scheduled = parse_timestamp(scheduled_time)
    if scheduled is None:
        return False
    if scheduled.tzinfo is None:
        scheduled = scheduled.replace(tzinfo=tz)
    return minute_bucket(scheduled) == minute_bucket(now)
# endregion


@dataclass
class TriggerEvaluation:
    """单条规则的匹配结论"""

    rule: AutomationRule
    matched: bool
    matched_at: datetime | None = None
    trigger: TriggerConfig | None = None
    warning: str | None = None
    reason: str = ""
    already_fired: bool = False


class TriggerEvaluator:
    """
    纯函数式的触发器判定

    功能:
        - 所有时间判断使用显式传入的 now
        - 结果按规则创建顺序输出
    """

    def evaluate(self, rule: AutomationRule, event: Event, now: datetime) -> TriggerEvaluation:
        now = ensure_utc(now)
        if rule.workspace_id != event.workspace_id or rule.agent_id != event.agent_id:
            return TriggerEvaluation(rule=rule, matched=False, reason="out_of_scope")
        if not rule.enabled:
            return TriggerEvaluation(rule=rule, matched=False, reason="disabled")

        try:
            trigger = parse_trigger(rule.trigger_type, rule.trigger_config)
            return self._evaluate_trigger(rule, trigger, event, now)
        except AutomationValidationError as exc:
            LOGGER.warning(
                "automation rule %s has invalid trigger config: %s",
                rule.id,
                exc.message,
                extra={"rule_id": rule.id},
            )
            return TriggerEvaluation(rule=rule, matched=False, warning=exc.message, reason="invalid_config")

    def evaluate_targeted(self, rule: AutomationRule, event: Event, now: datetime) -> TriggerEvaluation:
        """手动调用：跳过触发条件，仅校验作用域、启用状态与配置合法性"""
        now = ensure_utc(now)
        if rule.workspace_id != event.workspace_id or rule.agent_id != event.agent_id:
            return TriggerEvaluation(rule=rule, matched=False, reason="out_of_scope")
        if not rule.enabled:
            return TriggerEvaluation(rule=rule, matched=False, reason="disabled")
        try:
            trigger = parse_trigger(rule.trigger_type, rule.trigger_config)
        except AutomationValidationError as exc:
            return TriggerEvaluation(rule=rule, matched=False, warning=exc.message, reason="invalid_config")
        return TriggerEvaluation(rule=rule, matched=True, matched_at=now, trigger=trigger)

    def evaluate_all(
        self,
        rules: Iterable[AutomationRule],
        event: Event,
        now: datetime,
    ) -> list[TriggerEvaluation]:
        ordered = sorted(rules, key=lambda item: (item.created_at or _FAR_FUTURE, item.id))
        return [self.evaluate(rule, event, now) for rule in ordered]

    def matches(
        self,
        rules: Iterable[AutomationRule],
        event: Event,
        now: datetime,
    ) -> list[tuple[AutomationRule, datetime]]:
        pairs: list[tuple[AutomationRule, datetime]] = []
        for evaluation in self.evaluate_all(rules, event, now):
            if evaluation.matched and not evaluation.already_fired and evaluation.matched_at is not None:
                pairs.append((evaluation.rule, evaluation.matched_at))
        return pairs

    # region 各触发类型
    def _evaluate_trigger(
        self,
        rule: AutomationRule,
        trigger: TriggerConfig,
        event: Event,
        now: datetime,
    ) -> TriggerEvaluation:
        if isinstance(trigger, CommentTrigger):
            if event.kind is not EventKind.COMMENT:
                return TriggerEvaluation(rule=rule, matched=False, trigger=trigger, reason="event_kind")
            if trigger.skip_replies and event.parent_id:
                return TriggerEvaluation(rule=rule, matched=False, trigger=trigger, reason="reply")
            return self._text_match(rule, trigger, event, now)

        if isinstance(trigger, KeywordTrigger):
            if event.kind not in (EventKind.COMMENT, EventKind.MESSAGE):
                return TriggerEvaluation(rule=rule, matched=False, trigger=trigger, reason="event_kind")
            return self._text_match(rule, trigger, event, now)

        if isinstance(trigger, TimeTrigger):
            if event.kind is not EventKind.TIME_TICK:
                return TriggerEvaluation(rule=rule, matched=False, trigger=trigger, reason="event_kind")
            return self._time_match(rule, trigger, now)

        if isinstance(trigger, ManualTrigger):
            if event.kind is not EventKind.MANUAL or event.target_rule_id != rule.id:
                return TriggerEvaluation(rule=rule, matched=False, trigger=trigger, reason="not_targeted")
            return TriggerEvaluation(rule=rule, matched=True, matched_at=now, trigger=trigger)

        raise AutomationValidationError(f"unsupported trigger variant: {type(trigger).__name__}")

    @staticmethod
    def _text_match(
        rule: AutomationRule,
        trigger: CommentTrigger | KeywordTrigger,
        event: Event,
        now: datetime,
    ) -> TriggerEvaluation:
        if trigger.platforms:
            allowed = {item.lower() for item in trigger.platforms}
            if (event.platform or "").lower() not in allowed:
                return TriggerEvaluation(rule=rule, matched=False, trigger=trigger, reason="platform")

        text = (event.content or "").lower()
        if any(word.lower() in text for word in trigger.exclude_keywords):
            return TriggerEvaluation(rule=rule, matched=False, trigger=trigger, reason="excluded_keyword")

        # 评论规则：命中指定帖子或命中关键词，任一即可
        scope_id = trigger.scope_id if isinstance(trigger, CommentTrigger) else None
        in_scope = bool(scope_id) and scope_id == (event.scope_id or "")
        if trigger.keywords:
            if not in_scope and not any(word.lower() in text for word in trigger.keywords):
                return TriggerEvaluation(rule=rule, matched=False, trigger=trigger, reason="keyword")
        elif scope_id and not in_scope:
            return TriggerEvaluation(rule=rule, matched=False, trigger=trigger, reason="scope")
        return TriggerEvaluation(rule=rule, matched=True, matched_at=now, trigger=trigger)

    @staticmethod
    def _time_match(rule: AutomationRule, trigger: TimeTrigger, now: datetime) -> TriggerEvaluation:
        tz = resolve_timezone(trigger.timezone)
        local_now = now.astimezone(tz)
        if trigger.cron_pattern:
            validate_cron(trigger.cron_pattern)

        matched = False
        if trigger.scheduled_time and scheduled_time_matches(trigger.scheduled_time, now, tz):
            matched = True
        if not matched and trigger.cron_pattern and cron_matches(trigger.cron_pattern, local_now):
            matched = True
        if not matched:
            return TriggerEvaluation(rule=rule, matched=False, trigger=trigger, reason="schedule")

        bucket = minute_bucket(now)
        already_fired = rule.last_executed_at is not None and minute_bucket(rule.last_executed_at) == bucket
        return TriggerEvaluation(
            rule=rule,
            matched=True,
            matched_at=bucket,
            trigger=trigger,
            already_fired=already_fired,
            reason="already_fired" if already_fired else "",
        )
    # endregion
