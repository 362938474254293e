"""
描述: 规则级幂等保护
主要功能:
    - 计算 (规则, 触发) 的幂等键
    - 定时规则通过 last_executed_at CAS 抢占分钟桶
    - 其他规则通过审计记录 + 占用记录去重
    - 执行失败后释放占用
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from src.automation.errors import DuplicateOccurrenceError, StoreConflictError
from src.automation.models import AutomationRule, Event, EventKind, TriggerType, ensure_utc, minute_bucket
from src.automation.repository import RuleRepository


LOGGER = logging.getLogger(__name__)


@dataclass
class OccurrenceClaim:
    rule_id: str
    occurrence_key: str
    time_based: bool = False
    claimed_value: datetime | None = None
    previous_value: datetime | None = None


class IdempotencyGuard:
    """保证同一规则同一触发至多成功执行一次"""

    def __init__(self, repository: RuleRepository) -> None:
        self._repository = repository

    @staticmethod
    def _is_minute_occurrence(rule: AutomationRule, event: Event) -> bool:
        return rule.trigger_type == TriggerType.TIME.value and event.kind is EventKind.TIME_TICK

    @classmethod
    def occurrence_key(cls, rule: AutomationRule, event: Event, now: datetime) -> str:
        if cls._is_minute_occurrence(rule, event):
            return "minute:" + minute_bucket(now).strftime("%Y-%m-%dT%H:%MZ")
        return event.occurrence_id

    def claim(self, rule: AutomationRule, event: Event, now: datetime) -> OccurrenceClaim:
        """
        抢占执行权

        异常:
            DuplicateOccurrenceError: 已执行、并发占用或存储冲突
        """
        key = self.occurrence_key(rule, event, now)
        if self._is_minute_occurrence(rule, event):
            return self._claim_minute(rule, key, now)
        return self._claim_occurrence(rule, key)

    def release(self, claim: OccurrenceClaim) -> None:
        """执行失败时回退占用，允许后续重放"""
        if claim.time_based:
            if claim.claimed_value is None:
                return
            try:
                restored = self._repository.restore_last_executed(
                    claim.rule_id,
                    claim.claimed_value,
                    claim.previous_value,
                )
            except StoreConflictError as exc:
                LOGGER.warning("failed to restore last_executed_at for rule %s: %s", claim.rule_id, exc.message)
                return
            if not restored:
                LOGGER.info(
                    "last_executed_at for rule %s changed since claim, skip restore",
                    claim.rule_id,
                    extra={"rule_id": claim.rule_id},
                )
            return
        self._repository.release_occurrence(claim.rule_id, claim.occurrence_key)

    def _claim_minute(self, rule: AutomationRule, key: str, now: datetime) -> OccurrenceClaim:
        bucket_start = minute_bucket(now)
        executed_at = ensure_utc(now)
        try:
            won = self._repository.compare_and_set_last_executed(rule.id, bucket_start, executed_at)
        except StoreConflictError as exc:
            LOGGER.warning(
                "time rule %s claim conflict, treat as duplicate: %s",
                rule.id,
                exc.message,
                extra={"rule_id": rule.id},
            )
            raise DuplicateOccurrenceError(rule.id, key, reason="store_conflict") from exc
        if not won:
            raise DuplicateOccurrenceError(rule.id, key)
        return OccurrenceClaim(
            rule_id=rule.id,
            occurrence_key=key,
            time_based=True,
            claimed_value=executed_at,
            previous_value=rule.last_executed_at,
        )

    def _claim_occurrence(self, rule: AutomationRule, key: str) -> OccurrenceClaim:
        if self._repository.has_executed(rule.id, key):
            raise DuplicateOccurrenceError(rule.id, key)
        try:
            claimed = self._repository.claim_occurrence(rule.id, key)
        except StoreConflictError as exc:
            LOGGER.warning(
                "occurrence claim conflict for rule %s, treat as duplicate: %s",
                rule.id,
                exc.message,
                extra={"rule_id": rule.id},
            )
            raise DuplicateOccurrenceError(rule.id, key, reason="store_conflict") from exc
        if not claimed:
            raise DuplicateOccurrenceError(rule.id, key, reason="claimed")
        return OccurrenceClaim(rule_id=rule.id, occurrence_key=key)
