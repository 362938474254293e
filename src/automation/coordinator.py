"""
描述: 自动化规则执行编排
主要功能:
    - 评论 / 消息 / 定时 / 手动四个入口
    - 单条规则状态机：匹配 -> 抢占 -> 执行 -> 审计
    - 单条规则的异常不影响同批次其他规则
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Iterable

from src.automation.actions import ActionDispatcher
from src.automation.audit import AuditLogger
from src.automation.errors import (
    AutomationValidationError,
    DuplicateOccurrenceError,
    NotFoundError,
    format_error,
)
from src.automation.idempotency import IdempotencyGuard, OccurrenceClaim
from src.automation.models import (
    ActionConfig,
    AutomationRule,
    Event,
    EventKind,
    ExecutionBatchResult,
    ExecutionRecord,
    Outcome,
    RuleOutcome,
    TriggerType,
    ensure_utc,
    minute_bucket,
    parse_action,
    utc_now,
)
from src.automation.repository import RuleRepository
from src.automation.triggers import TriggerEvaluation, TriggerEvaluator
from src.utils.logger import clear_request_context, set_request_context


LOGGER = logging.getLogger(__name__)

_COMMENT_RULE_TYPES = (TriggerType.COMMENT.value, TriggerType.KEYWORD.value)
_MESSAGE_RULE_TYPES = (TriggerType.KEYWORD.value,)
_TIME_RULE_TYPES = (TriggerType.TIME.value,)


class ExecutionCoordinator:
    """
    自动化执行编排器

    功能:
        - 拉取候选规则并按创建顺序逐条处理
        - 仅在无法获取候选规则时向调用方抛出 RuleStoreUnavailableError
    """

    def __init__(
        self,
        repository: RuleRepository,
        dispatcher: ActionDispatcher,
        *,
        evaluator: TriggerEvaluator | None = None,
        guard: IdempotencyGuard | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self._repository = repository
        self._dispatcher = dispatcher
        self._evaluator = evaluator or TriggerEvaluator()
        self._guard = guard or IdempotencyGuard(repository)
        self._audit = audit or AuditLogger(repository)

    # region 入口
    async def handle_comment_event(self, event: Event, now: datetime | None = None) -> ExecutionBatchResult:
        self._require_kind(event, EventKind.COMMENT)
        current = ensure_utc(now or event.received_at or utc_now())
        rules = self._repository.list_rules(event.workspace_id, event.agent_id, _COMMENT_RULE_TYPES)
        return await self._run_batch(event, self._evaluator.evaluate_all(rules, event, current), current)

    async def handle_message_event(self, event: Event, now: datetime | None = None) -> ExecutionBatchResult:
        self._require_kind(event, EventKind.MESSAGE)
        current = ensure_utc(now or event.received_at or utc_now())
        rules = self._repository.list_rules(event.workspace_id, event.agent_id, _MESSAGE_RULE_TYPES)
        return await self._run_batch(event, self._evaluator.evaluate_all(rules, event, current), current)

    async def run_scheduled_rules(self, workspace_id: str, agent_id: str, now: datetime) -> ExecutionBatchResult:
        current = ensure_utc(now)
        event = Event(
            kind=EventKind.TIME_TICK,
            workspace_id=workspace_id,
            agent_id=agent_id,
            occurrence_id="tick:" + minute_bucket(current).strftime("%Y-%m-%dT%H:%MZ"),
            received_at=current,
        )
        rules = self._repository.list_rules(workspace_id, agent_id, _TIME_RULE_TYPES)
        return await self._run_batch(event, self._evaluator.evaluate_all(rules, event, current), current)

    async def run_manual_trigger(
        self,
        workspace_id: str,
        agent_id: str,
        rule_id: str,
        recipient: str | None = None,
        message_override: str | None = None,
        *,
        invocation_id: str | None = None,
        now: datetime | None = None,
    ) -> ExecutionBatchResult:
        current = ensure_utc(now or utc_now())
        event = Event(
            kind=EventKind.MANUAL,
            workspace_id=workspace_id,
            agent_id=agent_id,
            occurrence_id=invocation_id or f"manual:{uuid.uuid4().hex}",
            target_rule_id=rule_id,
            recipient=recipient,
            message_override=message_override,
            received_at=current,
        )
        rule = self._repository.get_rule(workspace_id, agent_id, rule_id)
        if rule is None:
            error = NotFoundError("rule", rule_id)
            set_request_context(workspace_id, event.occurrence_id)
            try:
                self._record(rule_id, event, event.occurrence_id, Outcome.NOT_MATCHED, error=error.message)
            finally:
                clear_request_context()
            return ExecutionBatchResult(
                occurrence_id=event.occurrence_id,
                outcomes=[RuleOutcome(rule_id=rule_id, outcome=Outcome.NOT_MATCHED, error=error.message)],
            )
        return await self._run_batch(event, [self._evaluator.evaluate_targeted(rule, event, current)], current)
    # endregion

    # region 批处理
    @staticmethod
    def _require_kind(event: Event, kind: EventKind) -> None:
        if event.kind is not kind:
            raise AutomationValidationError(
                f"expected {kind.value} event, got {event.kind.value}",
                details={"kind": event.kind.value},
            )

    async def _run_batch(
        self,
        event: Event,
        evaluations: Iterable[TriggerEvaluation],
        now: datetime,
    ) -> ExecutionBatchResult:
        set_request_context(event.workspace_id, event.occurrence_id)
        try:
            batch = ExecutionBatchResult(occurrence_id=event.occurrence_id)
            for evaluation in evaluations:
                batch.outcomes.append(await self._process_rule(evaluation, event, now))
            LOGGER.info(
                "automation %s event %s processed %s rules, executed=%s",
                event.kind.value,
                event.occurrence_id,
                len(batch.outcomes),
                batch.processed,
            )
            return batch
        finally:
            clear_request_context()

    async def _process_rule(self, evaluation: TriggerEvaluation, event: Event, now: datetime) -> RuleOutcome:
        rule = evaluation.rule
        occurrence_key = self._guard.occurrence_key(rule, event, now)

        if not evaluation.matched:
            self._record(
                rule.id,
                event,
                occurrence_key,
                Outcome.NOT_MATCHED,
                action_result={"reason": evaluation.reason} if evaluation.reason else None,
                warning=evaluation.warning,
            )
            return RuleOutcome(rule_id=rule.id, outcome=Outcome.NOT_MATCHED, warning=evaluation.warning)

        try:
            action = parse_action(rule.action_type, rule.action_config)
        except AutomationValidationError as exc:
            LOGGER.warning(
                "automation rule %s has invalid action config: %s",
                rule.id,
                exc.message,
                extra={"rule_id": rule.id},
            )
            self._record(rule.id, event, occurrence_key, Outcome.NOT_MATCHED, warning=exc.message)
            return RuleOutcome(rule_id=rule.id, outcome=Outcome.NOT_MATCHED, warning=exc.message)

        if evaluation.already_fired:
            return self._duplicate(rule, event, occurrence_key)

        try:
            claim = self._guard.claim(rule, event, now)
        except DuplicateOccurrenceError:
            return self._duplicate(rule, event, occurrence_key)
        except Exception as exc:
            LOGGER.exception("automation rule %s claim failed", rule.id, extra={"rule_id": rule.id})
            return self._failed(rule, event, occurrence_key, format_error(exc), attempts=0)

        return await self._execute(rule, action, evaluation, event, claim, now)

    async def _execute(
        self,
        rule: AutomationRule,
        action: ActionConfig,
        evaluation: TriggerEvaluation,
        event: Event,
        claim: OccurrenceClaim,
        now: datetime,
    ) -> RuleOutcome:
        try:
            result = await self._dispatcher.dispatch(rule, action, event, now, evaluation.trigger)
        except Exception as exc:
            LOGGER.exception("automation rule %s dispatch crashed", rule.id, extra={"rule_id": rule.id})
            self._release(claim)
            return self._failed(rule, event, claim.occurrence_key, format_error(exc), attempts=0)

        if result.outcome is not Outcome.MATCHED_EXECUTED:
            self._release(claim)
        self._record(
            rule.id,
            event,
            claim.occurrence_key,
            result.outcome,
            action_result=result.action_result,
            error=result.error,
            attempts=result.attempts,
        )
        return RuleOutcome(
            rule_id=rule.id,
            outcome=result.outcome,
            action_result=result.action_result,
            error=result.error,
        )
    # endregion

    # region 辅助
    def _release(self, claim: OccurrenceClaim) -> None:
        try:
            self._guard.release(claim)
        except Exception:
            LOGGER.exception("failed to release claim for rule %s", claim.rule_id, extra={"rule_id": claim.rule_id})

    def _duplicate(self, rule: AutomationRule, event: Event, occurrence_key: str) -> RuleOutcome:
        self._record(rule.id, event, occurrence_key, Outcome.MATCHED_SKIPPED_DUPLICATE)
        return RuleOutcome(rule_id=rule.id, outcome=Outcome.MATCHED_SKIPPED_DUPLICATE)

    def _failed(
        self,
        rule: AutomationRule,
        event: Event,
        occurrence_key: str,
        error: str,
        attempts: int,
    ) -> RuleOutcome:
        self._record(rule.id, event, occurrence_key, Outcome.MATCHED_FAILED, error=error, attempts=attempts)
        return RuleOutcome(rule_id=rule.id, outcome=Outcome.MATCHED_FAILED, error=error)

    def _record(
        self,
        rule_id: str,
        event: Event,
        occurrence_key: str,
        outcome: Outcome,
        *,
        action_result: dict | None = None,
        error: str | None = None,
        warning: str | None = None,
        attempts: int = 0,
    ) -> None:
        record = ExecutionRecord(
            rule_id=rule_id,
            occurrence_key=occurrence_key,
            outcome=outcome,
            workspace_id=event.workspace_id,
            agent_id=event.agent_id,
            action_result=action_result,
            error=error,
            warning=warning,
            attempts=attempts,
        )
        try:
            self._audit.record(record)
        except Exception:
            LOGGER.exception(
                "failed to append execution record for rule %s",
                rule_id,
                extra={"rule_id": rule_id, "outcome": outcome.value},
            )
    # endregion
