"""
描述: 自动化动作执行器
主要功能:
    - send_dm / send_public_reply 通过渠道协作方发送
    - send_email 渲染后写入邮件队列
    - send_webhook 渲染、签名并发起 HTTP 调用
    - 瞬时失败按指数退避重试，所有异常在边界内收敛为结构化结果
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

import httpx

from src.automation.channels import ChannelMessage, ChannelSender
from src.automation.email_queue import EmailJob, EmailQueue
from src.automation.errors import (
    AutomationValidationError,
    DeliveryError,
    TransientDeliveryError,
    delivery_error_for_status,
    format_error,
)
from src.automation.models import (
    ActionConfig,
    AutomationRule,
    DirectMessageAction,
    EmailAction,
    Event,
    EventKind,
    ManualTrigger,
    Outcome,
    PublicReplyAction,
    TimeTrigger,
    TriggerConfig,
    WebhookAction,
    ensure_utc,
)
from src.automation.signing import DeliverySigner
from src.automation.templates import render_text, render_value
from src.config import AutomationSettings


LOGGER = logging.getLogger(__name__)

Runner = Callable[[], Awaitable[dict[str, Any]]]


@dataclass
class DispatchResult:
    outcome: Outcome
    action_result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    attempts: int = 0


class ActionExecutionError(DeliveryError):
    """重试耗尽或不可重试的失败（包含重试信息）"""

    def __init__(self, action_type: str, attempts: int, cause: BaseException) -> None:
        super().__init__(
            f"action {action_type} failed after {attempts} attempts: {format_error(cause)}",
            status_code=getattr(cause, "status_code", None),
            code="ACTION_EXECUTION_ERROR",
        )
        self.action_type = action_type
        self.attempts = attempts
        self.cause = cause


def build_template_context(
    rule: AutomationRule,
    event: Event,
    now: datetime,
    extra_variables: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """构造模板变量：input.* / rule.* / now 及动作自定义变量"""
    content = event.content or ""
    context: dict[str, Any] = dict(extra_variables or {})
    context.update(
        {
            "input": {
                "commentText": content,
                "messageText": content,
                "content": content,
                "authorId": event.author_id or "",
                "authorName": event.author_name or "",
                "platform": event.platform or "",
                "postId": event.scope_id or "",
                "commentId": event.comment_id or event.occurrence_id,
                "parentId": event.parent_id or "",
                "recipient": event.recipient or "",
                "occurrenceId": event.occurrence_id,
            },
            "rule": {"id": rule.id, "name": rule.name},
            "workspace": {"id": rule.workspace_id},
            "agent": {"id": rule.agent_id},
            "event": {"kind": event.kind.value, "occurrence_id": event.occurrence_id},
            "now": ensure_utc(now).isoformat(),
        }
    )
    if extra_variables:
        context["variables"] = dict(extra_variables)
    return context


def _truncate(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + "...(truncated)"


class ActionDispatcher:
    """动作执行器：按动作变体分发，含超时与重试。"""

    def __init__(
        self,
        settings: AutomationSettings,
        *,
        channel_sender: ChannelSender,
        email_queue: EmailQueue,
        signer: DeliverySigner,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._channel_sender = channel_sender
        self._email_queue = email_queue
        self._signer = signer
        self._transport = transport
        self._max_retries = max(0, int(settings.action_max_retries or 0))
        self._webhook_default_retries = max(0, int(settings.webhook_default_retry_count or 0))
        self._retry_delay_seconds = max(0.0, float(settings.action_retry_delay_seconds or 0.0))
        self._retry_max_delay_seconds = max(0.0, float(settings.action_retry_max_delay_seconds or 0.0))
        self._timeout_seconds = max(0.1, float(settings.action_timeout_seconds or 0.1))
        self._body_log_limit = max(0, int(settings.response_body_log_limit or 0))

    async def dispatch(
        self,
        rule: AutomationRule,
        action: ActionConfig,
        event: Event,
        now: datetime,
        trigger: TriggerConfig | None = None,
    ) -> DispatchResult:
        """
        执行单条规则的动作

        返回:
            DispatchResult，成功为 matched_executed，否则 matched_failed
        """
        action_result: dict[str, Any] = {"action_type": rule.action_type}
        try:
            if isinstance(action, DirectMessageAction):
                runner = self._prepare_direct_message(rule, action, event, now, trigger, action_result)
                retries = self._max_retries
            elif isinstance(action, PublicReplyAction):
                runner = self._prepare_public_reply(rule, action, event, now, action_result)
                retries = self._max_retries
            elif isinstance(action, EmailAction):
                runner = self._prepare_email(rule, action, event, now, action_result)
                retries = self._max_retries
            elif isinstance(action, WebhookAction):
                runner = self._prepare_webhook(rule, action, event, now, action_result)
                retries = action.retry_count if action.retry_count is not None else self._webhook_default_retries
            else:
                raise AutomationValidationError(f"unsupported action variant: {type(action).__name__}")
        except AutomationValidationError as exc:
            LOGGER.warning(
                "automation rule %s action rejected: %s",
                rule.id,
                exc.message,
                extra={"rule_id": rule.id},
            )
            return DispatchResult(Outcome.MATCHED_FAILED, action_result, exc.message, attempts=0)

        try:
            result, attempts = await self._run_with_retry(rule, rule.action_type, retries, runner)
        except ActionExecutionError as exc:
            action_result["attempts"] = exc.attempts
            LOGGER.warning(
                "automation rule %s action %s failed: %s",
                rule.id,
                rule.action_type,
                exc.message,
                extra={"rule_id": rule.id, "outcome": Outcome.MATCHED_FAILED.value},
            )
            return DispatchResult(Outcome.MATCHED_FAILED, action_result, exc.message, attempts=exc.attempts)

        action_result.update(result)
        action_result["attempts"] = attempts
        return DispatchResult(Outcome.MATCHED_EXECUTED, action_result, None, attempts=attempts)

    # region 重试
    def _backoff_delay(self, attempt: int) -> float:
        delay = self._retry_delay_seconds * (2**attempt)
        if self._retry_max_delay_seconds > 0:
            delay = min(delay, self._retry_max_delay_seconds)
        return delay

    async def _run_with_retry(
        self,
        rule: AutomationRule,
        action_type: str,
        max_retries: int,
        runner: Runner,
    ) -> tuple[dict[str, Any], int]:
        attempts = max(0, int(max_retries)) + 1
        for attempt in range(attempts):
            try:
                try:
                    result = await asyncio.wait_for(runner(), timeout=self._timeout_seconds)
                except asyncio.TimeoutError as exc:
                    raise TransientDeliveryError(
                        f"action {action_type} timed out after {self._timeout_seconds}s"
                    ) from exc
                if not isinstance(result, dict):
                    raise AutomationValidationError(f"action {action_type} returned non-dict result")
                return result, attempt + 1
            except TransientDeliveryError as exc:
                if attempt >= attempts - 1:
                    raise ActionExecutionError(action_type, attempt + 1, exc) from exc
                delay = self._backoff_delay(attempt)
                LOGGER.info(
                    "automation rule %s action %s attempt %s failed, retry in %.2fs: %s",
                    rule.id,
                    action_type,
                    attempt + 1,
                    delay,
                    exc.message,
                    extra={"rule_id": rule.id},
                )
                if delay > 0:
                    await asyncio.sleep(delay)
            except Exception as exc:
                raise ActionExecutionError(action_type, attempt + 1, exc) from exc
        raise ActionExecutionError(action_type, attempts, RuntimeError("unreachable"))
    # endregion

    # region 渠道消息
    def _select_text(
        self,
        rule: AutomationRule,
        template: str,
        event: Event,
        now: datetime,
        trigger: TriggerConfig | None,
    ) -> str:
        if event.message_override:
            return event.message_override
        chosen = template
        if isinstance(trigger, (TimeTrigger, ManualTrigger)) and trigger.message_template:
            chosen = trigger.message_template
        return render_text(chosen, build_template_context(rule, event, now))

    def _prepare_direct_message(
        self,
        rule: AutomationRule,
        action: DirectMessageAction,
        event: Event,
        now: datetime,
        trigger: TriggerConfig | None,
        action_result: dict[str, Any],
    ) -> Runner:
        recipient = event.recipient or event.author_id or event.author_name
        if not recipient:
            raise AutomationValidationError("send_dm requires a recipient or event author")
        template = action.template or self._settings.default_dm_template
        text = self._select_text(rule, template, event, now, trigger)
        message = ChannelMessage(
            workspace_id=rule.workspace_id,
            agent_id=rule.agent_id,
            platform=event.platform,
            text=text,
            recipient_id=recipient,
            recipient_name=event.author_name if not event.recipient else None,
            metadata={"rule_id": rule.id, "comment_id": event.comment_id or event.occurrence_id},
        )
        action_result.update({"recipient": recipient, "text": text})

        async def runner() -> dict[str, Any]:
            response = await self._channel_sender.send_direct_message(message)
            return {"channel_response": response}

        return runner

    def _prepare_public_reply(
        self,
        rule: AutomationRule,
        action: PublicReplyAction,
        event: Event,
        now: datetime,
        action_result: dict[str, Any],
    ) -> Runner:
        reply_to_id = event.comment_id or (event.occurrence_id if event.kind is EventKind.COMMENT else None)
        if not reply_to_id and not event.scope_id:
            raise AutomationValidationError("send_public_reply requires a comment or post to reply to")
        text = event.message_override or render_text(action.template, build_template_context(rule, event, now))
        message = ChannelMessage(
            workspace_id=rule.workspace_id,
            agent_id=rule.agent_id,
            platform=event.platform,
            text=text,
            scope_id=event.scope_id,
            reply_to_id=reply_to_id,
            metadata={"rule_id": rule.id},
        )
        action_result.update({"reply_to_id": reply_to_id, "scope_id": event.scope_id, "text": text})

        async def runner() -> dict[str, Any]:
            response = await self._channel_sender.send_public_reply(message)
            return {"channel_response": response}

        return runner
    # endregion

    # region 邮件
    def _prepare_email(
        self,
        rule: AutomationRule,
        action: EmailAction,
        event: Event,
        now: datetime,
        action_result: dict[str, Any],
    ) -> Runner:
        context = build_template_context(rule, event, now, action.variables)
        to = [address for address in (render_text(item, context).strip() for item in action.to) if address]
        if not to and event.recipient:
            to = [event.recipient]
        if not to:
            raise AutomationValidationError("send_email requires at least one recipient address")
        job = EmailJob(
            workspace_id=rule.workspace_id,
            agent_id=rule.agent_id,
            rule_id=rule.id,
            to=to,
            subject=render_text(action.subject, context),
            body=event.message_override or render_text(action.template, context),
            from_name=action.from_name,
            reply_to=action.reply_to,
        )
        action_result.update({"to": job.to, "subject": job.subject})

        async def runner() -> dict[str, Any]:
            job_id = await self._email_queue.enqueue(job)
            return {"job_id": job_id, "status": job.status}

        return runner
    # endregion

    # region Webhook
    @staticmethod
    def _default_webhook_payload(rule: AutomationRule, event: Event, now: datetime) -> dict[str, Any]:
        return {
            "rule_id": rule.id,
            "workspace_id": rule.workspace_id,
            "agent_id": rule.agent_id,
            "event_type": event.kind.value,
            "timestamp": ensure_utc(now).isoformat(),
            "data": {
                "occurrence_id": event.occurrence_id,
                "content": event.content,
                "author_id": event.author_id,
                "author_name": event.author_name,
                "platform": event.platform,
                "scope_id": event.scope_id,
            },
        }

    def _render_webhook_body(self, rule: AutomationRule, action: WebhookAction, event: Event, now: datetime) -> bytes:
        context = build_template_context(rule, event, now)
        template = action.payload_template
        if template is None:
            rendered: Any = self._default_webhook_payload(rule, event, now)
        else:
            rendered = render_value(template, context)
        return json.dumps(rendered, ensure_ascii=False, separators=(",", ":"), default=str).encode("utf-8")

    def _prepare_webhook(
        self,
        rule: AutomationRule,
        action: WebhookAction,
        event: Event,
        now: datetime,
        action_result: dict[str, Any],
    ) -> Runner:
        body = b"" if action.method == "GET" else self._render_webhook_body(rule, action, event, now)
        headers: dict[str, str] = {"Content-Type": "application/json"}
        headers.update(action.headers)
        if action.sign_payload:
            headers[self._settings.webhook_signature_header] = self._signer.sign(rule.workspace_id, body)

        attempt_log: list[dict[str, Any]] = []
        action_result.update(
            {
                "url": action.url,
                "method": action.method,
                "signed": action.sign_payload,
                "attempt_log": attempt_log,
            }
        )

        async def runner() -> dict[str, Any]:
            return await self._send_webhook(rule, action, body, headers, attempt_log)

        return runner

    async def _send_webhook(
        self,
        rule: AutomationRule,
        action: WebhookAction,
        body: bytes,
        headers: dict[str, str],
        attempt_log: list[dict[str, Any]],
    ) -> dict[str, Any]:
        attempt_no = len(attempt_log) + 1
        started = time.monotonic()
        entry: dict[str, Any] = {"attempt": attempt_no}
        attempt_log.append(entry)
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.webhook_timeout_seconds,
                trust_env=False,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    action.method,
                    action.url,
                    content=body if action.method != "GET" else None,
                    headers=headers,
                )
        except httpx.TimeoutException as exc:
            entry.update({"error": f"timeout: {exc}", "duration_ms": int((time.monotonic() - started) * 1000)})
            self._log_webhook_attempt(rule, action, entry)
            raise TransientDeliveryError(f"webhook {action.url} timed out") from exc
        except httpx.HTTPError as exc:
            entry.update({"error": str(exc) or exc.__class__.__name__, "duration_ms": int((time.monotonic() - started) * 1000)})
            self._log_webhook_attempt(rule, action, entry)
            raise TransientDeliveryError(f"webhook {action.url} request failed: {exc}") from exc

        response_body = _truncate(response.text, self._body_log_limit)
        entry.update(
            {
                "status_code": response.status_code,
                "response_body": response_body,
                "duration_ms": int((time.monotonic() - started) * 1000),
            }
        )
        self._log_webhook_attempt(rule, action, entry)
        if response.status_code < 200 or response.status_code >= 300:
            raise delivery_error_for_status(f"webhook {action.url}", response.status_code, response_body)
        return {"status_code": response.status_code, "response_body": response_body}

    @staticmethod
    def _log_webhook_attempt(rule: AutomationRule, action: WebhookAction, entry: dict[str, Any]) -> None:
        LOGGER.info(
            "webhook attempt %s for rule %s %s %s -> %s",
            entry.get("attempt"),
            rule.id,
            action.method,
            action.url,
            entry.get("status_code", entry.get("error")),
            extra={
                "rule_id": rule.id,
                "status_code": entry.get("status_code"),
                "duration_ms": entry.get("duration_ms"),
                "response_body": entry.get("response_body", ""),
            },
        )
    # endregion
