"""
描述: 自动化 HTTP 路由与生命周期管理。
主要功能:
    - 暴露评论 / 消息事件、定时 tick、手动执行接口
    - x-automation-key 鉴权
    - 管理定时轮询器启停
"""

from __future__ import annotations

import hmac
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from src.automation import (
    AutomationEngine,
    AutomationValidationError,
    EventKind,
    RuleStoreUnavailableError,
    TickScheduler,
    build_engine,
)
from src.automation.models import utc_now
from src.config import Settings, get_settings
from src.server.schema import InboundEventRequest, ManualRunRequest, ScheduleTickRequest


router = APIRouter()

_automation_engine: AutomationEngine | None = None
_tick_scheduler: TickScheduler | None = None


def get_automation_engine(settings: Settings) -> AutomationEngine:
    global _automation_engine
    if _automation_engine is None:
        _automation_engine = build_engine(settings)
    return _automation_engine


def get_tick_scheduler(settings: Settings) -> TickScheduler:
    global _tick_scheduler
    if _tick_scheduler is None:
        _tick_scheduler = get_automation_engine(settings).build_tick_scheduler()
    return _tick_scheduler


async def start_tick_scheduler() -> None:
    settings = get_settings()
    if not settings.automation.enabled:
        return
    await get_tick_scheduler(settings).start()


async def stop_tick_scheduler() -> None:
    global _tick_scheduler
    if _tick_scheduler is None:
        return
    await _tick_scheduler.stop()
    _tick_scheduler = None


def verify_api_key(settings: Settings, request: Request) -> None:
    configured_key = str(settings.automation.api_key or "").strip()
    if not configured_key:
        return
    provided_key = str(request.headers.get("x-automation-key") or "").strip()
    if not provided_key or not hmac.compare_digest(provided_key, configured_key):
        raise HTTPException(status_code=401, detail="invalid automation api key")


def _require_enabled(settings: Settings) -> None:
    if not settings.automation.enabled:
        raise HTTPException(status_code=503, detail="automation is disabled")


@router.post("/automation/events/comment")
async def automation_comment_event(payload: InboundEventRequest, request: Request) -> dict[str, Any]:
    settings = get_settings()
    verify_api_key(settings, request)
    _require_enabled(settings)
    engine = get_automation_engine(settings)
    try:
        result = await engine.coordinator.handle_comment_event(payload.to_event(EventKind.COMMENT))
    except AutomationValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except RuleStoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {"status": "ok", "result": result.to_dict()}


@router.post("/automation/events/message")
async def automation_message_event(payload: InboundEventRequest, request: Request) -> dict[str, Any]:
    settings = get_settings()
    verify_api_key(settings, request)
    _require_enabled(settings)
    engine = get_automation_engine(settings)
    try:
        result = await engine.coordinator.handle_message_event(payload.to_event(EventKind.MESSAGE))
    except AutomationValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except RuleStoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {"status": "ok", "result": result.to_dict()}


@router.post("/automation/schedule/tick")
async def automation_schedule_tick(payload: ScheduleTickRequest, request: Request) -> dict[str, Any]:
    settings = get_settings()
    verify_api_key(settings, request)
    _require_enabled(settings)
    engine = get_automation_engine(settings)
    try:
        result = await engine.coordinator.run_scheduled_rules(
            payload.workspace_id,
            payload.agent_id,
            payload.now or utc_now(),
        )
    except AutomationValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except RuleStoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {"status": "ok", "result": result.to_dict()}


@router.post("/automation/rules/{rule_id}/run")
async def automation_manual_run(rule_id: str, payload: ManualRunRequest, request: Request) -> dict[str, Any]:
    settings = get_settings()
    verify_api_key(settings, request)
    _require_enabled(settings)
    engine = get_automation_engine(settings)
    try:
        result = await engine.coordinator.run_manual_trigger(
            payload.workspace_id,
            payload.agent_id,
            rule_id,
            recipient=payload.recipient,
            message_override=payload.message_override,
            invocation_id=payload.invocation_id,
        )
    except AutomationValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except RuleStoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {"status": "ok", "result": result.to_dict()}
