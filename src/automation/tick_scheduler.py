"""
描述: 定时规则轮询器
主要功能:
    - 周期性为每个 (workspace, agent) 调用定时入口
    - 默认关闭，可由外部 cron 调用 scripts/run_scheduled_rules.py 代替
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from src.automation.coordinator import ExecutionCoordinator
from src.automation.errors import RuleStoreUnavailableError
from src.automation.models import utc_now


LOGGER = logging.getLogger(__name__)


class TickScheduler:
    """定时触发轮询器。"""

    def __init__(
        self,
        coordinator: ExecutionCoordinator,
        scope_provider: Callable[[], list[tuple[str, str]]],
        enabled: bool,
        interval_seconds: float = 30.0,
    ) -> None:
        self._coordinator = coordinator
        self._scope_provider = scope_provider
        self._enabled = bool(enabled)
        self._interval_seconds = max(0.1, float(interval_seconds))
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

    def _get_stop_event(self) -> asyncio.Event:
        event = self._stop_event
        if event is None:
            event = asyncio.Event()
            self._stop_event = event
        return event

    async def start(self) -> None:
        if not self._enabled:
            LOGGER.info("tick scheduler disabled")
            return
        if self._task and not self._task.done():
            return
        self._get_stop_event().clear()
        self._task = asyncio.create_task(self._run_loop())
        LOGGER.info("tick scheduler started")

    async def stop(self) -> None:
        if not self._task:
            return
        self._get_stop_event().set()
        await self._task
        self._task = None
        LOGGER.info("tick scheduler stopped")

    async def tick_once(self) -> list[dict[str, Any]]:
        now = utc_now()
        results: list[dict[str, Any]] = []
        for workspace_id, agent_id in self._scope_provider():
            try:
                batch = await self._coordinator.run_scheduled_rules(workspace_id, agent_id, now)
            except RuleStoreUnavailableError as exc:
                LOGGER.warning(
                    "scheduled tick skipped for %s/%s: %s",
                    workspace_id,
                    agent_id,
                    exc.message,
                )
                continue
            results.append({"workspace_id": workspace_id, "agent_id": agent_id, **batch.to_dict()})
        return results

    async def _run_loop(self) -> None:
        stop_event = self._get_stop_event()
        while not stop_event.is_set():
            try:
                await self.tick_once()
            except Exception as exc:
                LOGGER.exception("tick scheduler poll failed: %s", exc)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval_seconds)
            except TimeoutError:
                continue
