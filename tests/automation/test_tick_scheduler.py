from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
import sys


ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from src.automation.errors import RuleStoreUnavailableError
from src.automation.models import ExecutionBatchResult
from src.automation.tick_scheduler import TickScheduler


class _FakeCoordinator:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, datetime]] = []

    async def run_scheduled_rules(self, workspace_id: str, agent_id: str, now: datetime) -> ExecutionBatchResult:
        self.calls.append((workspace_id, agent_id, now))
        if workspace_id == "ws-down":
            raise RuleStoreUnavailableError("rule store offline")
        return ExecutionBatchResult(occurrence_id=f"tick:{workspace_id}")


def test_tick_once_runs_every_scope_and_skips_unavailable() -> None:
    coordinator = _FakeCoordinator()
    scheduler = TickScheduler(
        coordinator=coordinator,
        scope_provider=lambda: [("ws-1", "agent-1"), ("ws-down", "agent-1"), ("ws-2", "agent-2")],
        enabled=True,
    )

    results = asyncio.run(scheduler.tick_once())

    assert [call[:2] for call in coordinator.calls] == [
        ("ws-1", "agent-1"),
        ("ws-down", "agent-1"),
        ("ws-2", "agent-2"),
    ]
    assert len({call[2] for call in coordinator.calls}) == 1
    assert [item["workspace_id"] for item in results] == ["ws-1", "ws-2"]
    assert results[0]["processed"] is False


def test_disabled_scheduler_does_not_start() -> None:
    coordinator = _FakeCoordinator()
    scheduler = TickScheduler(coordinator=coordinator, scope_provider=lambda: [("ws-1", "agent-1")], enabled=False)

    async def _run() -> None:
        await scheduler.start()
        await asyncio.sleep(0)
        await scheduler.stop()

    asyncio.run(_run())

    assert coordinator.calls == []


def test_started_scheduler_polls_until_stopped() -> None:
    coordinator = _FakeCoordinator()
    scheduler = TickScheduler(
        coordinator=coordinator,
        scope_provider=lambda: [("ws-1", "agent-1")],
        enabled=True,
        interval_seconds=0.1,
    )

    async def _run() -> None:
        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

    asyncio.run(_run())

    assert coordinator.calls
    assert coordinator.calls[0][:2] == ("ws-1", "agent-1")
