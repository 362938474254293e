"""
描述: 自动化 HTTP 接口请求模型
主要功能:
    - 评论 / 消息事件、定时 tick、手动执行的请求体校验
    - 请求体转换为引擎 Event
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from src.automation.models import Event, EventKind


class InboundEventRequest(BaseModel):
    workspace_id: str = Field(min_length=1)
    agent_id: str = Field(min_length=1)
    occurrence_id: str = Field(min_length=1, description="comment / message id")
    platform: str = ""
    content: str = ""
    author_id: str | None = None
    author_name: str | None = None
    scope_id: str | None = Field(default=None, description="post / page id")
    comment_id: str | None = None
    parent_id: str | None = Field(default=None, description="parent comment id when replying")
    received_at: datetime | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    def to_event(self, kind: EventKind) -> Event:
        return Event(
            kind=kind,
            workspace_id=self.workspace_id,
            agent_id=self.agent_id,
            occurrence_id=self.occurrence_id,
            platform=self.platform,
            content=self.content,
            author_id=self.author_id,
            author_name=self.author_name,
            scope_id=self.scope_id,
            comment_id=self.comment_id or (self.occurrence_id if kind is EventKind.COMMENT else None),
            parent_id=self.parent_id,
            received_at=self.received_at,
            extra=dict(self.extra),
        )


class ScheduleTickRequest(BaseModel):
    workspace_id: str = Field(min_length=1)
    agent_id: str = Field(min_length=1)
    now: datetime | None = None


class ManualRunRequest(BaseModel):
    workspace_id: str = Field(min_length=1)
    agent_id: str = Field(min_length=1)
    recipient: str | None = None
    message_override: str | None = None
    invocation_id: str | None = None
