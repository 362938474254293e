"""
描述: 渠道消息发送协作方
主要功能:
    - 定义私信 / 公开回复的发送接口
    - 提供基于 HTTP 网关的默认实现
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from src.automation.errors import (
    AutomationValidationError,
    TransientDeliveryError,
    delivery_error_for_status,
)
from src.config import ChannelSettings


@dataclass
class ChannelMessage:
    workspace_id: str
    agent_id: str
    platform: str
    text: str
    recipient_id: str | None = None
    recipient_name: str | None = None
    scope_id: str | None = None
    reply_to_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "agent_id": self.agent_id,
            "platform": self.platform,
            "text": self.text,
            "recipient_id": self.recipient_id,
            "recipient_name": self.recipient_name,
            "scope_id": self.scope_id,
            "reply_to_id": self.reply_to_id,
            "metadata": dict(self.metadata),
        }


class ChannelSender(Protocol):
    """
    渠道发送接口

    远端返回可重试状态时抛出 TransientDeliveryError，
    其余失败抛出 PermanentDeliveryError。
    """

    async def send_direct_message(self, message: ChannelMessage) -> dict[str, Any]:
        ...

    async def send_public_reply(self, message: ChannelMessage) -> dict[str, Any]:
        ...


# region HTTP 网关实现
class HttpChannelGateway:
    """
    通过 HTTP 网关转发渠道消息

    功能:
        - POST {gateway_url}/messages/direct
        - POST {gateway_url}/messages/reply
    """

    def __init__(self, settings: ChannelSettings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport

    async def send_direct_message(self, message: ChannelMessage) -> dict[str, Any]:
        return await self._post("/messages/direct", message)

    async def send_public_reply(self, message: ChannelMessage) -> dict[str, Any]:
        return await self._post("/messages/reply", message)

    async def _post(self, path: str, message: ChannelMessage) -> dict[str, Any]:
        base_url = str(self._settings.gateway_url or "").rstrip("/")
        if not base_url:
            raise AutomationValidationError("channels.gateway_url is not configured")

        headers: dict[str, str] = {}
        if self._settings.api_key:
            headers["Authorization"] = f"Bearer {self._settings.api_key}"

        try:
            async with httpx.AsyncClient(
                timeout=self._settings.timeout_seconds,
                trust_env=False,
                transport=self._transport,
            ) as client:
                response = await client.post(f"{base_url}{path}", json=message.to_dict(), headers=headers)
        except httpx.HTTPError as exc:
            raise TransientDeliveryError(f"channel gateway request failed: {exc}") from exc

        if response.status_code >= 400:
            raise delivery_error_for_status("channel gateway", response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {"data": payload}
        payload.setdefault("status_code", response.status_code)
        return payload
# endregion
