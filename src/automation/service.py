"""
描述: 自动化引擎装配
主要功能:
    - 按配置组装存储、邮件队列、渠道网关、签名器与编排器
    - 工作区签名密钥解析（存储 -> 配置映射 -> 默认密钥）
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import httpx

from src.automation.actions import ActionDispatcher
from src.automation.channels import ChannelSender, HttpChannelGateway
from src.automation.coordinator import ExecutionCoordinator
from src.automation.email_queue import EmailQueue, SQLiteEmailOutbox
from src.automation.models import TriggerType
from src.automation.signing import DeliverySigner
from src.automation.store import SQLiteRuleStore, import_rules_file
from src.automation.tick_scheduler import TickScheduler
from src.config import Settings, resolve_runtime_path


LOGGER = logging.getLogger(__name__)


@dataclass
class AutomationEngine:
    settings: Settings
    store: SQLiteRuleStore
    email_queue: EmailQueue
    coordinator: ExecutionCoordinator

    def build_tick_scheduler(self) -> TickScheduler:
        return TickScheduler(
            coordinator=self.coordinator,
            scope_provider=lambda: self.store.list_scopes(TriggerType.TIME.value),
            enabled=bool(self.settings.automation.enabled and self.settings.automation.tick_scheduler_enabled),
            interval_seconds=float(self.settings.automation.tick_interval_seconds),
        )


def make_secret_resolver(settings: Settings, store: SQLiteRuleStore) -> Callable[[str], str | None]:
    def resolve(workspace_id: str) -> str | None:
        stored = store.get_workspace_secret(workspace_id)
        if stored:
            return stored
        configured = settings.automation.webhook_signing_secrets.get(workspace_id)
        if configured:
            return configured
        return settings.automation.default_signing_secret or None

    return resolve


def build_engine(
    settings: Settings,
    *,
    channel_sender: ChannelSender | None = None,
    email_queue: EmailQueue | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AutomationEngine:
    """
    组装自动化引擎

    参数:
        settings: 全局配置
        channel_sender: 渠道发送协作方，缺省使用 HTTP 网关
        email_queue: 邮件队列，缺省使用 SQLite 发件箱
        transport: webhook 使用的 httpx transport（测试注入）
    """
    db_path = resolve_runtime_path(settings.automation.db_file)
    store = SQLiteRuleStore(db_path, claim_ttl_seconds=settings.automation.claim_ttl_seconds)
    if settings.automation.rules_file:
        import_rules_file(store, resolve_runtime_path(settings.automation.rules_file))

    resolved_queue = email_queue if email_queue is not None else SQLiteEmailOutbox(db_path)
    resolved_sender = channel_sender if channel_sender is not None else HttpChannelGateway(settings.channels)
    signer = DeliverySigner(make_secret_resolver(settings, store))
    dispatcher = ActionDispatcher(
        settings.automation,
        channel_sender=resolved_sender,
        email_queue=resolved_queue,
        signer=signer,
        transport=transport,
    )
    coordinator = ExecutionCoordinator(store, dispatcher)
    LOGGER.info("automation engine ready", extra={"db_path": str(db_path)})
    return AutomationEngine(settings=settings, store=store, email_queue=resolved_queue, coordinator=coordinator)
