"""
描述: 规则存储访问接口
主要功能:
    - 定义引擎依赖的最小存储契约
    - 解耦 SQLite 参考实现与外部数据库实现
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol

from src.automation.models import AutomationRule, ExecutionRecord


# region 规则存储接口定义
class RuleRepository(Protocol):
    """
    规则存储接口。

    功能:
        - 读取工作区/智能体下的规则
        - 对 last_executed_at 做原子条件更新
        - 记录与查询执行审计
        - 维护非定时触发的占用记录
    """

    def list_rules(
        self,
        workspace_id: str,
        agent_id: str,
        trigger_types: Iterable[str] | None = None,
    ) -> list[AutomationRule]:
        """
        按创建顺序返回规则（包含已禁用规则）。

        异常:
            RuleStoreUnavailableError: 存储不可达
        """
        ...

    def get_rule(self, workspace_id: str, agent_id: str, rule_id: str) -> AutomationRule | None:
        """读取单条规则，不存在时返回 None"""
        ...

    def compare_and_set_last_executed(
        self,
        rule_id: str,
        bucket_start: datetime,
        executed_at: datetime,
    ) -> bool:
        """
        仅当 last_executed_at 为空或早于 bucket_start 时写入 executed_at。

        功能:
            - 单条条件 UPDATE 完成，返回是否抢占成功
            - 冲突时抛出 StoreConflictError
        """
        ...

    def restore_last_executed(
        self,
        rule_id: str,
        claimed_value: datetime,
        previous_value: datetime | None,
    ) -> bool:
        """仅当当前值仍为 claimed_value 时回退为 previous_value"""
        ...

    def claim_occurrence(self, rule_id: str, occurrence_key: str) -> bool:
        """插入占用记录，已存在时返回 False"""
        ...

    def release_occurrence(self, rule_id: str, occurrence_key: str) -> None:
        ...

    def has_executed(self, rule_id: str, occurrence_key: str) -> bool:
        """是否已有 matched_executed 审计记录"""
        ...

    def append_execution(self, record: ExecutionRecord) -> None:
        ...

    def list_executions(self, rule_id: str | None = None, limit: int = 100) -> list[ExecutionRecord]:
        ...

    def get_workspace_secret(self, workspace_id: str) -> str | None:
        ...
# endregion
