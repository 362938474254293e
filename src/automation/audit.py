"""
描述: 执行审计
主要功能:
    - 每条规则每次尝试追加一条 ExecutionRecord
    - 同步输出结构化日志
"""

from __future__ import annotations

import logging

from src.automation.models import ExecutionRecord, Outcome
from src.automation.repository import RuleRepository


LOGGER = logging.getLogger(__name__)

_LEVELS = {
    Outcome.NOT_MATCHED: logging.DEBUG,
    Outcome.MATCHED_SKIPPED_DUPLICATE: logging.INFO,
    Outcome.MATCHED_EXECUTED: logging.INFO,
    Outcome.MATCHED_FAILED: logging.WARNING,
}


class AuditLogger:
    """审计记录器（只追加）"""

    def __init__(self, repository: RuleRepository) -> None:
        self._repository = repository

    def record(self, record: ExecutionRecord) -> None:
        self._repository.append_execution(record)
        LOGGER.log(
            _LEVELS.get(record.outcome, logging.INFO),
            "automation rule %s occurrence %s -> %s",
            record.rule_id,
            record.occurrence_key,
            record.outcome.value,
            extra={
                "rule_id": record.rule_id,
                "outcome": record.outcome.value,
                "attempts": record.attempts,
                "error": record.error,
                "warning": record.warning,
            },
        )
