from src.automation.actions import ActionDispatcher, DispatchResult
from src.automation.coordinator import ExecutionCoordinator
from src.automation.errors import (
    AutomationError,
    AutomationValidationError,
    DeliveryError,
    DuplicateOccurrenceError,
    NotFoundError,
    PermanentDeliveryError,
    RuleStoreUnavailableError,
    StoreConflictError,
    TransientDeliveryError,
)
from src.automation.models import (
    AutomationRule,
    Event,
    EventKind,
    ExecutionBatchResult,
    ExecutionRecord,
    Outcome,
    RuleOutcome,
)
from src.automation.service import AutomationEngine, build_engine
from src.automation.store import SQLiteRuleStore
from src.automation.tick_scheduler import TickScheduler
from src.automation.triggers import TriggerEvaluator

__all__ = [
    "ActionDispatcher",
    "AutomationEngine",
    "AutomationError",
    "AutomationRule",
    "AutomationValidationError",
    "DeliveryError",
    "DispatchResult",
    "DuplicateOccurrenceError",
    "Event",
    "EventKind",
    "ExecutionBatchResult",
    "ExecutionCoordinator",
    "ExecutionRecord",
    "NotFoundError",
    "Outcome",
    "PermanentDeliveryError",
    "RuleOutcome",
    "RuleStoreUnavailableError",
    "SQLiteRuleStore",
    "StoreConflictError",
    "TickScheduler",
    "TransientDeliveryError",
    "TriggerEvaluator",
    "build_engine",
]
