"""计划处理器模块"""

from .types import (
    ProcessStage,
    EventType,
    ProcessEvent,
    ProcessConfig,
    ProcessResult,
)
from .plan_processor import PlanProcessor

__all__ = [
    "ProcessStage",
    "EventType",
    "ProcessEvent",
    "ProcessConfig",
    "ProcessResult",
    "PlanProcessor",
]
