"""处理器类型定义"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from sheetplan.engine.models import ExecutionPlan, TaskType


class ProcessStage(str, Enum):
    """处理阶段"""

    COMPILE = "compile"  # 编译步骤
    CHECK = "check"  # 依赖检查
    ASSESS = "assess"  # 风险评估与成功条件


class EventType(str, Enum):
    """事件类型"""

    STAGE_START = "start"  # 阶段开始
    STAGE_DONE = "done"  # 阶段完成
    STAGE_ERROR = "error"  # 阶段错误


@dataclass
class ProcessEvent:
    """
    处理事件 - 统一的中间过程输出格式

    Attributes:
        stage: 当前处理阶段
        event_type: 事件类型
        stage_id: 阶段实例的唯一标识
        output: 阶段输出摘要（STAGE_DONE 时有值）
        error: 错误信息（STAGE_ERROR 时有值）
    """

    stage: ProcessStage
    event_type: EventType
    stage_id: Optional[str] = None
    output: Optional[Any] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        """转换为字典"""
        result = {
            "stage": self.stage.value,
            "type": self.event_type.value,
        }
        if self.stage_id is not None:
            result["stage_id"] = self.stage_id
        if self.output is not None:
            result["output"] = self.output
        if self.error is not None:
            result["error"] = self.error
        return result

    def __repr__(self) -> str:
        parts = [f"stage={self.stage.value}", f"type={self.event_type.value}"]
        if self.stage_id is not None:
            parts.append(f"stage_id={self.stage_id[:8]}...")
        if self.output is not None:
            output_str = str(self.output)
            if len(output_str) > 50:
                output_str = output_str[:50] + "..."
            parts.append(f"output={output_str}")
        if self.error is not None:
            parts.append(f"error={self.error}")
        return f"ProcessEvent({', '.join(parts)})"


@dataclass
class ProcessConfig:
    """
    处理配置

    Attributes:
        task_type: 指定任务类型；为 None 时根据描述自动识别
        validate_model: 没有上游验证结果时是否运行数据模型验证
    """

    task_type: Optional[TaskType] = None
    validate_model: bool = True


@dataclass
class ProcessResult:
    """
    处理结果 - 最终输出

    Attributes:
        plan: 执行计划（阶段出错时可能不完整）
        errors: 错误列表
    """

    plan: Optional[ExecutionPlan] = None
    errors: List[str] = field(default_factory=list)

    def has_errors(self) -> bool:
        """是否有错误"""
        return len(self.errors) > 0

    def to_dict(self) -> dict:
        """转换为字典（用于序列化）"""
        return {
            "plan": self.plan.to_dict() if self.plan else None,
            "errors": self.errors if self.errors else None,
        }

    def __repr__(self) -> str:
        parts = []
        if self.plan:
            parts.append(f"steps={len(self.plan.steps)}")
            if self.plan.needs_clarification:
                parts.append("needs_clarification=True")
        if self.errors:
            parts.append(f"errors={len(self.errors)}")
        return f"ProcessResult({', '.join(parts)})"
