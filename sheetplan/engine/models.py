"""数据模型 - 定义规划器中的基础数据类型"""

import copy
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


# ==================== 辅助函数 ====================


def column_index_to_letter(index: int) -> str:
    """
    将列索引转换为 Excel 列标识

    Args:
        index: 列索引（从 0 开始）

    Returns:
        Excel 列标识（A, B, ..., Z, AA, AB, ...）
    """
    result = ""
    index += 1
    while index > 0:
        index -= 1
        result = chr(65 + (index % 26)) + result
        index //= 26
    return result


def generate_id(prefix: str = "step") -> str:
    """生成唯一 ID"""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ==================== 枚举定义 ====================


class TaskType(str, Enum):
    """任务类型"""

    DATA_MODELING = "data_modeling"  # 数据建模（创建表结构）
    DATA_ENTRY = "data_entry"  # 数据录入
    FORMULA_SETUP = "formula_setup"  # 公式设置
    DATA_ANALYSIS = "data_analysis"  # 数据分析
    FORMATTING = "formatting"  # 格式化
    CHART_CREATION = "chart_creation"  # 图表创建
    MIXED = "mixed"  # 混合任务


class ExecutionPhase(str, Enum):
    """计划所处阶段"""

    PLANNING = "planning"
    VALIDATION = "validation"
    EXECUTION = "execution"
    VERIFICATION = "verification"
    COMPLETED = "completed"
    FAILED = "failed"


class StepPhase(str, Enum):
    """步骤阶段"""

    CREATE_STRUCTURE = "create_structure"
    WRITE_DATA = "write_data"
    SET_FORMULAS = "set_formulas"
    ADD_VALIDATION = "add_validation"
    FORMAT = "format"
    VERIFY = "verify"
    READ_DATA = "read_data"
    ANALYZE = "analyze"


class StepStatus(str, Enum):
    """步骤状态"""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class SuccessConditionType(str, Enum):
    """成功条件类型"""

    TOOL_SUCCESS = "tool_success"  # 工具返回 success 即可
    VALUE_CHECK = "value_check"  # 检查某个单元格值
    RANGE_EXISTS = "range_exists"  # 检查范围是否有数据
    FORMULA_RESULT = "formula_result"  # 检查公式计算结果
    SHEET_EXISTS = "sheet_exists"  # 检查工作表存在
    HEADERS_MATCH = "headers_match"  # 检查表头匹配
    NO_ERROR_VALUES = "no_error_values"  # 检查范围内无 #REF! #VALUE! 等
    CUSTOM = "custom"  # 自定义检查函数


class ReferenceMode(str, Enum):
    """公式引用模式"""

    STRUCTURED = "structured"  # 结构化引用: @[字段名]
    ROW_TEMPLATE = "row_template"  # 行模板: {row} 占位符
    A1_FIXED = "a1_fixed"  # A1 固定引用（仅用于单格）


class FieldType(str, Enum):
    """字段类型"""

    SOURCE = "source"
    DERIVED = "derived"
    LOOKUP = "lookup"


class DependencyType(str, Enum):
    """语义依赖类型"""

    FORMULA_REFERENCE = "formula_reference"
    LOOKUP_SOURCE = "lookup_source"
    DATA_SOURCE = "data_source"


class RiskLevel(str, Enum):
    """风险等级"""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskConditionType(str, Enum):
    """任务级成功条件类型"""

    ALL_STEPS_COMPLETE = "all_steps_complete"
    SPECIFIC_STEPS_COMPLETE = "specific_steps_complete"
    FINAL_VERIFY_PASSED = "final_verify_passed"
    VALUE_CHECK = "value_check"
    CUSTOM = "custom"


class FailureType(str, Enum):
    """失败类型"""

    REFERENCE_ERROR = "reference_error"  # #REF!
    VALUE_ERROR = "value_error"  # #VALUE!
    NAME_ERROR = "name_error"  # #NAME?
    MISSING_DEPENDENCY = "missing_dependency"  # 缺少依赖
    TIMEOUT = "timeout"  # 超时
    EXECUTION_ERROR = "execution_error"  # 通用执行错误
    UNKNOWN = "unknown"  # 未知错误


class ReplanStrategy(str, Enum):
    """重新规划策略"""

    SIMPLE_RETRY = "simple_retry"
    RETRY_WITH_FIX = "retry_with_fix"
    ADD_PREREQUISITE = "add_prerequisite"
    SPLIT_STEP = "split_step"
    ALTERNATIVE_APPROACH = "alternative_approach"
    PARTIAL_ROLLBACK = "partial_rollback"
    ABORT = "abort"


# ==================== 数据模型（外部输入） ====================


@dataclass
class ValidationRule:
    """数据验证规则"""

    type: str  # list | range | custom
    values: Optional[List[str]] = None
    min: Optional[float] = None
    max: Optional[float] = None
    formula: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        result: Dict[str, Any] = {"type": self.type}
        for key in ("values", "min", "max", "formula", "error_message"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result


@dataclass
class Field:
    """字段定义"""

    name: str
    formula: Optional[str] = None  # 逻辑公式，按字段名引用，如 "=单价*数量"
    validation: Optional[ValidationRule] = None
    field_type: FieldType = FieldType.SOURCE
    data_type: str = "text"
    description: Optional[str] = None

    @property
    def is_computed(self) -> bool:
        """是否为计算字段"""
        return bool(self.formula)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "formula": self.formula,
            "validation": self.validation.to_dict() if self.validation else None,
            "field_type": self.field_type.value,
            "data_type": self.data_type,
        }


@dataclass
class Table:
    """表定义"""

    name: str
    fields: List[Field] = field(default_factory=list)
    depends_on: List[str] = field(default_factory=list)  # 必须先创建的表
    description: str = ""
    role: str = "transaction"  # master | transaction | summary | analysis

    def get_field(self, field_name: str) -> Optional[Field]:
        """按名称查找字段"""
        for f in self.fields:
            if f.name == field_name:
                return f
        return None

    def field_names(self) -> List[str]:
        """获取所有字段名（保持顺序）"""
        return [f.name for f in self.fields]

    def column_of(self, field_name: str) -> Optional[str]:
        """获取字段所在列的 Excel 列标识（字段按顺序从 A 列开始）"""
        for index, f in enumerate(self.fields):
            if f.name == field_name:
                return column_index_to_letter(index)
        return None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "role": self.role,
            "fields": [f.to_dict() for f in self.fields],
            "depends_on": list(self.depends_on),
        }


@dataclass
class CalculationStep:
    """计算链条目 - 一个计算字段及其逻辑依赖"""

    sheet: str
    field: str
    formula: str
    dependencies: List[str] = field(default_factory=list)  # "Sheet!Field" 形式

    def to_dict(self) -> dict:
        return {
            "sheet": self.sheet,
            "field": self.field,
            "formula": self.formula,
            "dependencies": list(self.dependencies),
        }


@dataclass
class DataModel:
    """
    数据模型 - 由上游建模器产生，编译器只读

    Attributes:
        tables: 表定义（有序）
        execution_order: 表的创建顺序（上游已拓扑排序）
        calculation_chain: 计算链（上游已拓扑排序）
    """

    tables: List[Table] = field(default_factory=list)
    execution_order: List[str] = field(default_factory=list)
    calculation_chain: List[CalculationStep] = field(default_factory=list)
    name: str = ""
    description: str = ""

    def get_table(self, table_name: str) -> Optional[Table]:
        """按名称查找表"""
        for table in self.tables:
            if table.name == table_name:
                return table
        return None

    def get_field(self, table_name: str, field_name: str) -> Optional[Field]:
        """按表名和字段名查找字段"""
        table = self.get_table(table_name)
        if table is None:
            return None
        return table.get_field(field_name)

    def table_names(self) -> List[str]:
        return [t.name for t in self.tables]

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "tables": [t.to_dict() for t in self.tables],
            "execution_order": list(self.execution_order),
            "calculation_chain": [c.to_dict() for c in self.calculation_chain],
        }


@dataclass
class ValidationIssue:
    """模型验证问题（错误或警告）"""

    type: str  # 错误: missing_dependency | circular_reference | invalid_formula；警告: orphan_field ...
    message: str
    sheet: str = ""
    field: str = ""

    def to_dict(self) -> dict:
        return {"type": self.type, "sheet": self.sheet, "field": self.field, "message": self.message}


@dataclass
class ValidationResult:
    """数据模型验证结果"""

    is_valid: bool = True
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


# 表名 -> 字段名 -> 当前负责该字段取值的步骤 ID
FieldStepIdMap = Dict[str, Dict[str, str]]


# ==================== 步骤定义 ====================


@dataclass
class WritePreview:
    """写操作预览"""

    affected_range: str
    affected_cells: str
    overwrite_existing: bool = False
    warning_message: Optional[str] = None

    def to_dict(self) -> dict:
        result = {
            "affected_range": self.affected_range,
            "affected_cells": self.affected_cells,
            "overwrite_existing": self.overwrite_existing,
        }
        if self.warning_message:
            result["warning_message"] = self.warning_message
        return result


@dataclass
class SuccessCondition:
    """
    成功条件 - 由外部执行器对照实际表格状态进行检查

    type 为封闭枚举，各变体使用的参数不同，请通过对应的类方法构造。
    """

    type: SuccessConditionType
    target_sheet: Optional[str] = None
    target_range: Optional[str] = None
    expected_headers: Optional[List[str]] = None
    expected_value: Any = None
    tolerance: Optional[float] = None
    sample_count: Optional[int] = None
    custom_fn: Optional[str] = None

    @classmethod
    def tool_success(cls) -> "SuccessCondition":
        return cls(type=SuccessConditionType.TOOL_SUCCESS)

    @classmethod
    def value_check(
        cls, sheet: str, cell: str, expected: Any, tolerance: Optional[float] = None
    ) -> "SuccessCondition":
        return cls(
            type=SuccessConditionType.VALUE_CHECK,
            target_sheet=sheet,
            target_range=cell,
            expected_value=expected,
            tolerance=tolerance,
        )

    @classmethod
    def range_exists(cls, sheet: str, range_: str) -> "SuccessCondition":
        return cls(type=SuccessConditionType.RANGE_EXISTS, target_sheet=sheet, target_range=range_)

    @classmethod
    def formula_result(cls, sheet: str, range_: str, sample_count: int) -> "SuccessCondition":
        return cls(
            type=SuccessConditionType.FORMULA_RESULT,
            target_sheet=sheet,
            target_range=range_,
            sample_count=sample_count,
        )

    @classmethod
    def sheet_exists(cls, sheet: str) -> "SuccessCondition":
        return cls(type=SuccessConditionType.SHEET_EXISTS, target_sheet=sheet)

    @classmethod
    def headers_match(cls, sheet: str, range_: str, headers: List[str]) -> "SuccessCondition":
        return cls(
            type=SuccessConditionType.HEADERS_MATCH,
            target_sheet=sheet,
            target_range=range_,
            expected_headers=list(headers),
        )

    @classmethod
    def no_error_values(
        cls,
        sample_count: int,
        sheet: Optional[str] = None,
        range_: Optional[str] = None,
    ) -> "SuccessCondition":
        return cls(
            type=SuccessConditionType.NO_ERROR_VALUES,
            target_sheet=sheet,
            target_range=range_,
            sample_count=sample_count,
        )

    @classmethod
    def custom(cls, fn_name: str) -> "SuccessCondition":
        return cls(type=SuccessConditionType.CUSTOM, custom_fn=fn_name)

    def to_dict(self) -> dict:
        result: Dict[str, Any] = {"type": self.type.value}
        for key in (
            "target_sheet",
            "target_range",
            "expected_headers",
            "expected_value",
            "tolerance",
            "sample_count",
            "custom_fn",
        ):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result


@dataclass
class StepResult:
    """步骤执行结果（由外部执行器回报）"""

    success: bool
    output: Optional[str] = None
    error: Optional[str] = None
    duration: Optional[float] = None
    verification_passed: Optional[bool] = None
    warning: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "duration": self.duration,
            "verification_passed": self.verification_passed,
            "warning": self.warning,
        }


@dataclass
class Step:
    """
    计划步骤 - 执行的最小单元

    Attributes:
        id: 唯一标识
        order: 默认线性执行顺序
        phase: 步骤阶段
        action: 外部执行器使用的操作标识
        parameters: 操作参数（对本模块不透明）
        depends_on: 必须先完成的步骤 ID
        success_condition: 成功条件，写操作必填
    """

    id: str
    order: int
    phase: StepPhase
    description: str
    action: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    is_write_operation: bool = False
    write_preview: Optional[WritePreview] = None
    success_condition: SuccessCondition = field(default_factory=SuccessCondition.tool_success)
    status: StepStatus = StepStatus.PENDING
    result: Optional[StepResult] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order": self.order,
            "phase": self.phase.value,
            "description": self.description,
            "action": self.action,
            "parameters": copy.deepcopy(self.parameters),
            "depends_on": list(self.depends_on),
            "is_write_operation": self.is_write_operation,
            "write_preview": self.write_preview.to_dict() if self.write_preview else None,
            "success_condition": self.success_condition.to_dict(),
            "status": self.status.value,
            "result": self.result.to_dict() if self.result else None,
        }

    def __repr__(self) -> str:
        return f"Step({self.order}: {self.phase.value}/{self.action} id={self.id} status={self.status.value})"


# ==================== 计划定义 ====================


@dataclass
class TaskSuccessCondition:
    """任务级成功条件（独立于单个步骤）"""

    id: str
    description: str
    type: TaskConditionType
    priority: int
    step_ids: List[str] = field(default_factory=list)
    check_config: Optional[SuccessCondition] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "type": self.type.value,
            "priority": self.priority,
            "step_ids": list(self.step_ids),
            "check_config": self.check_config.to_dict() if self.check_config else None,
        }


@dataclass
class SemanticDependency:
    """语义依赖 - 只由语义验证器产生"""

    source_sheet: str
    source_field: str
    target_sheet: str
    target_field: str
    dependency_type: DependencyType
    is_resolved: bool = False
    resolved_step_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "source_sheet": self.source_sheet,
            "source_field": self.source_field,
            "target_sheet": self.target_sheet,
            "target_field": self.target_field,
            "dependency_type": self.dependency_type.value,
            "is_resolved": self.is_resolved,
            "resolved_step_id": self.resolved_step_id,
        }


@dataclass
class DependencyCheckResult:
    """依赖检查结果"""

    passed: bool = True
    missing_dependencies: List[str] = field(default_factory=list)
    circular_dependencies: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    semantic_dependencies: List[SemanticDependency] = field(default_factory=list)
    unresolved_semantic_deps: List[SemanticDependency] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "passed": self.passed,
            "missing_dependencies": list(self.missing_dependencies),
            "circular_dependencies": list(self.circular_dependencies),
            "warnings": list(self.warnings),
            "semantic_dependencies": [d.to_dict() for d in self.semantic_dependencies],
            "unresolved_semantic_deps": [d.to_dict() for d in self.unresolved_semantic_deps],
        }


@dataclass
class RiskAssessment:
    """风险评估条目"""

    level: RiskLevel
    description: str
    mitigation: str

    def to_dict(self) -> dict:
        return {"level": self.level.value, "description": self.description, "mitigation": self.mitigation}


@dataclass
class ExecutionPlan:
    """
    执行计划

    由编译器创建一次；执行过程中原地更新步骤状态；重新规划只追加步骤，
    不删除也不重排已有步骤。needs_clarification 为 True 的计划没有步骤，
    不可执行。
    """

    id: str
    task_description: str
    task_type: TaskType
    steps: List[Step] = field(default_factory=list)
    task_success_conditions: List[TaskSuccessCondition] = field(default_factory=list)
    dependency_check: DependencyCheckResult = field(default_factory=DependencyCheckResult)
    field_step_id_map: FieldStepIdMap = field(default_factory=dict)
    risks: List[RiskAssessment] = field(default_factory=list)
    data_model: Optional[DataModel] = None
    model_validation: Optional[ValidationResult] = None

    # 澄清
    needs_clarification: bool = False
    clarification_message: Optional[str] = None

    # 预估
    estimated_steps: int = 0
    estimated_duration_ms: int = 0

    # 执行状态
    phase: ExecutionPhase = ExecutionPhase.PLANNING
    current_step: int = 0
    completed_steps: int = 0
    failed_steps: int = 0

    def get_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def steps_in_phase(self, phase: StepPhase) -> List[Step]:
        return [s for s in self.steps if s.phase == phase]

    def write_steps(self) -> List[Step]:
        return [s for s in self.steps if s.is_write_operation]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "task_description": self.task_description,
            "task_type": self.task_type.value,
            "steps": [s.to_dict() for s in self.steps],
            "task_success_conditions": [c.to_dict() for c in self.task_success_conditions],
            "dependency_check": self.dependency_check.to_dict(),
            "field_step_id_map": {k: dict(v) for k, v in self.field_step_id_map.items()},
            "risks": [r.to_dict() for r in self.risks],
            "data_model": self.data_model.to_dict() if self.data_model else None,
            "model_validation": self.model_validation.to_dict() if self.model_validation else None,
            "needs_clarification": self.needs_clarification,
            "clarification_message": self.clarification_message,
            "estimated_steps": self.estimated_steps,
            "estimated_duration_ms": self.estimated_duration_ms,
            "phase": self.phase.value,
            "current_step": self.current_step,
            "completed_steps": self.completed_steps,
            "failed_steps": self.failed_steps,
        }

    def __repr__(self) -> str:
        if self.needs_clarification:
            return f"ExecutionPlan(id={self.id}, needs_clarification=True)"
        return (
            f"ExecutionPlan(id={self.id}, steps={len(self.steps)}, "
            f"passed={self.dependency_check.passed}, phase={self.phase.value})"
        )


# ==================== 重新规划定义 ====================


@dataclass
class ReplanContext:
    """
    重新规划上下文（不跨调用保存，调用方每次传入）

    Attributes:
        replan_count: 已经重新规划的次数
        completed_steps: 已完成的步骤 ID
        error_details: 详细错误信息
    """

    replan_count: int = 0
    completed_steps: List[str] = field(default_factory=list)
    error_details: Optional[str] = None


@dataclass
class FailureAnalysis:
    """失败分析结果"""

    failure_type: FailureType
    root_cause: str
    failed_step: str
    failed_action: str
    suggestions: List[str] = field(default_factory=list)
    is_recoverable: bool = True

    def to_dict(self) -> dict:
        return {
            "failure_type": self.failure_type.value,
            "root_cause": self.root_cause,
            "failed_step": self.failed_step,
            "failed_action": self.failed_action,
            "suggestions": list(self.suggestions),
            "is_recoverable": self.is_recoverable,
        }


@dataclass
class ReplanResult:
    """重新规划结果"""

    replan_id: str
    original_plan_id: str
    failed_step_id: str
    failure_analysis: FailureAnalysis
    strategy: ReplanStrategy
    new_steps: List[Step] = field(default_factory=list)
    estimated_additional_duration_ms: int = 0
    recommendation: str = ""
    can_continue: bool = True
    requires_user_confirmation: bool = False

    def to_dict(self) -> dict:
        return {
            "replan_id": self.replan_id,
            "original_plan_id": self.original_plan_id,
            "failed_step_id": self.failed_step_id,
            "failure_analysis": self.failure_analysis.to_dict(),
            "strategy": self.strategy.value,
            "new_steps": [s.to_dict() for s in self.new_steps],
            "estimated_additional_duration_ms": self.estimated_additional_duration_ms,
            "recommendation": self.recommendation,
            "can_continue": self.can_continue,
            "requires_user_confirmation": self.requires_user_confirmation,
        }
