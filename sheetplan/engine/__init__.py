"""规划引擎 - 核心函数模块

包含计划编译与修复的核心逻辑：
- models: 数据模型定义
- translator: 公式结构化引用翻译
- resolver: 依赖解析
- compiler: 步骤图编译器
- model_validator: 数据模型验证
- semantic_validator: 步骤依赖与语义依赖检查
- risk: 风险评估
- replanner: 失败后的重新规划
- plan_tracker: 计划执行追踪器
- formatter: 计划展示格式化
"""

from sheetplan.engine.models import (
    TaskType,
    StepPhase,
    StepStatus,
    FailureType,
    ReplanStrategy,
    ValidationRule,
    Field,
    Table,
    CalculationStep,
    DataModel,
    ValidationResult,
    Step,
    SuccessCondition,
    ExecutionPlan,
    DependencyCheckResult,
    ReplanContext,
    ReplanResult,
    FieldStepIdMap,
)
from sheetplan.engine.translator import translate
from sheetplan.engine.resolver import resolve_precise_dependencies, resolve_table_dependencies
from sheetplan.engine.compiler import StepGraphCompiler, compile_steps, identify_task_type
from sheetplan.engine.model_validator import validate_model
from sheetplan.engine.semantic_validator import check
from sheetplan.engine.risk import assess_risks
from sheetplan.engine.replanner import Replanner, replan
from sheetplan.engine.plan_tracker import PlanTracker
from sheetplan.engine.formatter import format_plan, format_replan

__all__ = [
    # Models
    "TaskType",
    "StepPhase",
    "StepStatus",
    "FailureType",
    "ReplanStrategy",
    "ValidationRule",
    "Field",
    "Table",
    "CalculationStep",
    "DataModel",
    "ValidationResult",
    "Step",
    "SuccessCondition",
    "ExecutionPlan",
    "DependencyCheckResult",
    "ReplanContext",
    "ReplanResult",
    "FieldStepIdMap",
    # Translator / Resolver
    "translate",
    "resolve_precise_dependencies",
    "resolve_table_dependencies",
    # Compiler
    "StepGraphCompiler",
    "compile_steps",
    "identify_task_type",
    # Validators
    "validate_model",
    "check",
    # Risk
    "assess_risks",
    # Replanner
    "Replanner",
    "replan",
    # Tracker / Formatter
    "PlanTracker",
    "format_plan",
    "format_replan",
]
