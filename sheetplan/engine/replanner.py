"""重新规划器 - 步骤失败后的修复状态机

流程：
1. analyze_failure: 根据错误文本识别失败类型
2. determine_strategy: 查决策表选择修复策略（到达上限一律 abort）
3. 按策略生成新步骤（全新 ID，追加到计划末尾，不修改已有步骤）

状态不跨调用保存，调用方每次通过 ReplanContext 传入已重试次数。
"""

import copy
import logging
import math
import re
from typing import Callable, Dict, List, Optional, Tuple

from sheetplan.core.config import settings
from sheetplan.engine.compiler import ACTION_CLEAR_RANGE, ACTION_CREATE_SHEET, ACTION_SET_FORMULA
from sheetplan.engine.models import (
    ExecutionPlan,
    FailureAnalysis,
    FailureType,
    ReplanContext,
    ReplanResult,
    ReplanStrategy,
    Step,
    StepPhase,
    StepStatus,
    SuccessCondition,
    generate_id,
)

logger = logging.getLogger(__name__)


# ==================== 失败分类 ====================

# (失败类型, 匹配关键字, 根因, 建议)，按顺序匹配，先命中者优先
_FAILURE_RULES: List[Tuple[FailureType, Tuple[str, ...], str, List[str]]] = [
    (
        FailureType.REFERENCE_ERROR,
        ("#REF!",),
        "引用的工作表或范围不存在",
        ["检查引用的工作表是否已创建", "确认数据源范围是否正确"],
    ),
    (
        FailureType.VALUE_ERROR,
        ("#VALUE!",),
        "数据类型不匹配或计算无效",
        ["检查被引用的单元格是否包含正确的数据类型", "考虑使用 IFERROR 包装公式"],
    ),
    (
        FailureType.NAME_ERROR,
        ("#NAME?",),
        "函数名不存在或拼写错误",
        ["检查函数名拼写", "确认使用的函数在当前 Excel 版本中可用"],
    ),
    (
        FailureType.MISSING_DEPENDENCY,
        ("不存在", "not found", "does not exist"),
        "依赖的工作表或数据不存在",
        ["先创建依赖的工作表", "检查工作表名称拼写"],
    ),
    (
        FailureType.TIMEOUT,
        ("timeout", "超时", "timed out"),
        "操作执行超时",
        ["减少操作的数据范围", "分批执行"],
    ),
]


# ==================== 决策表 ====================

# 失败类型 -> (首次失败时的策略, 已重新规划过后的策略)
DECISION_TABLE: Dict[FailureType, Tuple[ReplanStrategy, ReplanStrategy]] = {
    FailureType.MISSING_DEPENDENCY: (ReplanStrategy.ADD_PREREQUISITE, ReplanStrategy.ADD_PREREQUISITE),
    FailureType.REFERENCE_ERROR: (ReplanStrategy.RETRY_WITH_FIX, ReplanStrategy.ALTERNATIVE_APPROACH),
    FailureType.VALUE_ERROR: (ReplanStrategy.RETRY_WITH_FIX, ReplanStrategy.RETRY_WITH_FIX),
    FailureType.NAME_ERROR: (ReplanStrategy.ALTERNATIVE_APPROACH, ReplanStrategy.ALTERNATIVE_APPROACH),
    FailureType.TIMEOUT: (ReplanStrategy.SPLIT_STEP, ReplanStrategy.SPLIT_STEP),
    FailureType.EXECUTION_ERROR: (ReplanStrategy.SIMPLE_RETRY, ReplanStrategy.PARTIAL_ROLLBACK),
    FailureType.UNKNOWN: (ReplanStrategy.ABORT, ReplanStrategy.ABORT),
}

STRATEGY_RECOMMENDATIONS: Dict[ReplanStrategy, str] = {
    ReplanStrategy.SIMPLE_RETRY: "将简单重试失败的步骤",
    ReplanStrategy.RETRY_WITH_FIX: "将使用 IFERROR 包装公式后重试",
    ReplanStrategy.ADD_PREREQUISITE: "将先创建缺失的依赖项，然后重新执行",
    ReplanStrategy.SPLIT_STEP: "将把大范围操作分成小批次执行",
    ReplanStrategy.ALTERNATIVE_APPROACH: "将尝试使用替代的函数或方法",
    ReplanStrategy.PARTIAL_ROLLBACK: "将回滚失败的操作，需要手动确认后续步骤",
    ReplanStrategy.ABORT: "无法自动修复，建议手动检查",
}

_CONFIRMATION_STRATEGIES = {ReplanStrategy.ALTERNATIVE_APPROACH, ReplanStrategy.PARTIAL_ROLLBACK}


# ==================== 公式与范围工具 ====================

_MISSING_SHEET_PATTERNS = [
    re.compile(r"工作表\s*['\"]?([^'\"]+?)['\"]?\s*不存在"),
    re.compile(r"['\"]([^'\"]+)['\"]\s*not found", re.IGNORECASE),
    re.compile(r"Sheet\s*['\"]?([^'\"]+?)['\"]?\s*does not exist", re.IGNORECASE),
]

_RANGE = re.compile(r"([A-Z]+)(\d+):([A-Z]+)(\d+)")
_XLOOKUP_CALL = re.compile(r"XLOOKUP\(", re.IGNORECASE)
_CONCAT_CALL = re.compile(r"\bCONCAT\(", re.IGNORECASE)


def wrap_with_iferror(formula: str) -> str:
    """
    用 IFERROR 包装公式

    "=A*B" -> '=IFERROR(A*B,"")'；已经包装过的公式、非公式文本保持不变。
    """
    if not formula or not formula.startswith("="):
        return formula
    inner = formula[1:]
    if inner.upper().startswith("IFERROR("):
        return formula
    return f'=IFERROR({inner},"")'


def extract_missing_sheet(error_text: str) -> Optional[str]:
    """从错误信息中提取缺失的工作表名"""
    for pattern in _MISSING_SHEET_PATTERNS:
        match = pattern.search(error_text or "")
        if match:
            return match.group(1).strip()
    return None


def split_range(range_: str, batch_count: Optional[int] = None) -> List[str]:
    """
    按行把范围切分为连续的批次

    "A1:A900" -> ["A1:A300", "A301:A600", "A601:A900"]
    无法解析的范围原样作为单个批次返回。
    """
    batch_count = settings.SPLIT_BATCH_COUNT if batch_count is None else batch_count
    match = _RANGE.search(range_)
    if not match:
        return [range_]

    start_col, start_row, end_col, end_row = match.group(1), int(match.group(2)), match.group(3), int(match.group(4))
    total_rows = end_row - start_row + 1
    if total_rows <= 0:
        return [range_]

    batch_size = math.ceil(total_rows / max(batch_count, 1))
    ranges: List[str] = []
    current = start_row
    while current <= end_row:
        current_end = min(current + batch_size - 1, end_row)
        ranges.append(f"{start_col}{current}:{end_col}{current_end}")
        current = current_end + 1
    return ranges


def _split_arguments(text: str) -> List[str]:
    """按顶层逗号切分函数参数，忽略括号和字符串内的逗号"""
    args: List[str] = []
    depth = 0
    in_string = False
    current = ""
    for ch in text:
        if ch == '"':
            in_string = not in_string
        elif not in_string:
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
            elif ch == "," and depth == 0:
                args.append(current.strip())
                current = ""
                continue
        current += ch
    args.append(current.strip())
    return args


def _find_closing_paren(text: str, open_index: int) -> int:
    """返回与 open_index 处左括号匹配的右括号位置，找不到返回 -1"""
    depth = 0
    in_string = False
    for i in range(open_index, len(text)):
        ch = text[i]
        if ch == '"':
            in_string = not in_string
        elif not in_string:
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth == 0:
                    return i
    return -1


def _rewrite_xlookup(formula: str) -> str:
    result = ""
    pos = 0
    while True:
        match = _XLOOKUP_CALL.search(formula, pos)
        if not match:
            return result + formula[pos:]

        open_index = match.end() - 1
        close_index = _find_closing_paren(formula, open_index)
        if close_index < 0:
            return result + formula[pos:]

        args = _split_arguments(formula[open_index + 1 : close_index])
        if len(args) == 3:
            key, lookup, ret = (_rewrite_xlookup(a) for a in args)
            result += formula[pos : match.start()] + f"INDEX({ret},MATCH({key},{lookup},0))"
        else:
            result += formula[pos : close_index + 1]
        pos = close_index + 1


def generate_alternative_formula(formula: str) -> str:
    """
    生成替代公式

    - 三参数 XLOOKUP(k, lookup, ret) -> INDEX(ret, MATCH(k, lookup, 0))
    - CONCAT( -> CONCATENATE(

    没有可用的替换规则时返回原公式。
    """
    if not formula:
        return formula
    alternative = _rewrite_xlookup(formula)
    alternative = _CONCAT_CALL.sub("CONCATENATE(", alternative)
    return alternative


def _formula_key(step: Step) -> Optional[str]:
    """公式步骤中存放公式的参数名"""
    for key in ("logical_formula", "formula"):
        if isinstance(step.parameters.get(key), str):
            return key
    return None


# ==================== 重新规划器 ====================


class Replanner:
    """
    重新规划器

    使用示例:
        replanner = Replanner()
        result = replanner.replan(plan, failed_step, "#REF!", ReplanContext(replan_count=0))
        if result.can_continue:
            replanner.apply_replan(plan, result)
    """

    def __init__(
        self,
        id_factory: Callable[[str], str] = generate_id,
        max_replan_count: Optional[int] = None,
        split_batch_count: Optional[int] = None,
        step_duration_ms: Optional[int] = None,
    ):
        self._new_id = id_factory
        self.max_replan_count = settings.MAX_REPLAN_COUNT if max_replan_count is None else max_replan_count
        self.split_batch_count = settings.SPLIT_BATCH_COUNT if split_batch_count is None else split_batch_count
        self.step_duration_ms = settings.STEP_DURATION_MS if step_duration_ms is None else step_duration_ms

    # ---------- 分析与决策 ----------

    def analyze_failure(self, failed_step: Step, failure_reason: str) -> FailureAnalysis:
        """
        分析失败原因

        Args:
            failed_step: 失败的步骤
            failure_reason: 执行器返回的错误文本

        Returns:
            FailureAnalysis
        """
        text = failure_reason or ""
        lowered = text.lower()

        for failure_type, keywords, root_cause, suggestions in _FAILURE_RULES:
            if any(k in text or k.lower() in lowered for k in keywords):
                return FailureAnalysis(
                    failure_type=failure_type,
                    root_cause=root_cause,
                    failed_step=failed_step.description,
                    failed_action=failed_step.action,
                    suggestions=list(suggestions),
                )

        return FailureAnalysis(
            failure_type=FailureType.EXECUTION_ERROR,
            root_cause=text if text.strip() else "未提供错误信息",
            failed_step=failed_step.description,
            failed_action=failed_step.action,
            suggestions=["检查参数是否正确", "查看详细错误日志"],
        )

    def determine_strategy(self, analysis: FailureAnalysis, context: ReplanContext) -> ReplanStrategy:
        """查决策表选择策略，达到重试上限时一律 abort"""
        if context.replan_count >= self.max_replan_count:
            return ReplanStrategy.ABORT

        first, later = DECISION_TABLE[analysis.failure_type]
        return first if context.replan_count == 0 else later

    # ---------- 入口 ----------

    def replan(
        self,
        plan: ExecutionPlan,
        failed_step: Step,
        failure_reason: str,
        context: Optional[ReplanContext] = None,
    ) -> ReplanResult:
        """
        为失败的步骤生成修复方案

        不修改 plan；调用方确认后通过 apply_replan 追加新步骤。

        Args:
            plan: 原执行计划
            failed_step: 失败的步骤
            failure_reason: 错误文本
            context: 重新规划上下文，默认视为第一次

        Returns:
            ReplanResult
        """
        context = context or ReplanContext()
        analysis = self.analyze_failure(failed_step, failure_reason)
        strategy = self.determine_strategy(analysis, context)
        new_steps = self._generate_steps(plan, failed_step, strategy, context, failure_reason)

        logger.info(
            f"重新规划: step={failed_step.id} type={analysis.failure_type.value} "
            f"count={context.replan_count} strategy={strategy.value} new_steps={len(new_steps)}"
        )

        return ReplanResult(
            replan_id=self._new_id("replan"),
            original_plan_id=plan.id,
            failed_step_id=failed_step.id,
            failure_analysis=analysis,
            strategy=strategy,
            new_steps=new_steps,
            estimated_additional_duration_ms=len(new_steps) * self.step_duration_ms,
            recommendation=self.build_recommendation(strategy, analysis),
            can_continue=strategy != ReplanStrategy.ABORT,
            requires_user_confirmation=strategy in _CONFIRMATION_STRATEGIES,
        )

    def apply_replan(self, plan: ExecutionPlan, result: ReplanResult) -> ExecutionPlan:
        """将新步骤追加到计划末尾（不修改已有步骤）"""
        if result.original_plan_id != plan.id:
            raise ValueError(f"Replan {result.replan_id} does not belong to plan {plan.id}")

        for step in result.new_steps:
            step.order = len(plan.steps)
            plan.steps.append(step)
        plan.estimated_steps = len(plan.steps)
        plan.estimated_duration_ms = len(plan.steps) * self.step_duration_ms
        return plan

    @staticmethod
    def build_recommendation(strategy: ReplanStrategy, analysis: FailureAnalysis) -> str:
        """生成面向用户的建议"""
        recommendation = STRATEGY_RECOMMENDATIONS.get(strategy, "需要手动处理")
        recommendation += f"\n\n**失败原因**: {analysis.root_cause}"
        if analysis.suggestions:
            recommendation += "\n\n**建议**:\n" + "\n".join(f"- {s}" for s in analysis.suggestions)
        return recommendation

    # ---------- 步骤生成 ----------

    def _copy_step(self, failed_step: Step, order: int, description: str, **overrides) -> Step:
        step = Step(
            id=self._new_id("step"),
            order=order,
            phase=failed_step.phase,
            description=description,
            action=failed_step.action,
            parameters=copy.deepcopy(failed_step.parameters),
            depends_on=list(failed_step.depends_on),
            is_write_operation=failed_step.is_write_operation,
            write_preview=copy.deepcopy(failed_step.write_preview),
            success_condition=copy.deepcopy(failed_step.success_condition),
            status=StepStatus.PENDING,
        )
        for key, value in overrides.items():
            setattr(step, key, value)
        return step

    def _generate_steps(
        self,
        plan: ExecutionPlan,
        failed_step: Step,
        strategy: ReplanStrategy,
        context: ReplanContext,
        failure_reason: str,
    ) -> List[Step]:
        order = len(plan.steps)

        if strategy == ReplanStrategy.SIMPLE_RETRY:
            return [self._copy_step(failed_step, order, failed_step.description)]

        if strategy == ReplanStrategy.RETRY_WITH_FIX:
            return [self._retry_with_fix(failed_step, order)]

        if strategy == ReplanStrategy.ADD_PREREQUISITE:
            return self._add_prerequisite(failed_step, order, context.error_details, failure_reason)

        if strategy == ReplanStrategy.SPLIT_STEP:
            return self._split(failed_step, order)

        if strategy == ReplanStrategy.ALTERNATIVE_APPROACH:
            return self._alternative(failed_step, order)

        if strategy == ReplanStrategy.PARTIAL_ROLLBACK:
            return [self._rollback(failed_step, order)]

        return []

    def _retry_with_fix(self, failed_step: Step, order: int) -> Step:
        key = _formula_key(failed_step)
        if failed_step.action != ACTION_SET_FORMULA or key is None:
            return self._copy_step(failed_step, order, f"[重试] {failed_step.description}")

        step = self._copy_step(failed_step, order, f"[修复重试] {failed_step.description}")
        step.parameters[key] = wrap_with_iferror(step.parameters[key])
        return step

    def _add_prerequisite(
        self, failed_step: Step, order: int, error_details: Optional[str], failure_reason: str
    ) -> List[Step]:
        steps: List[Step] = []
        missing_sheet = extract_missing_sheet(error_details) or extract_missing_sheet(failure_reason)

        if missing_sheet:
            steps.append(
                Step(
                    id=self._new_id("step"),
                    order=order,
                    phase=StepPhase.CREATE_STRUCTURE,
                    description=f"[补充] 创建缺失的工作表: {missing_sheet}",
                    action=ACTION_CREATE_SHEET,
                    parameters={"name": missing_sheet},
                    depends_on=[],
                    is_write_operation=True,
                    success_condition=SuccessCondition.sheet_exists(missing_sheet),
                )
            )

        retry = self._copy_step(failed_step, order + len(steps), f"[重试] {failed_step.description}")
        if steps:
            retry.depends_on = [steps[-1].id]
        steps.append(retry)
        return steps

    def _split(self, failed_step: Step, order: int) -> List[Step]:
        range_ = failed_step.parameters.get("range")
        if not isinstance(range_, str) or not range_:
            return []

        ranges = split_range(range_, self.split_batch_count)
        steps: List[Step] = []
        for i, sub_range in enumerate(ranges):
            step = self._copy_step(
                failed_step,
                order + i,
                f"[分批 {i + 1}/{len(ranges)}] {failed_step.description}",
            )
            step.parameters["range"] = sub_range
            if steps:
                step.depends_on = [steps[-1].id]
            steps.append(step)
        return steps

    def _alternative(self, failed_step: Step, order: int) -> List[Step]:
        key = _formula_key(failed_step)
        if failed_step.action != ACTION_SET_FORMULA or key is None:
            return []

        original = failed_step.parameters[key]
        alternative = generate_alternative_formula(original)
        if alternative == original:
            return []

        step = self._copy_step(failed_step, order, f"[替代方案] {failed_step.description}")
        step.parameters[key] = alternative
        return [step]

    def _rollback(self, failed_step: Step, order: int) -> Step:
        params = failed_step.parameters
        range_ = params.get("range")
        if not range_ and params.get("column"):
            range_ = f"{params['column']}:{params['column']}"

        return Step(
            id=self._new_id("step"),
            order=order,
            phase=StepPhase.VERIFY,
            description="[回滚] 清除失败步骤的结果",
            action=ACTION_CLEAR_RANGE,
            parameters={"sheet": params.get("sheet"), "range": range_},
            depends_on=[],
            is_write_operation=True,
            success_condition=SuccessCondition.tool_success(),
        )


def replan(
    plan: ExecutionPlan,
    failed_step: Step,
    failure_reason: str,
    context: Optional[ReplanContext] = None,
) -> ReplanResult:
    """重新规划的便捷函数"""
    return Replanner().replan(plan, failed_step, failure_reason, context)
