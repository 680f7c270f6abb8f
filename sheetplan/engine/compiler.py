"""步骤图编译器 - 将数据模型编译为有序、带精确依赖的执行步骤

编译按固定的四个阶段进行：
1. 结构：创建工作表 + 写入表头，登记每个字段的"存在性"步骤
2. 公式：按计算链顺序设置公式（结构化引用），并更新字段归属
3. 验证：为带验证规则的字段添加数据验证
4. 终验：若有公式步骤，追加一个验证步骤

没有数据模型时不猜测，返回空步骤，由上层转为澄清请求。
"""

import logging
import re
from typing import Callable, List, Optional, Tuple

from sheetplan.core.config import settings
from sheetplan.engine.models import (
    DataModel,
    FieldStepIdMap,
    ReferenceMode,
    Step,
    StepPhase,
    SuccessCondition,
    TaskConditionType,
    TaskSuccessCondition,
    TaskType,
    WritePreview,
    column_index_to_letter,
    generate_id,
)
from sheetplan.engine.resolver import resolve_precise_dependencies, resolve_table_dependencies
from sheetplan.engine.translator import translate

logger = logging.getLogger(__name__)


# ==================== 操作标识 ====================

ACTION_CREATE_SHEET = "excel_create_sheet"
ACTION_WRITE_RANGE = "excel_write_range"
ACTION_SET_FORMULA = "excel_set_formula"
ACTION_ADD_VALIDATION = "excel_add_data_validation"
ACTION_VERIFY = "verify_execution"
ACTION_CLEAR_RANGE = "excel_clear_range"

# 不可执行的兜底操作（黑名单）
UNEXECUTABLE_ACTIONS = {"execute_task"}


# ==================== 任务类型识别 ====================

_TASK_TYPE_PATTERNS = [
    (re.compile(r"创建.*表|新建.*工作表|设计.*结构|建立.*模型|create .*(table|sheet)|design .*schema", re.I), TaskType.DATA_MODELING),
    (re.compile(r"录入|输入|填写|添加.*数据|enter data|fill in|input", re.I), TaskType.DATA_ENTRY),
    (re.compile(r"公式|计算|求和|XLOOKUP|SUMIF|formula|calculate", re.I), TaskType.FORMULA_SETUP),
    (re.compile(r"分析|统计|汇总|趋势|洞察|analy[sz]e|summari[sz]e|trend", re.I), TaskType.DATA_ANALYSIS),
    (re.compile(r"格式|颜色|字体|样式|美化|format|colou?r|font|style", re.I), TaskType.FORMATTING),
    (re.compile(r"图表|柱状图|折线图|饼图|chart|graph|plot", re.I), TaskType.CHART_CREATION),
]


def identify_task_type(description: str) -> TaskType:
    """
    识别任务类型

    恰好命中一种模式时返回该类型，零个或多个时返回 mixed。
    """
    matched = [task_type for pattern, task_type in _TASK_TYPE_PATTERNS if pattern.search(description or "")]
    if len(matched) == 1:
        return matched[0]
    return TaskType.MIXED


# ==================== 澄清 ====================

_SHEET_MENTION = re.compile(r"表|工作表|sheet|table", re.I)
_RANGE_MENTION = re.compile(r"列|字段|单元格|范围|区域|column|field|cell|range", re.I)
_CALCULATION_INTENT = re.compile(r"公式|计算|formula|calculat", re.I)
_ARITHMETIC_EXPRESSION = re.compile(r"=|求和|乘|加|减|[+*/]|sum|multiply|add|subtract", re.I)


def has_unexecutable_steps(steps: List[Step]) -> bool:
    """检查是否包含不可执行的兜底步骤"""
    return any(step.action in UNEXECUTABLE_ACTIONS for step in steps)


def build_clarification_message(
    task_description: str,
    min_length: Optional[int] = None,
) -> str:
    """
    根据任务描述的结构特征生成澄清请求消息

    Args:
        task_description: 用户任务描述
        min_length: 描述最短长度，默认取配置

    Returns:
        面向用户的澄清消息（非空）
    """
    min_length = settings.MIN_DESCRIPTION_LENGTH if min_length is None else min_length
    description = task_description or ""
    suggestions: List[str] = []

    if len(description) < min_length:
        suggestions.append("请提供更详细的任务描述")
    if not _SHEET_MENTION.search(description):
        suggestions.append("请指明要操作的工作表名称")
    if not _RANGE_MENTION.search(description):
        suggestions.append("请指明要操作的列或范围")
    if _CALCULATION_INTENT.search(description) and not _ARITHMETIC_EXPRESSION.search(description):
        suggestions.append("请说明具体的计算逻辑（如：金额 = 单价 * 数量）")

    if not suggestions:
        suggestions.append("请提供更具体的操作要求")

    lines = "\n".join(f"• {s}" for s in suggestions)
    return f"我需要更多信息才能执行这个任务：\n{lines}"


# ==================== 任务级成功条件 ====================


def build_task_success_conditions(
    steps: List[Step],
    id_factory: Callable[[str], str] = generate_id,
    sample_count: Optional[int] = None,
) -> List[TaskSuccessCondition]:
    """生成任务级成功条件"""
    sample_count = settings.FORMULA_SAMPLE_COUNT if sample_count is None else sample_count
    conditions = [
        TaskSuccessCondition(
            id=id_factory("cond"),
            description="所有步骤均已完成",
            type=TaskConditionType.ALL_STEPS_COMPLETE,
            priority=1,
        )
    ]

    formula_steps = [s for s in steps if s.phase == StepPhase.SET_FORMULAS]
    if formula_steps:
        conditions.append(
            TaskSuccessCondition(
                id=id_factory("cond"),
                description="所有公式步骤无错误值",
                type=TaskConditionType.SPECIFIC_STEPS_COMPLETE,
                priority=2,
                step_ids=[s.id for s in formula_steps],
                check_config=SuccessCondition.no_error_values(sample_count),
            )
        )

    verify_steps = [s for s in steps if s.phase == StepPhase.VERIFY]
    if verify_steps:
        conditions.append(
            TaskSuccessCondition(
                id=id_factory("cond"),
                description="终验步骤通过",
                type=TaskConditionType.FINAL_VERIFY_PASSED,
                priority=3,
                step_ids=[s.id for s in verify_steps],
            )
        )

    return conditions


# ==================== 编译器 ====================


class StepGraphCompiler:
    """
    步骤图编译器

    field_step_id_map 只在单次 compile 调用内有效，作为返回值交给调用方，
    不在实例上保存，保证编译结果只取决于输入。

    使用示例:
        compiler = StepGraphCompiler()
        steps, field_step_id_map = compiler.compile(task, TaskType.DATA_MODELING, model)
    """

    def __init__(
        self,
        id_factory: Callable[[str], str] = generate_id,
        formula_sample_count: Optional[int] = None,
        verify_sample_count: Optional[int] = None,
    ):
        """
        Args:
            id_factory: 步骤 ID 生成函数（参数为前缀）
            formula_sample_count: 公式步骤抽样检查数量，默认取配置
            verify_sample_count: 终验步骤抽样检查数量，默认取配置
        """
        self._new_id = id_factory
        self.formula_sample_count = (
            settings.FORMULA_SAMPLE_COUNT if formula_sample_count is None else formula_sample_count
        )
        self.verify_sample_count = (
            settings.VERIFY_SAMPLE_COUNT if verify_sample_count is None else verify_sample_count
        )

    def compile(
        self,
        task_description: str,
        task_type: TaskType,
        data_model: Optional[DataModel],
    ) -> Tuple[List[Step], FieldStepIdMap]:
        """
        编译执行步骤

        Args:
            task_description: 任务描述
            task_type: 任务类型
            data_model: 数据模型；为 None 时返回空步骤

        Returns:
            (步骤列表, 字段到步骤 ID 的映射)
        """
        field_step_id_map: FieldStepIdMap = {}
        steps: List[Step] = []

        if data_model is None:
            logger.info(f"没有数据模型，不生成步骤 (task_type={task_type.value})")
            return steps, field_step_id_map

        self._compile_structure(data_model, steps, field_step_id_map)
        formula_step_ids = self._compile_formulas(data_model, steps, field_step_id_map)
        self._compile_validations(data_model, steps, field_step_id_map)

        if formula_step_ids:
            steps.append(self._verify_step(data_model, len(steps), formula_step_ids))

        logger.debug(f"编译完成: {len(steps)} 个步骤, {len(formula_step_ids)} 个公式步骤")
        return steps, field_step_id_map

    # ---------- 阶段 1: 结构 ----------

    def _compile_structure(
        self,
        data_model: DataModel,
        steps: List[Step],
        field_step_id_map: FieldStepIdMap,
    ) -> None:
        for table_name in data_model.execution_order:
            table = data_model.get_table(table_name)
            if table is None:
                logger.warning(f"执行顺序中的表不存在于模型中，已跳过: {table_name}")
                continue

            create_step_id = self._new_id("step")
            steps.append(
                Step(
                    id=create_step_id,
                    order=len(steps),
                    phase=StepPhase.CREATE_STRUCTURE,
                    description=f"创建工作表: {table_name}",
                    action=ACTION_CREATE_SHEET,
                    parameters={"name": table_name},
                    depends_on=resolve_table_dependencies(table.depends_on, field_step_id_map),
                    is_write_operation=True,
                    write_preview=WritePreview(
                        affected_range=f'新工作表 "{table_name}"',
                        affected_cells="0格（新建）",
                        overwrite_existing=False,
                    ),
                    success_condition=SuccessCondition.sheet_exists(table_name),
                )
            )

            headers = table.field_names()
            last_column = column_index_to_letter(max(len(headers) - 1, 0))
            header_range = f"A1:{last_column}1"
            headers_step_id = self._new_id("step")
            steps.append(
                Step(
                    id=headers_step_id,
                    order=len(steps),
                    phase=StepPhase.WRITE_DATA,
                    description=f"写入表头: {table_name}",
                    action=ACTION_WRITE_RANGE,
                    parameters={"sheet": table_name, "range": header_range, "values": [headers]},
                    depends_on=[create_step_id],
                    is_write_operation=True,
                    write_preview=WritePreview(
                        affected_range=header_range,
                        affected_cells=f"{len(headers)}格",
                        overwrite_existing=False,
                    ),
                    success_condition=SuccessCondition.headers_match(table_name, header_range, headers),
                )
            )

            # 此时字段只有表头，尚未计算
            table_map = field_step_id_map.setdefault(table_name, {})
            for field_name in headers:
                table_map[field_name] = headers_step_id

    # ---------- 阶段 2: 公式 ----------

    def _compile_formulas(
        self,
        data_model: DataModel,
        steps: List[Step],
        field_step_id_map: FieldStepIdMap,
    ) -> List[str]:
        formula_step_ids: List[str] = []

        for calc in data_model.calculation_chain:
            table = data_model.get_table(calc.sheet)
            target = table.get_field(calc.field) if table else None
            if table is None or target is None:
                logger.warning(f"计算链引用的字段不存在，已跳过: {calc.sheet}.{calc.field}")
                continue

            formula = calc.formula or target.formula
            if not formula:
                logger.warning(f"计算链条目没有公式，已跳过: {calc.sheet}.{calc.field}")
                continue

            column = table.column_of(calc.field)
            structured_formula = translate(formula, table.fields)
            depends_on = resolve_precise_dependencies(calc.dependencies, field_step_id_map)

            formula_step_id = self._new_id("step")
            steps.append(
                Step(
                    id=formula_step_id,
                    order=len(steps),
                    phase=StepPhase.SET_FORMULAS,
                    description=f"设置公式: {calc.sheet}.{calc.field}",
                    action=ACTION_SET_FORMULA,
                    # 只指定列，行范围由执行层按真实数据决定
                    parameters={
                        "sheet": calc.sheet,
                        "column": column,
                        "logical_formula": structured_formula,
                        "reference_mode": ReferenceMode.STRUCTURED.value,
                    },
                    depends_on=depends_on,
                    is_write_operation=True,
                    write_preview=WritePreview(
                        affected_range=f"{calc.sheet}!{column}:{column}",
                        affected_cells="根据实际数据行数",
                        overwrite_existing=True,
                        warning_message="将覆盖该列现有公式",
                    ),
                    success_condition=SuccessCondition.no_error_values(
                        self.formula_sample_count, calc.sheet, f"{column}:{column}"
                    ),
                )
            )
            formula_step_ids.append(formula_step_id)

            # 之后依赖该字段的公式看到的是公式步骤，而不是表头步骤
            field_step_id_map.setdefault(calc.sheet, {})[calc.field] = formula_step_id

        return formula_step_ids

    # ---------- 阶段 3: 数据验证 ----------

    def _compile_validations(
        self,
        data_model: DataModel,
        steps: List[Step],
        field_step_id_map: FieldStepIdMap,
    ) -> None:
        for table in data_model.tables:
            for f in table.fields:
                if f.validation is None:
                    continue

                column = table.column_of(f.name)
                owner = field_step_id_map.get(table.name, {}).get(f.name)
                steps.append(
                    Step(
                        id=self._new_id("step"),
                        order=len(steps),
                        phase=StepPhase.ADD_VALIDATION,
                        description=f"添加验证: {table.name}.{f.name}",
                        action=ACTION_ADD_VALIDATION,
                        parameters={
                            "sheet": table.name,
                            "column": column,
                            "type": f.validation.type,
                            "values": f.validation.values,
                        },
                        depends_on=[owner] if owner else [],
                        is_write_operation=True,
                        write_preview=WritePreview(
                            affected_range=f"{table.name}!{column}:{column}",
                            affected_cells="根据实际数据行数",
                            overwrite_existing=False,
                        ),
                        success_condition=SuccessCondition.tool_success(),
                    )
                )

    # ---------- 阶段 4: 终验 ----------

    def _verify_step(self, data_model: DataModel, order: int, formula_step_ids: List[str]) -> Step:
        return Step(
            id=self._new_id("step"),
            order=order,
            phase=StepPhase.VERIFY,
            description="验证所有公式和数据",
            action=ACTION_VERIFY,
            parameters={
                "sheets": data_model.table_names(),
                "check_formulas": True,
                "sample_rows": self.formula_sample_count,
            },
            depends_on=list(formula_step_ids),
            is_write_operation=False,
            success_condition=SuccessCondition.no_error_values(self.verify_sample_count),
        )


def compile_steps(
    task_description: str,
    task_type: TaskType,
    data_model: Optional[DataModel],
) -> Tuple[List[Step], FieldStepIdMap]:
    """编译步骤的便捷函数"""
    return StepGraphCompiler().compile(task_description, task_type, data_model)
