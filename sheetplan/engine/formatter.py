"""计划展示格式化 - 生成给用户确认的 Markdown 文本"""

from typing import Dict, List

from sheetplan.engine.models import ExecutionPlan, ReplanResult, RiskLevel, StepStatus

TASK_TYPE_LABELS: Dict[str, str] = {
    "data_modeling": "数据建模",
    "data_entry": "数据录入",
    "formula_setup": "公式设置",
    "data_analysis": "数据分析",
    "formatting": "格式化",
    "chart_creation": "图表创建",
    "mixed": "综合任务",
}

TABLE_ROLE_LABELS: Dict[str, str] = {
    "master": "主数据表",
    "transaction": "交易数据表",
    "summary": "汇总表",
    "analysis": "分析表",
}

PHASE_LABELS: Dict[str, str] = {
    "create_structure": "创建结构",
    "write_data": "写入数据",
    "set_formulas": "设置公式",
    "add_validation": "添加验证",
    "format": "格式化",
    "verify": "验证检查",
    "read_data": "读取数据",
    "analyze": "分析数据",
}

STRATEGY_LABELS: Dict[str, str] = {
    "simple_retry": "简单重试",
    "retry_with_fix": "修复后重试",
    "add_prerequisite": "补充前置步骤",
    "split_step": "分批执行",
    "alternative_approach": "替代方案",
    "partial_rollback": "部分回滚",
    "abort": "放弃",
}

_RISK_ICONS = {RiskLevel.HIGH: "🔴", RiskLevel.MEDIUM: "🟡", RiskLevel.LOW: "🟢"}
_STATUS_ICONS = {StepStatus.COMPLETED: "✅", StepStatus.FAILED: "❌", StepStatus.RUNNING: "🔄"}


def _truncate(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def format_plan(plan: ExecutionPlan) -> str:
    """
    格式化执行计划

    需要澄清的计划只输出澄清消息；否则依次输出任务信息、数据模型、
    依赖问题、风险、写操作预览、按阶段分组的步骤和成功条件。
    """
    lines: List[str] = []

    if plan.needs_clarification:
        lines.append("❓ **需要更多信息**")
        lines.append("")
        lines.append(plan.clarification_message or "请提供更具体的任务描述")
        return "\n".join(lines)

    lines.append("📋 **执行计划**")
    lines.append("")
    lines.append(f"**任务**: {_truncate(plan.task_description)}")
    lines.append(f"**类型**: {TASK_TYPE_LABELS.get(plan.task_type.value, plan.task_type.value)}")
    lines.append(f"**预计步骤**: {plan.estimated_steps}")
    lines.append("")

    if plan.data_model:
        lines.append("📊 **数据模型**")
        lines.append("")
        lines.append(f"表结构: {' → '.join(plan.data_model.table_names())}")
        lines.append("")
        for table in plan.data_model.tables:
            lines.append(f"**{table.name}** ({TABLE_ROLE_LABELS.get(table.role, table.role)})")
            lines.append(f"  字段: {', '.join(table.field_names())}")
            if table.depends_on:
                lines.append(f"  依赖: {', '.join(table.depends_on)}")
            lines.append("")

    check = plan.dependency_check
    if not check.passed:
        lines.append("⚠️ **依赖问题**")
        for issue in check.missing_dependencies + check.circular_dependencies:
            lines.append(f"  - {issue}")
        for dep in check.unresolved_semantic_deps:
            lines.append(f"  - 未解析: {dep.source_sheet}.{dep.source_field} → {dep.target_sheet}.{dep.target_field}")
        lines.append("")

    if plan.risks:
        lines.append("⚠️ **风险评估**")
        for risk in plan.risks:
            lines.append(f"  {_RISK_ICONS.get(risk.level, '🟢')} {risk.description}")
        lines.append("")

    write_steps = [s for s in plan.steps if s.is_write_operation and s.write_preview]
    if write_steps:
        lines.append("✏️ **写操作预览**")
        for step in write_steps:
            preview = step.write_preview
            icon = "⚠️" if preview.overwrite_existing else "✅"
            lines.append(f"  {icon} {step.description}")
            lines.append(f"      范围: {preview.affected_range} (约 {preview.affected_cells})")
            if preview.warning_message:
                lines.append(f"      ⚠️ {preview.warning_message}")
        lines.append("")

    lines.append("📝 **执行步骤**")
    lines.append("")
    current_phase = None
    for step in plan.steps:
        if step.phase != current_phase:
            current_phase = step.phase
            lines.append(f"**阶段: {PHASE_LABELS.get(step.phase.value, step.phase.value)}**")
        status_icon = _STATUS_ICONS.get(step.status, "⏳")
        write_icon = "✏️" if step.is_write_operation else ""
        lines.append(f"  {status_icon}{write_icon} {step.order + 1}. {step.description}")

    if plan.task_success_conditions:
        lines.append("")
        lines.append("✅ **成功条件**")
        for cond in plan.task_success_conditions:
            lines.append(f"  - {cond.description}")

    return "\n".join(lines)


def format_replan(result: ReplanResult) -> str:
    """格式化重新规划结果"""
    analysis = result.failure_analysis
    lines = [
        "🔧 **重新规划**",
        "",
        f"**失败步骤**: {analysis.failed_step}",
        f"**失败类型**: {analysis.failure_type.value}",
        f"**策略**: {STRATEGY_LABELS.get(result.strategy.value, result.strategy.value)}",
    ]

    if result.requires_user_confirmation:
        lines.append("**需要确认**: 是")
    if not result.can_continue:
        lines.append("**无法继续执行**")

    if result.new_steps:
        lines.append("")
        lines.append("📝 **新增步骤**")
        for step in result.new_steps:
            lines.append(f"  ⏳ {step.order + 1}. {step.description}")

    lines.append("")
    lines.append(result.recommendation)
    return "\n".join(lines)
