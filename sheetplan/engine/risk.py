"""风险评估"""

import re
from typing import List, Optional

from sheetplan.core.config import settings
from sheetplan.engine.models import DependencyCheckResult, RiskAssessment, RiskLevel, Step, StepPhase

_CROSS_TABLE_LOOKUP = re.compile(r"XLOOKUP|VLOOKUP|INDIRECT")


def assess_risks(
    task_description: str,
    steps: List[Step],
    dependency_check: DependencyCheckResult,
    max_steps: Optional[int] = None,
    max_formula_steps: Optional[int] = None,
) -> List[RiskAssessment]:
    """
    根据编译结果评估风险

    各规则相互独立，每条规则触发时贡献一条风险。

    Args:
        task_description: 任务描述
        steps: 编译出的步骤
        dependency_check: 依赖检查结果
        max_steps: 步骤数阈值，默认取配置
        max_formula_steps: 公式步骤数阈值，默认取配置

    Returns:
        风险列表（可能为空）
    """
    max_steps = settings.RISK_MAX_STEPS if max_steps is None else max_steps
    max_formula_steps = settings.RISK_MAX_FORMULA_STEPS if max_formula_steps is None else max_formula_steps
    risks: List[RiskAssessment] = []

    if not dependency_check.passed:
        risks.append(RiskAssessment(RiskLevel.HIGH, "存在未解决的依赖问题", "请先修复依赖问题再执行"))

    unresolved = len(dependency_check.unresolved_semantic_deps)
    if unresolved > 0:
        risks.append(
            RiskAssessment(
                RiskLevel.HIGH,
                f"存在 {unresolved} 个未解析的语义依赖",
                "请检查公式引用的表和字段是否存在",
            )
        )

    if len(steps) > max_steps:
        risks.append(RiskAssessment(RiskLevel.MEDIUM, "任务步骤较多，执行时间可能较长", "建议分批执行或监控进度"))

    formula_steps = [s for s in steps if s.phase == StepPhase.SET_FORMULAS]
    if len(formula_steps) > max_formula_steps:
        risks.append(RiskAssessment(RiskLevel.MEDIUM, "存在多个公式依赖，可能出现计算错误", "每个公式设置后会进行验证"))

    if _CROSS_TABLE_LOOKUP.search(task_description or ""):
        risks.append(
            RiskAssessment(RiskLevel.MEDIUM, "使用跨表查找函数，可能因数据源问题出错", "确保数据源表已创建且有数据")
        )

    overwrite_steps = [
        s for s in steps if s.is_write_operation and s.write_preview and s.write_preview.overwrite_existing
    ]
    if overwrite_steps:
        risks.append(
            RiskAssessment(
                RiskLevel.MEDIUM,
                f"{len(overwrite_steps)} 个步骤会覆盖现有数据",
                "执行前请确认预览，或先备份",
            )
        )

    return risks
