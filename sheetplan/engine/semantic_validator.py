"""语义验证器 - 检查步骤依赖与语义依赖

检查分为四部分，结果合并为一个 DependencyCheckResult：
1. 结构：每个 depends_on 的步骤 ID 都必须存在
2. 计算链：每个 "Sheet!Field" 依赖都能解析到步骤或已有的源字段
3. 查找源：XLOOKUP / VLOOKUP / INDEX+MATCH 公式的查找源必须存在
4. 合并数据模型验证器的错误和警告
"""

import logging
import re
from typing import List, Optional, Tuple

from sheetplan.engine.model_validator import validate_model
from sheetplan.engine.models import (
    DataModel,
    DependencyCheckResult,
    DependencyType,
    FieldStepIdMap,
    SemanticDependency,
    Step,
    ValidationResult,
)
from sheetplan.engine.resolver import split_dependency

logger = logging.getLogger(__name__)

_LOOKUP_FUNCTION = re.compile(r"XLOOKUP|VLOOKUP|INDEX.*MATCH", re.IGNORECASE)


def is_lookup_formula(formula: Optional[str]) -> bool:
    """公式是否包含查找类函数"""
    return bool(formula) and bool(_LOOKUP_FUNCTION.search(formula))


def extract_lookup_source(formula: str, data_model: DataModel) -> Optional[Tuple[str, str]]:
    """
    从查找公式中提取查找源

    启发式：取公式中出现的第一个表名，再取该表中第一个出现在公式里的字段名。

    Returns:
        (sheet, field)；找不到时返回 None
    """
    for table in data_model.tables:
        if table.name not in formula:
            continue
        for f in table.fields:
            if f.name in formula:
                return table.name, f.name
    return None


def check_step_references(steps: List[Step]) -> List[str]:
    """结构检查：返回所有悬空依赖的描述"""
    step_ids = {s.id for s in steps}
    missing: List[str] = []
    for step in steps:
        for dep in step.depends_on:
            if dep and dep not in step_ids:
                missing.append(f'步骤 "{step.description}" 依赖不存在的步骤: {dep}')
    return missing


def _check_calculation_chain(
    data_model: DataModel,
    field_step_id_map: FieldStepIdMap,
    result: DependencyCheckResult,
) -> None:
    for calc in data_model.calculation_chain:
        for dep in calc.dependencies:
            parsed = split_dependency(dep)
            if parsed is None:
                continue

            dep_sheet, dep_field = parsed
            sem_dep = SemanticDependency(
                source_sheet=calc.sheet,
                source_field=calc.field,
                target_sheet=dep_sheet,
                target_field=dep_field,
                dependency_type=DependencyType.FORMULA_REFERENCE,
            )

            resolved_step_id = field_step_id_map.get(dep_sheet, {}).get(dep_field)
            if resolved_step_id:
                sem_dep.is_resolved = True
                sem_dep.resolved_step_id = resolved_step_id
                result.semantic_dependencies.append(sem_dep)
                continue

            target_table = data_model.get_table(dep_sheet)
            if target_table is None:
                result.unresolved_semantic_deps.append(sem_dep)
                result.warnings.append(f"公式 {calc.sheet}.{calc.field} 引用了不存在的表 {dep_sheet}")
            elif target_table.get_field(dep_field) is None:
                result.unresolved_semantic_deps.append(sem_dep)
                result.warnings.append(
                    f"公式 {calc.sheet}.{calc.field} 引用了不存在的字段 {dep_sheet}.{dep_field}"
                )
            else:
                # 字段存在但没有对应步骤：源数据字段，不需要计算
                sem_dep.is_resolved = True
                result.semantic_dependencies.append(sem_dep)


def _check_lookup_sources(
    data_model: DataModel,
    field_step_id_map: FieldStepIdMap,
    result: DependencyCheckResult,
) -> None:
    for table in data_model.tables:
        for f in table.fields:
            if not is_lookup_formula(f.formula):
                continue

            source = extract_lookup_source(f.formula, data_model)
            if source is None:
                continue

            source_sheet, source_field = source
            sem_dep = SemanticDependency(
                source_sheet=table.name,
                source_field=f.name,
                target_sheet=source_sheet,
                target_field=source_field,
                dependency_type=DependencyType.LOOKUP_SOURCE,
            )

            if data_model.get_field(source_sheet, source_field) is not None:
                sem_dep.is_resolved = True
                sem_dep.resolved_step_id = field_step_id_map.get(source_sheet, {}).get(source_field)
            elif data_model.get_table(source_sheet) is None:
                result.unresolved_semantic_deps.append(sem_dep)
                result.warnings.append(f"LOOKUP 公式 {table.name}.{f.name} 的查找源表 {source_sheet} 不存在")
            else:
                result.unresolved_semantic_deps.append(sem_dep)
                result.warnings.append(
                    f"LOOKUP 公式 {table.name}.{f.name} 的查找源字段 {source_sheet}.{source_field} 不存在"
                )
            result.semantic_dependencies.append(sem_dep)


def _merge_model_validation(validation: ValidationResult, result: DependencyCheckResult) -> None:
    for error in validation.errors:
        if error.type == "missing_dependency":
            result.missing_dependencies.append(error.message)
        elif error.type == "circular_reference":
            result.circular_dependencies.append(error.message)
    for warning in validation.warnings:
        result.warnings.append(warning.message)


def check(
    steps: List[Step],
    data_model: Optional[DataModel],
    field_step_id_map: FieldStepIdMap,
    model_validation: Optional[ValidationResult] = None,
) -> DependencyCheckResult:
    """
    检查步骤依赖和语义依赖

    Args:
        steps: 编译出的步骤
        data_model: 数据模型（可为 None，此时只做结构检查）
        field_step_id_map: 编译时生成的字段步骤映射
        model_validation: 上游的数据模型验证结果；不传时自动运行模型验证

    Returns:
        DependencyCheckResult
    """
    result = DependencyCheckResult()
    result.missing_dependencies.extend(check_step_references(steps))

    if data_model is not None:
        _check_calculation_chain(data_model, field_step_id_map, result)
        _check_lookup_sources(data_model, field_step_id_map, result)

        if model_validation is None:
            model_validation = validate_model(data_model)
        _merge_model_validation(model_validation, result)

    result.passed = (
        not result.missing_dependencies
        and not result.circular_dependencies
        and not result.unresolved_semantic_deps
    )

    if not result.passed:
        logger.info(
            f"依赖检查未通过: missing={len(result.missing_dependencies)}, "
            f"circular={len(result.circular_dependencies)}, "
            f"unresolved={len(result.unresolved_semantic_deps)}"
        )

    return result
