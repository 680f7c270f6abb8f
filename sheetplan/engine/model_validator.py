"""数据模型验证器 - 检查上游数据模型的结构问题

检查项：
- 表之间的循环依赖（depends_on）
- depends_on 引用了不存在的表
- 计算链依赖引用了不存在的表或字段
- 没有被任何公式引用的源字段（孤岛数据，仅警告）

与解析器一样，问题以列表形式返回，不抛出异常。
"""

import logging
from typing import Dict, List, Set

from sheetplan.engine.models import DataModel, Table, ValidationIssue, ValidationResult
from sheetplan.engine.resolver import split_dependency

logger = logging.getLogger(__name__)


class CircularDependencyError(Exception):
    """表依赖存在环"""

    def __init__(self, table_name: str):
        self.table_name = table_name
        super().__init__(f"循环依赖检测到: {table_name}")


def topological_sort(tables: List[Table]) -> List[str]:
    """
    按 depends_on 对表做拓扑排序（深度优先）

    未知表名会被忽略，由 validate_model 单独报告。

    Returns:
        排序后的表名列表（被依赖的表在前）

    Raises:
        CircularDependencyError: 存在循环依赖时
    """
    by_name: Dict[str, Table] = {t.name: t for t in tables}
    visited: Set[str] = set()
    visiting: Set[str] = set()
    ordered: List[str] = []

    def visit(name: str) -> None:
        if name in visited:
            return
        if name in visiting:
            raise CircularDependencyError(name)

        visiting.add(name)
        for dep in by_name[name].depends_on:
            if dep in by_name:
                visit(dep)
        visiting.discard(name)
        visited.add(name)
        ordered.append(name)

    for table in tables:
        visit(table.name)

    return ordered


def _referenced_fields(data_model: DataModel) -> Set[str]:
    """收集被计算链或公式引用的字段，键为 "表.字段" """
    referenced: Set[str] = set()

    for calc in data_model.calculation_chain:
        for dep in calc.dependencies:
            parsed = split_dependency(dep)
            if parsed:
                referenced.add(f"{parsed[0]}.{parsed[1]}")

    formulas = [f.formula for t in data_model.tables for f in t.fields if f.formula]
    formulas.extend(c.formula for c in data_model.calculation_chain if c.formula)
    for table in data_model.tables:
        for f in table.fields:
            if any(f.name in formula for formula in formulas):
                referenced.add(f"{table.name}.{f.name}")

    return referenced


def validate_model(data_model: DataModel) -> ValidationResult:
    """
    验证数据模型

    Args:
        data_model: 数据模型

    Returns:
        ValidationResult，errors 为空时 is_valid 为 True
    """
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []
    table_names = set(data_model.table_names())

    # 循环依赖
    try:
        topological_sort(data_model.tables)
    except CircularDependencyError as e:
        errors.append(ValidationIssue(type="circular_reference", message=str(e), sheet=e.table_name))

    # 表依赖
    for table in data_model.tables:
        for dep in table.depends_on:
            if dep not in table_names:
                errors.append(
                    ValidationIssue(
                        type="missing_dependency",
                        message=f'依赖的表 "{dep}" 不存在',
                        sheet=table.name,
                    )
                )

    # 计算链依赖
    for calc in data_model.calculation_chain:
        for dep in calc.dependencies:
            parsed = split_dependency(dep)
            if parsed is None:
                continue
            if data_model.get_field(*parsed) is None:
                errors.append(
                    ValidationIssue(
                        type="missing_dependency",
                        message=f'依赖的字段 "{parsed[0]}.{parsed[1]}" 不存在',
                        sheet=calc.sheet,
                        field=calc.field,
                    )
                )

    # 孤岛字段
    referenced = _referenced_fields(data_model)
    for table in data_model.tables:
        for f in table.fields:
            if f.is_computed or f.field_type.value != "source":
                continue
            if f"{table.name}.{f.name}" not in referenced:
                warnings.append(
                    ValidationIssue(
                        type="orphan_field",
                        message=f'字段 "{f.name}" 没有被任何公式引用，可能是孤岛数据',
                        sheet=table.name,
                        field=f.name,
                    )
                )

    if errors:
        logger.info(f"数据模型验证未通过: {len(errors)} 个错误, {len(warnings)} 个警告")

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
