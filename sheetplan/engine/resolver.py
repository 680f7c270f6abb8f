"""依赖解析器 - 把逻辑依赖（"Sheet!Field"、表名）解析为步骤 ID

两个函数都是纯查找：解析失败只记录日志，不抛出异常。
"""

import logging
from typing import Iterable, List, Optional, Tuple

from sheetplan.engine.models import FieldStepIdMap

logger = logging.getLogger(__name__)


def split_dependency(token: str) -> Optional[Tuple[str, str]]:
    """
    解析 "Sheet!Field" 形式的依赖

    Returns:
        (sheet, field)；格式不正确（不是恰好两段）时返回 None
    """
    parts = token.split("!")
    if len(parts) != 2:
        return None
    return parts[0], parts[1]


def resolve_precise_dependencies(
    dependencies: Iterable[str],
    field_step_id_map: FieldStepIdMap,
) -> List[str]:
    """
    按字段精确解析依赖

    输入: ["订单明细!数量", "订单明细!单价"]
    输出: ["step-123", "step-456"]

    Args:
        dependencies: "Sheet!Field" 列表
        field_step_id_map: 字段到步骤 ID 的映射

    Returns:
        去重后的步骤 ID 列表（保持首次出现的顺序）
    """
    resolved_ids: List[str] = []

    for dep in dependencies:
        parsed = split_dependency(dep)
        if parsed is None:
            continue

        sheet_name, field_name = parsed
        step_id = field_step_id_map.get(sheet_name, {}).get(field_name)

        if step_id:
            if step_id not in resolved_ids:
                resolved_ids.append(step_id)
        else:
            logger.warning(f"无法解析依赖: {dep}")

    return resolved_ids


def resolve_table_dependencies(
    table_names: Iterable[str],
    field_step_id_map: FieldStepIdMap,
) -> List[str]:
    """
    解析表级依赖

    表的存在不依赖某个具体字段，取该表任意一个（首个登记的）字段步骤 ID
    作为"表已就绪"的代表。
    """
    resolved_ids: List[str] = []

    for table_name in table_names:
        table_fields = field_step_id_map.get(table_name)
        if not table_fields:
            logger.warning(f"无法解析表依赖: {table_name}")
            continue

        first_step_id = next(iter(table_fields.values()))
        if first_step_id and first_step_id not in resolved_ids:
            resolved_ids.append(first_step_id)

    return resolved_ids
