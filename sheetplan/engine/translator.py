"""公式引用翻译器 - 将逻辑公式中的字段名改写为结构化引用

输入: "=单价*数量"
输出: "=@[单价]*@[数量]"

翻译结果写入的是表格结构化列，而不是固定的单元格范围，行数由执行层决定。
"""

import re
from typing import Any, Iterable, List, Mapping

from sheetplan.engine.models import Field

# 已是结构化引用的片段、字符串字面量：不参与替换
_PROTECTED_SEGMENT = re.compile(r'(@\[[^\]]*\]|"[^"]*")')


def structured_reference(name: str) -> str:
    """字段名 -> 结构化引用"""
    return f"@[{name}]"


def _field_name(descriptor: Any) -> str:
    """字段描述可以是 Field、带 name 键的映射或字符串"""
    if isinstance(descriptor, Field):
        return descriptor.name
    if isinstance(descriptor, Mapping):
        return str(descriptor.get("name") or "")
    if isinstance(descriptor, str):
        return descriptor
    return str(getattr(descriptor, "name", "") or "")


def _sorted_names(fields: Iterable[Any]) -> List[str]:
    """去重后按名称长度降序排列，长名称优先，避免短名称误替换长名称的一部分"""
    names = {_field_name(f) for f in fields}
    return sorted((n for n in names if n), key=lambda n: (-len(n), n))


def _substitute_outside_protected(text: str, pattern: re.Pattern, replacement: str) -> str:
    # split 带捕获组：奇数下标为受保护片段
    parts = _PROTECTED_SEGMENT.split(text)
    for i in range(0, len(parts), 2):
        if parts[i]:
            parts[i] = pattern.sub(lambda _m: replacement, parts[i])
    return "".join(parts)


def _translate_once(formula: str, names: List[str]) -> str:
    translated = formula
    for name in names:
        # 前后均不能紧邻单词字符（含中文），前面不能是 @[ 或 [，后面不能是 ]
        pattern = re.compile(rf"(?<![\w@\[]){re.escape(name)}(?![\w\]])")
        translated = _substitute_outside_protected(translated, pattern, structured_reference(name))
    return translated


def translate(formula: str, fields: Iterable[Any]) -> str:
    """
    将公式中出现的已知字段名转换为结构化引用

    未识别的内容保持原样，不会抛出异常。翻译是幂等的：
    translate(translate(f, fields), fields) == translate(f, fields)

    Args:
        formula: 逻辑公式（按字段名引用）
        fields: 字段描述序列（Field、{"name": ...} 或字段名字符串）

    Returns:
        结构化引用形式的公式
    """
    if not formula:
        return formula

    names = _sorted_names(fields)
    if not names:
        return formula

    # 每轮替换只会把未保护文本变成受保护片段，反复执行直到不再变化即为不动点
    translated = formula
    while True:
        updated = _translate_once(translated, names)
        if updated == translated:
            return translated
        translated = updated
