"""数据模型输入的请求模型

同时接受 snake_case 和 camelCase 键名（例如 execution_order / executionOrder），
校验后转换为引擎使用的 dataclass。
"""

import json
import logging
from pathlib import Path
from typing import List, Optional, Union

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from sheetplan.engine import models
from sheetplan.engine.model_validator import CircularDependencyError, topological_sort

logger = logging.getLogger(__name__)


class DataModelLoadError(Exception):
    """数据模型加载失败（文件不存在、格式错误或校验失败）"""

    pass


class _Schema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ==================== 字段与表 ====================


class ValidationRuleSchema(_Schema):
    """数据验证规则"""

    type: str = Field(..., description="验证类型: list | range | custom")
    values: Optional[List[str]] = Field(None, description="可选值列表（list 类型）")
    min: Optional[float] = Field(None, description="最小值（range 类型）")
    max: Optional[float] = Field(None, description="最大值（range 类型）")
    formula: Optional[str] = Field(None, description="自定义验证公式")
    error_message: Optional[str] = Field(None, description="验证失败提示")

    def to_domain(self) -> models.ValidationRule:
        return models.ValidationRule(
            type=self.type,
            values=self.values,
            min=self.min,
            max=self.max,
            formula=self.formula,
            error_message=self.error_message,
        )


class FieldSchema(_Schema):
    """字段定义"""

    name: str = Field(..., min_length=1, description="字段名")
    formula: Optional[str] = Field(None, description="逻辑公式，按字段名引用")
    validation: Optional[ValidationRuleSchema] = Field(None, description="数据验证规则")
    field_type: models.FieldType = Field(
        default=models.FieldType.SOURCE,
        validation_alias=AliasChoices("field_type", "fieldType", "type"),
        description="字段类型: source | derived | lookup",
    )
    data_type: str = Field(default="text", description="数据类型")
    description: Optional[str] = Field(None, description="字段说明")

    def to_domain(self) -> models.Field:
        return models.Field(
            name=self.name,
            formula=self.formula,
            validation=self.validation.to_domain() if self.validation else None,
            field_type=self.field_type,
            data_type=self.data_type,
            description=self.description,
        )


class TableSchema(_Schema):
    """表定义"""

    name: str = Field(..., min_length=1, description="表名")
    fields: List[FieldSchema] = Field(default_factory=list, description="字段（有序）")
    depends_on: List[str] = Field(default_factory=list, description="必须先创建的表")
    description: str = Field(default="", description="表说明")
    role: str = Field(default="transaction", description="master | transaction | summary | analysis")

    def to_domain(self) -> models.Table:
        return models.Table(
            name=self.name,
            fields=[f.to_domain() for f in self.fields],
            depends_on=list(self.depends_on),
            description=self.description,
            role=self.role,
        )


class CalculationStepSchema(_Schema):
    """计算链条目"""

    sheet: str = Field(..., description="表名")
    field: str = Field(..., description="计算字段名")
    formula: str = Field(default="", description="逻辑公式")
    dependencies: List[str] = Field(default_factory=list, description='"Sheet!Field" 形式的依赖')

    def to_domain(self) -> models.CalculationStep:
        return models.CalculationStep(
            sheet=self.sheet,
            field=self.field,
            formula=self.formula,
            dependencies=list(self.dependencies),
        )


# ==================== 数据模型 ====================


class DataModelSchema(_Schema):
    """数据模型"""

    name: str = Field(default="", description="模型名称")
    description: str = Field(default="", description="模型说明")
    tables: List[TableSchema] = Field(default_factory=list, description="表定义")
    execution_order: Optional[List[str]] = Field(None, description="表的创建顺序，缺省时按依赖排序")
    calculation_chain: List[CalculationStepSchema] = Field(default_factory=list, description="计算链")

    def to_domain(self) -> models.DataModel:
        tables = [t.to_domain() for t in self.tables]
        execution_order = self.execution_order
        if execution_order is None:
            try:
                execution_order = topological_sort(tables)
            except CircularDependencyError as e:
                # 保持原顺序，循环依赖由验证器报告
                logger.warning(f"无法推导执行顺序: {e}")
                execution_order = [t.name for t in tables]

        return models.DataModel(
            tables=tables,
            execution_order=list(execution_order),
            calculation_chain=[c.to_domain() for c in self.calculation_chain],
            name=self.name,
            description=self.description,
        )


class PlanRequest(_Schema):
    """规划请求：任务描述 + 数据模型"""

    task: str = Field(
        default="",
        validation_alias=AliasChoices("task", "task_description", "taskDescription"),
        description="任务描述",
    )
    task_type: Optional[models.TaskType] = Field(None, description="任务类型，缺省时自动识别")
    data_model: Optional[DataModelSchema] = Field(None, description="数据模型")


# ==================== 加载 ====================


def _read_file(path: Union[str, Path]) -> dict:
    path = Path(path)
    if not path.exists():
        raise DataModelLoadError(f"文件不存在: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise DataModelLoadError(f"文件格式错误: {path}: {e}") from e

    if not isinstance(data, dict):
        raise DataModelLoadError(f"文件内容必须是对象: {path}")
    return data


def load_data_model(data: dict) -> models.DataModel:
    """
    校验并转换数据模型

    Args:
        data: 数据模型字典

    Returns:
        DataModel

    Raises:
        DataModelLoadError: 校验失败
    """
    try:
        return DataModelSchema.model_validate(data).to_domain()
    except ValidationError as e:
        raise DataModelLoadError(f"数据模型校验失败: {e}") from e


def load_data_model_file(path: Union[str, Path]) -> models.DataModel:
    """从 JSON / YAML 文件加载数据模型"""
    return load_data_model(_read_file(path))


def load_plan_request(data: dict) -> PlanRequest:
    """校验规划请求"""
    try:
        return PlanRequest.model_validate(data)
    except ValidationError as e:
        raise DataModelLoadError(f"规划请求校验失败: {e}") from e


def load_plan_request_file(path: Union[str, Path]) -> PlanRequest:
    """从 JSON / YAML 文件加载规划请求"""
    return load_plan_request(_read_file(path))
