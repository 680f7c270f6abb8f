"""Test data model validation."""

import pytest

from sheetplan.engine.model_validator import CircularDependencyError, topological_sort, validate_model
from sheetplan.engine.models import CalculationStep, DataModel, Field, Table


def test_valid_model(orders_model):
    result = validate_model(orders_model)
    assert result.is_valid
    assert result.errors == []


def test_topological_sort_puts_dependencies_first():
    tables = [
        Table(name="Sales", depends_on=["Products", "Customers"]),
        Table(name="Products"),
        Table(name="Customers"),
    ]
    order = topological_sort(tables)
    assert order.index("Products") < order.index("Sales")
    assert order.index("Customers") < order.index("Sales")


def test_circular_dependency_detected():
    tables = [Table(name="A", depends_on=["B"]), Table(name="B", depends_on=["A"])]
    with pytest.raises(CircularDependencyError):
        topological_sort(tables)

    result = validate_model(DataModel(tables=tables, execution_order=["A", "B"]))
    assert not result.is_valid
    assert result.errors[0].type == "circular_reference"
    assert result.errors[0].message.startswith("循环依赖检测到")


def test_unknown_table_dependency():
    model = DataModel(tables=[Table(name="Sales", depends_on=["Products"])], execution_order=["Sales"])
    result = validate_model(model)
    assert [e.type for e in result.errors] == ["missing_dependency"]
    assert result.errors[0].message == '依赖的表 "Products" 不存在'


def test_chain_dependency_on_missing_field(orders_model):
    orders_model.calculation_chain.append(
        CalculationStep(sheet="Orders", field="Amount", formula="=Tax", dependencies=["Orders!Tax"])
    )
    result = validate_model(orders_model)
    assert not result.is_valid
    assert result.errors[0].message == '依赖的字段 "Orders.Tax" 不存在'
    assert result.errors[0].field == "Amount"


def test_orphan_source_field_warning(orders_model):
    orders_model.tables[0].fields.append(Field(name="Remark"))
    result = validate_model(orders_model)
    assert result.is_valid
    orphans = [w for w in result.warnings if w.type == "orphan_field"]
    assert [w.field for w in orphans] == ["Remark"]
    assert orphans[0].message == '字段 "Remark" 没有被任何公式引用，可能是孤岛数据'
