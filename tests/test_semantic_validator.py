"""Test dependency and semantic checks."""

from sheetplan.engine.compiler import StepGraphCompiler
from sheetplan.engine.models import (
    DependencyType,
    Field,
    Step,
    StepPhase,
    TaskType,
    ValidationIssue,
    ValidationResult,
)
from sheetplan.engine.semantic_validator import check, extract_lookup_source, is_lookup_formula


def _compile(model):
    return StepGraphCompiler().compile("x", TaskType.MIXED, model)


def test_orders_model_passes(orders_model):
    steps, field_map = _compile(orders_model)
    result = check(steps, orders_model, field_map)

    assert result.passed
    assert result.missing_dependencies == []
    assert result.unresolved_semantic_deps == []
    assert len(result.semantic_dependencies) == 2
    assert all(d.is_resolved for d in result.semantic_dependencies)
    assert {d.resolved_step_id for d in result.semantic_dependencies} == {steps[1].id}


def test_sales_model_passes_with_lookup(sales_model):
    steps, field_map = _compile(sales_model)
    result = check(steps, sales_model, field_map)

    assert result.passed
    lookups = [d for d in result.semantic_dependencies if d.dependency_type == DependencyType.LOOKUP_SOURCE]
    assert len(lookups) == 1
    assert (lookups[0].target_sheet, lookups[0].target_field) == ("Products", "SKU")
    assert lookups[0].is_resolved


def test_dangling_step_reference_is_missing():
    steps = [
        Step(id="a", order=0, phase=StepPhase.CREATE_STRUCTURE, description="创建", action="excel_create_sheet"),
        Step(
            id="b",
            order=1,
            phase=StepPhase.WRITE_DATA,
            description="写入",
            action="excel_write_range",
            depends_on=["a", "ghost"],
        ),
    ]
    result = check(steps, None, {})

    assert not result.passed
    assert result.missing_dependencies == ['步骤 "写入" 依赖不存在的步骤: ghost']


def test_reference_to_missing_field_is_unresolved(orders_model):
    orders_model.calculation_chain[0].dependencies.append("Orders!Discount")
    steps, field_map = _compile(orders_model)
    result = check(steps, orders_model, field_map)

    assert not result.passed
    assert len(result.unresolved_semantic_deps) == 1
    assert "公式 Orders.Amount 引用了不存在的字段 Orders.Discount" in result.warnings


def test_reference_to_missing_table_is_unresolved(orders_model):
    orders_model.calculation_chain[0].dependencies.append("Customers!Level")
    steps, field_map = _compile(orders_model)
    result = check(steps, orders_model, field_map)

    assert not result.passed
    assert "公式 Orders.Amount 引用了不存在的表 Customers" in result.warnings


def test_source_field_without_step_is_resolved(orders_model):
    # 表不在执行顺序中：没有步骤，但字段存在于模型，视为源数据
    orders_model.execution_order = []
    result = check([], orders_model, {})

    assert result.unresolved_semantic_deps == []
    assert all(d.is_resolved and d.resolved_step_id is None for d in result.semantic_dependencies)


def test_malformed_chain_tokens_ignored(orders_model):
    orders_model.calculation_chain[0].dependencies = ["Quantity", "a!b!c"]
    steps, field_map = _compile(orders_model)
    result = check(steps, orders_model, field_map)
    assert result.semantic_dependencies == []


def test_lookup_without_known_table_not_recorded(sales_model):
    sales = sales_model.get_table("Sales")
    sales.fields.append(Field(name="Region", formula="=VLOOKUP([@SKU],Stores!A:B,2,FALSE)"))
    steps, field_map = _compile(sales_model)
    result = check(steps, sales_model, field_map)

    sources = [d.source_field for d in result.semantic_dependencies if d.dependency_type == DependencyType.LOOKUP_SOURCE]
    assert sources == ["UnitPrice"]
    assert result.passed


def test_upstream_validation_merged(orders_model):
    steps, field_map = _compile(orders_model)
    upstream = ValidationResult(
        is_valid=False,
        errors=[
            ValidationIssue(type="circular_reference", message="循环依赖检测到: Orders"),
            ValidationIssue(type="missing_dependency", message='依赖的字段 "X.Y" 不存在'),
            ValidationIssue(type="invalid_formula", message="ignored"),
        ],
        warnings=[ValidationIssue(type="orphan_field", message="孤岛")],
    )
    result = check(steps, orders_model, field_map, upstream)

    assert not result.passed
    assert result.circular_dependencies == ["循环依赖检测到: Orders"]
    assert result.missing_dependencies == ['依赖的字段 "X.Y" 不存在']
    assert "孤岛" in result.warnings


def test_is_lookup_formula():
    assert is_lookup_formula("=xlookup(a,b,c)")
    assert is_lookup_formula("=INDEX(B:B,MATCH(A1,A:A,0))")
    assert not is_lookup_formula("=A*B")
    assert not is_lookup_formula(None)


def test_extract_lookup_source(sales_model):
    formula = "=XLOOKUP([@SKU],Products[SKU],Products[Price])"
    assert extract_lookup_source(formula, sales_model) == ("Products", "SKU")
    assert extract_lookup_source("=XLOOKUP(1,Other[A],Other[B])", sales_model) is None
