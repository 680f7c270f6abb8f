"""Test failure classification and replanning."""

import pytest

from sheetplan.engine.compiler import ACTION_CLEAR_RANGE, ACTION_CREATE_SHEET, StepGraphCompiler
from sheetplan.engine.models import (
    ExecutionPlan,
    FailureType,
    ReplanContext,
    ReplanStrategy,
    Step,
    StepPhase,
    StepStatus,
    SuccessConditionType,
    TaskType,
)
from sheetplan.engine.replanner import (
    DECISION_TABLE,
    Replanner,
    extract_missing_sheet,
    generate_alternative_formula,
    split_range,
    wrap_with_iferror,
)


@pytest.fixture
def plan(orders_model, id_factory):
    steps, field_map = StepGraphCompiler(id_factory=id_factory).compile("x", TaskType.MIXED, orders_model)
    return ExecutionPlan(
        id="plan-1",
        task_description="x",
        task_type=TaskType.MIXED,
        steps=steps,
        field_step_id_map=field_map,
        data_model=orders_model,
    )


@pytest.fixture
def replanner(id_factory):
    return Replanner(id_factory=id_factory)


def _formula_step(plan):
    return plan.steps[2]


def _range_step(range_="A1:A900"):
    return Step(
        id="w1",
        order=0,
        phase=StepPhase.WRITE_DATA,
        description="写入数据",
        action="excel_write_range",
        parameters={"sheet": "Orders", "range": range_, "values": []},
        depends_on=["s0"],
        is_write_operation=True,
    )


# ==================== 分类 ====================


@pytest.mark.parametrize(
    "text, expected",
    [
        ("公式返回 #REF!", FailureType.REFERENCE_ERROR),
        ("#VALUE! in C2", FailureType.VALUE_ERROR),
        ("#NAME? error", FailureType.NAME_ERROR),
        ("工作表 'Products' 不存在", FailureType.MISSING_DEPENDENCY),
        ("Sheet 'Products' not found", FailureType.MISSING_DEPENDENCY),
        ("Request Timeout after 30s", FailureType.TIMEOUT),
        ("执行超时", FailureType.TIMEOUT),
        ("permission denied", FailureType.EXECUTION_ERROR),
        ("", FailureType.EXECUTION_ERROR),
        ("#REF! and timeout", FailureType.REFERENCE_ERROR),
    ],
)
def test_analyze_failure(replanner, plan, text, expected):
    analysis = replanner.analyze_failure(_formula_step(plan), text)
    assert analysis.failure_type == expected
    assert analysis.failed_step == _formula_step(plan).description
    assert analysis.suggestions


def test_generic_error_root_cause_is_error_text(replanner, plan):
    analysis = replanner.analyze_failure(_formula_step(plan), "permission denied")
    assert analysis.root_cause == "permission denied"


def test_blank_error_is_retried(replanner, plan):
    result = replanner.replan(plan, _formula_step(plan), "", ReplanContext())

    assert result.failure_analysis.failure_type == FailureType.EXECUTION_ERROR
    assert result.failure_analysis.root_cause == "未提供错误信息"
    assert result.failure_analysis.is_recoverable is True
    assert result.strategy == ReplanStrategy.SIMPLE_RETRY
    assert result.can_continue is True
    assert len(result.new_steps) == 1


# ==================== 决策表 ====================


def test_decision_table_covers_every_failure_type():
    assert set(DECISION_TABLE) == set(FailureType)


@pytest.mark.parametrize(
    "failure_type, first, later",
    [
        (FailureType.MISSING_DEPENDENCY, ReplanStrategy.ADD_PREREQUISITE, ReplanStrategy.ADD_PREREQUISITE),
        (FailureType.REFERENCE_ERROR, ReplanStrategy.RETRY_WITH_FIX, ReplanStrategy.ALTERNATIVE_APPROACH),
        (FailureType.VALUE_ERROR, ReplanStrategy.RETRY_WITH_FIX, ReplanStrategy.RETRY_WITH_FIX),
        (FailureType.NAME_ERROR, ReplanStrategy.ALTERNATIVE_APPROACH, ReplanStrategy.ALTERNATIVE_APPROACH),
        (FailureType.TIMEOUT, ReplanStrategy.SPLIT_STEP, ReplanStrategy.SPLIT_STEP),
        (FailureType.EXECUTION_ERROR, ReplanStrategy.SIMPLE_RETRY, ReplanStrategy.PARTIAL_ROLLBACK),
        (FailureType.UNKNOWN, ReplanStrategy.ABORT, ReplanStrategy.ABORT),
    ],
)
def test_decision_table(failure_type, first, later):
    assert DECISION_TABLE[failure_type] == (first, later)


@pytest.mark.parametrize("text", ["#REF!", "#VALUE!", "not found", "timeout", "boom", ""])
def test_ceiling_always_aborts(replanner, plan, text):
    result = replanner.replan(plan, _formula_step(plan), text, ReplanContext(replan_count=3))
    assert result.strategy == ReplanStrategy.ABORT
    assert result.new_steps == []
    assert result.can_continue is False
    assert result.recommendation.startswith("无法自动修复")


def test_ref_error_transitions(replanner, plan):
    first = replanner.replan(plan, _formula_step(plan), "#REF!", ReplanContext(replan_count=0))
    second = replanner.replan(plan, _formula_step(plan), "#REF!", ReplanContext(replan_count=1))
    assert first.strategy == ReplanStrategy.RETRY_WITH_FIX
    assert second.strategy == ReplanStrategy.ALTERNATIVE_APPROACH


def test_ceiling_configurable(plan, id_factory):
    replanner = Replanner(id_factory=id_factory, max_replan_count=1)
    result = replanner.replan(plan, _formula_step(plan), "#VALUE!", ReplanContext(replan_count=1))
    assert result.strategy == ReplanStrategy.ABORT


# ==================== 步骤生成 ====================


def test_simple_retry_copies_failed_step(replanner, plan):
    failed = _formula_step(plan)
    failed.status = StepStatus.FAILED
    result = replanner.replan(plan, failed, "permission denied", ReplanContext())

    assert result.strategy == ReplanStrategy.SIMPLE_RETRY
    (retry,) = result.new_steps
    assert retry.id != failed.id
    assert retry.order == len(plan.steps)
    assert retry.status == StepStatus.PENDING
    assert retry.action == failed.action
    assert retry.parameters == failed.parameters
    assert retry.parameters is not failed.parameters
    assert retry.depends_on == failed.depends_on
    assert failed.status == StepStatus.FAILED
    assert result.can_continue
    assert not result.requires_user_confirmation


def test_retry_with_fix_wraps_formula(replanner, plan):
    failed = _formula_step(plan)
    result = replanner.replan(plan, failed, "#VALUE!", ReplanContext())

    (fixed,) = result.new_steps
    assert fixed.parameters["logical_formula"] == '=IFERROR(@[Quantity]*@[UnitPrice],"")'
    assert fixed.description.startswith("[修复重试]")
    # 原步骤不变
    assert failed.parameters["logical_formula"] == "=@[Quantity]*@[UnitPrice]"


def test_retry_with_fix_non_formula_step(replanner, plan):
    failed = plan.steps[1]
    result = replanner.replan(plan, failed, "#VALUE!", ReplanContext())
    (retry,) = result.new_steps
    assert retry.description == f"[重试] {failed.description}"
    assert retry.parameters == failed.parameters


def test_add_prerequisite_creates_missing_sheet(replanner, plan):
    failed = _formula_step(plan)
    result = replanner.replan(
        plan,
        failed,
        "not found",
        ReplanContext(error_details="Sheet 'Products' does not exist"),
    )

    assert result.strategy == ReplanStrategy.ADD_PREREQUISITE
    create, retry = result.new_steps
    assert create.action == ACTION_CREATE_SHEET
    assert create.parameters == {"name": "Products"}
    assert create.success_condition.type == SuccessConditionType.SHEET_EXISTS
    assert retry.depends_on == [create.id]
    assert [create.order, retry.order] == [len(plan.steps), len(plan.steps) + 1]


def test_add_prerequisite_without_sheet_name(replanner, plan):
    failed = _formula_step(plan)
    result = replanner.replan(plan, failed, "数据源不存在", ReplanContext())
    (retry,) = result.new_steps
    assert retry.depends_on == failed.depends_on


def test_add_prerequisite_reads_failure_text(replanner, plan):
    result = replanner.replan(plan, _formula_step(plan), "工作表 '产品' 不存在", ReplanContext())
    assert result.new_steps[0].parameters == {"name": "产品"}


def test_split_step_chains_batches(replanner, plan):
    failed = _range_step()
    result = replanner.replan(plan, failed, "timeout", ReplanContext())

    assert result.strategy == ReplanStrategy.SPLIT_STEP
    assert [s.parameters["range"] for s in result.new_steps] == ["A1:A300", "A301:A600", "A601:A900"]
    first, second, third = result.new_steps
    assert first.depends_on == ["s0"]
    assert second.depends_on == [first.id]
    assert third.depends_on == [second.id]
    assert third.description.startswith("[分批 3/3]")


def test_split_step_without_range(replanner, plan):
    result = replanner.replan(plan, _formula_step(plan), "timeout", ReplanContext())
    assert result.strategy == ReplanStrategy.SPLIT_STEP
    assert result.new_steps == []
    assert result.can_continue


def test_alternative_approach_rewrites_xlookup(replanner, plan):
    failed = _formula_step(plan)
    failed.parameters["logical_formula"] = "=XLOOKUP(@[SKU],Products[SKU],Products[Price])"
    result = replanner.replan(plan, failed, "#NAME?", ReplanContext())

    assert result.strategy == ReplanStrategy.ALTERNATIVE_APPROACH
    assert result.requires_user_confirmation
    (alt,) = result.new_steps
    assert alt.parameters["logical_formula"] == "=INDEX(Products[Price],MATCH(@[SKU],Products[SKU],0))"


def test_alternative_approach_without_rule_emits_nothing(replanner, plan):
    result = replanner.replan(plan, _formula_step(plan), "#NAME?", ReplanContext())
    assert result.new_steps == []
    assert result.estimated_additional_duration_ms == 0


def test_partial_rollback_clears_formula_column(replanner, plan):
    failed = _formula_step(plan)
    result = replanner.replan(plan, failed, "permission denied", ReplanContext(replan_count=1))

    assert result.strategy == ReplanStrategy.PARTIAL_ROLLBACK
    assert result.requires_user_confirmation
    (clear,) = result.new_steps
    assert clear.action == ACTION_CLEAR_RANGE
    assert clear.parameters == {"sheet": "Orders", "range": "C:C"}
    assert clear.depends_on == []
    assert clear.is_write_operation


def test_result_metadata(replanner, plan):
    result = replanner.replan(plan, _formula_step(plan), "#VALUE!", ReplanContext())
    assert result.original_plan_id == "plan-1"
    assert result.failed_step_id == _formula_step(plan).id
    assert result.estimated_additional_duration_ms == 2000
    assert "**失败原因**: 数据类型不匹配或计算无效" in result.recommendation
    assert "- 考虑使用 IFERROR 包装公式" in result.recommendation


def test_apply_replan_appends_only(replanner, plan):
    before = [s.id for s in plan.steps]
    result = replanner.replan(plan, _formula_step(plan), "#VALUE!", ReplanContext())
    replanner.apply_replan(plan, result)

    assert [s.id for s in plan.steps][: len(before)] == before
    assert plan.steps[-1].id == result.new_steps[0].id
    assert plan.estimated_steps == len(before) + 1


def test_apply_replan_rejects_foreign_result(replanner, plan):
    result = replanner.replan(plan, _formula_step(plan), "#VALUE!", ReplanContext())
    result.original_plan_id = "other"
    with pytest.raises(ValueError):
        replanner.apply_replan(plan, result)


# ==================== 工具函数 ====================


def test_wrap_with_iferror():
    assert wrap_with_iferror("=A1*B1") == '=IFERROR(A1*B1,"")'
    assert wrap_with_iferror('=IFERROR(A1*B1,"")') == '=IFERROR(A1*B1,"")'
    assert wrap_with_iferror("=iferror(A1,0)") == "=iferror(A1,0)"
    assert wrap_with_iferror("plain") == "plain"


def test_extract_missing_sheet():
    assert extract_missing_sheet("工作表 '客户' 不存在") == "客户"
    assert extract_missing_sheet('"Products" not found') == "Products"
    assert extract_missing_sheet("Sheet Inventory does not exist") == "Inventory"
    assert extract_missing_sheet("something else") is None


def test_split_range():
    assert split_range("A1:B10", 3) == ["A1:B4", "A5:B8", "A9:B10"]
    assert split_range("A1:A2", 3) == ["A1:A1", "A2:A2"]
    assert split_range("C:C", 3) == ["C:C"]


def test_generate_alternative_formula():
    assert generate_alternative_formula("=CONCAT(A1,B1)") == "=CONCATENATE(A1,B1)"
    assert generate_alternative_formula("=XLOOKUP(A1,B:B,C:C,\"\")") == "=XLOOKUP(A1,B:B,C:C,\"\")"
    assert generate_alternative_formula("=A1+1") == "=A1+1"
    assert (
        generate_alternative_formula("=XLOOKUP(A1,B:B,XLOOKUP(D1,E:E,F:F))")
        == "=INDEX(INDEX(F:F,MATCH(D1,E:E,0)),MATCH(A1,B:B,0))"
    )
