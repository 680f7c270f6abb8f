"""Test the planning pipeline."""

from sheetplan.engine.models import (
    ExecutionPhase,
    TaskType,
    ValidationIssue,
    ValidationResult,
)
from sheetplan.processor import EventType, PlanProcessor, ProcessConfig, ProcessStage
from sheetplan.processor.stages.check import CLARIFICATION_DEPENDENCY_ISSUE


def test_orders_plan(orders_model):
    result = PlanProcessor().process_sync("在 Orders 表计算 Amount", orders_model)
    plan = result.plan

    assert not result.has_errors()
    assert not plan.needs_clarification
    assert len(plan.steps) == 4
    assert plan.steps[2].parameters["logical_formula"] == "=@[Quantity]*@[UnitPrice]"
    assert plan.dependency_check.passed
    assert plan.estimated_steps == 4
    assert plan.estimated_duration_ms == 8000
    assert len(plan.task_success_conditions) == 3
    assert plan.model_validation.is_valid
    assert plan.phase == ExecutionPhase.VALIDATION


def test_events_per_stage(orders_model):
    events, result = PlanProcessor().process_with_events("x", orders_model)

    assert [(e.stage, e.event_type) for e in events] == [
        (ProcessStage.COMPILE, EventType.STAGE_START),
        (ProcessStage.COMPILE, EventType.STAGE_DONE),
        (ProcessStage.CHECK, EventType.STAGE_START),
        (ProcessStage.CHECK, EventType.STAGE_DONE),
        (ProcessStage.ASSESS, EventType.STAGE_START),
        (ProcessStage.ASSESS, EventType.STAGE_DONE),
    ]
    assert events[1].output["step_count"] == 4
    assert events[0].stage_id == events[1].stage_id
    assert events[1].to_dict()["type"] == "done"


def test_missing_data_model_needs_clarification():
    result = PlanProcessor().process_sync("计算一下", None)
    plan = result.plan

    assert plan.steps == []
    assert plan.needs_clarification
    assert plan.clarification_message
    assert not plan.dependency_check.passed
    assert plan.dependency_check.missing_dependencies == [CLARIFICATION_DEPENDENCY_ISSUE]
    assert plan.risks == []
    assert plan.task_success_conditions == []


def test_task_type_from_config_or_description(orders_model):
    processor = PlanProcessor()
    explicit = processor.process_sync("x", orders_model, ProcessConfig(task_type=TaskType.DATA_ENTRY))
    detected = processor.process_sync("用公式计算金额", orders_model)

    assert explicit.plan.task_type == TaskType.DATA_ENTRY
    assert detected.plan.task_type == TaskType.FORMULA_SETUP


def test_upstream_validation_is_used(orders_model):
    upstream = ValidationResult(
        is_valid=False,
        errors=[ValidationIssue(type="circular_reference", message="循环依赖检测到: Orders")],
    )
    plan = PlanProcessor().process_sync("x", orders_model, model_validation=upstream).plan

    assert plan.model_validation is upstream
    assert plan.dependency_check.circular_dependencies == ["循环依赖检测到: Orders"]
    assert not plan.dependency_check.passed


def test_stage_failure_becomes_error_event(orders_model):
    class BrokenCompiler:
        def compile(self, *args):
            raise RuntimeError("boom")

    events, result = PlanProcessor(compiler=BrokenCompiler()).process_with_events("x", orders_model)

    assert events[-1].event_type == EventType.STAGE_ERROR
    assert events[-1].stage == ProcessStage.COMPILE
    assert result.errors == ["编译失败: boom"]


def test_result_to_dict(orders_model):
    data = PlanProcessor().process_sync("x", orders_model).to_dict()
    assert data["errors"] is None
    assert data["plan"]["steps"][0]["action"] == "excel_create_sheet"
    assert data["plan"]["dependency_check"]["passed"] is True
