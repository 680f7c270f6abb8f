"""计划处理器"""

import logging
from typing import Generator, List, Optional, Tuple

from sheetplan.core.config import settings
from sheetplan.engine.compiler import StepGraphCompiler
from sheetplan.engine.models import (
    DataModel,
    ExecutionPhase,
    ExecutionPlan,
    ReplanContext,
    ReplanResult,
    Step,
    TaskType,
    ValidationResult,
    generate_id,
)
from sheetplan.engine.replanner import Replanner

from .types import (
    ProcessStage,
    EventType,
    ProcessEvent,
    ProcessConfig,
    ProcessResult,
)
from .stages import CompileStage, CheckStage, AssessStage, StageError

logger = logging.getLogger(__name__)


class PlanProcessor:
    """
    计划处理器 - 数据模型到执行计划

    特点：
    1. 纯数据转换：输入任务描述 + DataModel，输出 ExecutionPlan
    2. 无外部依赖：不涉及表格、数据库、网络
    3. 可观察：通过生成器 yield 处理事件
    4. 线性阶段：compile -> check -> assess

    用法示例：

        # 方式 1：同步处理，直接获取结果
        processor = PlanProcessor()
        result = processor.process_sync(task, data_model)

        # 方式 2：收集所有事件
        events, result = processor.process_with_events(task, data_model)

        # 方式 3：步骤失败后重新规划
        replan = processor.replan(result.plan, failed_step, error_text, ReplanContext())
    """

    def __init__(
        self,
        compiler: Optional[StepGraphCompiler] = None,
        replanner: Optional[Replanner] = None,
    ):
        """
        初始化处理器

        Args:
            compiler: 步骤图编译器，默认新建
            replanner: 重新规划器，默认新建
        """
        self.replanner = replanner or Replanner()

        self._stages = [
            CompileStage(compiler),
            CheckStage(),
            AssessStage(),
        ]

    def process(
        self,
        task_description: str,
        data_model: Optional[DataModel],
        config: Optional[ProcessConfig] = None,
        model_validation: Optional[ValidationResult] = None,
    ) -> Generator[ProcessEvent, None, ProcessResult]:
        """
        生成执行计划（生成器模式）

        Args:
            task_description: 任务描述
            data_model: 数据模型（可为 None，此时返回澄清计划）
            config: 处理配置
            model_validation: 上游的数据模型验证结果

        Yields:
            ProcessEvent: 处理事件

        Returns:
            ProcessResult: 最终结果（通过 StopIteration.value 获取）
        """
        config = config or ProcessConfig()
        plan = ExecutionPlan(
            id=generate_id("plan"),
            task_description=task_description,
            task_type=config.task_type or TaskType.MIXED,
            data_model=data_model,
        )
        result = ProcessResult(plan=plan)
        context = {"model_validation": model_validation}

        for stage in self._stages:
            try:
                stage_gen = stage.run(task_description, data_model, config, context)

                stage_output = None
                try:
                    while True:
                        event = next(stage_gen)
                        yield event

                        if event.event_type == EventType.STAGE_ERROR:
                            result.errors.append(event.error)
                            return result

                except StopIteration as e:
                    stage_output = e.value

                if stage_output is not None:
                    context[stage.stage.value] = stage_output

                self._update_plan(plan, stage.stage, stage_output)

            except StageError as e:
                error_msg = str(e)
                result.errors.append(error_msg)
                yield ProcessEvent(
                    stage=stage.stage,
                    event_type=EventType.STAGE_ERROR,
                    error=error_msg,
                )
                return result

            except Exception as e:
                logger.exception(f"Stage {stage.stage.value} failed: {e}")
                error_msg = f"{stage.stage.value} 阶段异常: {e}"
                result.errors.append(error_msg)
                yield ProcessEvent(
                    stage=stage.stage,
                    event_type=EventType.STAGE_ERROR,
                    error=error_msg,
                )
                return result

        plan.phase = ExecutionPhase.VALIDATION
        return result

    def process_sync(
        self,
        task_description: str,
        data_model: Optional[DataModel],
        config: Optional[ProcessConfig] = None,
        model_validation: Optional[ValidationResult] = None,
    ) -> ProcessResult:
        """
        同步处理（便捷方法）

        忽略中间事件，直接返回最终结果。
        """
        gen = self.process(task_description, data_model, config, model_validation)

        try:
            while True:
                next(gen)
        except StopIteration as e:
            return e.value

    def process_with_events(
        self,
        task_description: str,
        data_model: Optional[DataModel],
        config: Optional[ProcessConfig] = None,
        model_validation: Optional[ValidationResult] = None,
    ) -> Tuple[List[ProcessEvent], ProcessResult]:
        """
        处理并收集所有事件（便捷方法）

        Returns:
            (events, result): 事件列表和最终结果
        """
        events = []
        gen = self.process(task_description, data_model, config, model_validation)

        try:
            while True:
                event = next(gen)
                events.append(event)
        except StopIteration as e:
            return events, e.value

    def replan(
        self,
        plan: ExecutionPlan,
        failed_step: Step,
        failure_reason: str,
        context: Optional[ReplanContext] = None,
    ) -> ReplanResult:
        """为失败的步骤生成修复方案（不修改计划）"""
        return self.replanner.replan(plan, failed_step, failure_reason, context)

    def _update_plan(self, plan: ExecutionPlan, stage: ProcessStage, output: Optional[dict]) -> None:
        """
        根据阶段输出更新计划

        Args:
            plan: 执行计划
            stage: 当前阶段
            output: 阶段输出
        """
        if output is None:
            return

        if stage == ProcessStage.COMPILE:
            plan.task_type = output["task_type"]
            plan.steps = output["steps"]
            plan.field_step_id_map = output["field_step_id_map"]
            plan.needs_clarification = output["needs_clarification"]
            plan.clarification_message = output["clarification_message"]
            plan.estimated_steps = len(plan.steps)
            plan.estimated_duration_ms = len(plan.steps) * settings.STEP_DURATION_MS

        elif stage == ProcessStage.CHECK:
            plan.dependency_check = output["dependency_check"]
            plan.model_validation = output["model_validation"]

        elif stage == ProcessStage.ASSESS:
            plan.risks = output["risks"]
            plan.task_success_conditions = output["task_success_conditions"]
