"""风险评估阶段"""

import logging
from typing import Any, Generator, Optional

from sheetplan.engine.compiler import build_task_success_conditions
from sheetplan.engine.models import DataModel
from sheetplan.engine.risk import assess_risks

from ..types import ProcessStage, ProcessEvent, ProcessConfig
from .base import Stage, StageError

logger = logging.getLogger(__name__)


class AssessStage(Stage):
    """
    风险评估阶段

    输出:
        {
            "risks": List[RiskAssessment],
            "task_success_conditions": List[TaskSuccessCondition],
        }
    """

    stage = ProcessStage.ASSESS

    def run(
        self,
        task_description: str,
        data_model: Optional[DataModel],
        config: ProcessConfig,
        context: dict,
    ) -> Generator[ProcessEvent, None, Any]:
        """评估风险并生成任务级成功条件"""
        stage_id = self._generate_stage_id()

        yield self._event_start(stage_id)

        compiled = context.get("compile", {})
        checked = context.get("check", {})

        try:
            # 澄清计划没有步骤，也不需要评估
            if compiled.get("needs_clarification"):
                output = {"risks": [], "task_success_conditions": []}
            else:
                steps = compiled.get("steps", [])
                output = {
                    "risks": assess_risks(task_description, steps, checked["dependency_check"]),
                    "task_success_conditions": build_task_success_conditions(steps),
                }

            yield self._event_done(
                {
                    "risks": [r.to_dict() for r in output["risks"]] or None,
                    "condition_count": len(output["task_success_conditions"]),
                },
                stage_id,
            )
            return output

        except Exception as e:
            error_msg = f"风险评估失败: {e}"
            logger.exception(error_msg)
            yield self._event_error(error_msg, stage_id)
            raise StageError(error_msg) from e
