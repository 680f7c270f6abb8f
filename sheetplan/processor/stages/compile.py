"""编译阶段"""

import logging
from typing import Any, Generator, Optional

from sheetplan.engine.compiler import (
    StepGraphCompiler,
    build_clarification_message,
    has_unexecutable_steps,
    identify_task_type,
)
from sheetplan.engine.models import DataModel

from ..types import ProcessStage, ProcessEvent, ProcessConfig
from .base import Stage, StageError

logger = logging.getLogger(__name__)


class CompileStage(Stage):
    """
    编译阶段

    将数据模型编译为步骤。没有可执行步骤（或包含兜底操作）时不返回步骤，
    而是生成澄清消息。

    输出:
        {
            "task_type": TaskType,
            "steps": List[Step],
            "field_step_id_map": FieldStepIdMap,
            "needs_clarification": bool,
            "clarification_message": Optional[str],
        }
    """

    stage = ProcessStage.COMPILE

    def __init__(self, compiler: Optional[StepGraphCompiler] = None):
        self.compiler = compiler or StepGraphCompiler()

    def run(
        self,
        task_description: str,
        data_model: Optional[DataModel],
        config: ProcessConfig,
        context: dict,
    ) -> Generator[ProcessEvent, None, Any]:
        """编译步骤"""
        stage_id = self._generate_stage_id()

        yield self._event_start(stage_id)

        try:
            task_type = config.task_type or identify_task_type(task_description)
            steps, field_step_id_map = self.compiler.compile(task_description, task_type, data_model)

            needs_clarification = not steps or has_unexecutable_steps(steps)
            clarification_message = None
            if needs_clarification:
                logger.info("编译结果不可执行，转为澄清请求")
                clarification_message = build_clarification_message(task_description)
                steps, field_step_id_map = [], {}

            output = {
                "task_type": task_type,
                "steps": steps,
                "field_step_id_map": field_step_id_map,
                "needs_clarification": needs_clarification,
                "clarification_message": clarification_message,
            }

            yield self._event_done(
                {
                    "task_type": task_type.value,
                    "step_count": len(steps),
                    "needs_clarification": needs_clarification,
                },
                stage_id,
            )
            return output

        except Exception as e:
            error_msg = f"编译失败: {e}"
            logger.exception(error_msg)
            yield self._event_error(error_msg, stage_id)
            raise StageError(error_msg) from e
