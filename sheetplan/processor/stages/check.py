"""依赖检查阶段"""

import logging
from typing import Any, Generator, Optional

from sheetplan.engine.model_validator import validate_model
from sheetplan.engine.models import DataModel, DependencyCheckResult
from sheetplan.engine.semantic_validator import check

from ..types import ProcessStage, ProcessEvent, ProcessConfig
from .base import Stage, StageError

logger = logging.getLogger(__name__)

CLARIFICATION_DEPENDENCY_ISSUE = "无法理解任务或生成可执行步骤"


class CheckStage(Stage):
    """
    依赖检查阶段

    输入:
        - context["compile"]: 编译输出
        - context["model_validation"]: 上游的数据模型验证结果（可选）

    输出:
        {
            "dependency_check": DependencyCheckResult,
            "model_validation": Optional[ValidationResult],
        }
    """

    stage = ProcessStage.CHECK

    def run(
        self,
        task_description: str,
        data_model: Optional[DataModel],
        config: ProcessConfig,
        context: dict,
    ) -> Generator[ProcessEvent, None, Any]:
        """检查依赖"""
        stage_id = self._generate_stage_id()

        yield self._event_start(stage_id)

        compiled = context.get("compile", {})

        try:
            model_validation = context.get("model_validation")
            if model_validation is None and data_model is not None and config.validate_model:
                model_validation = validate_model(data_model)

            if compiled.get("needs_clarification"):
                dependency_check = DependencyCheckResult(
                    passed=False,
                    missing_dependencies=[CLARIFICATION_DEPENDENCY_ISSUE],
                )
            else:
                dependency_check = check(
                    compiled.get("steps", []),
                    data_model,
                    compiled.get("field_step_id_map", {}),
                    model_validation,
                )

            output = {
                "dependency_check": dependency_check,
                "model_validation": model_validation,
            }

            yield self._event_done(
                {
                    "passed": dependency_check.passed,
                    "missing_dependencies": dependency_check.missing_dependencies or None,
                    "circular_dependencies": dependency_check.circular_dependencies or None,
                    "unresolved_count": len(dependency_check.unresolved_semantic_deps),
                },
                stage_id,
            )
            return output

        except Exception as e:
            error_msg = f"依赖检查失败: {e}"
            logger.exception(error_msg)
            yield self._event_error(error_msg, stage_id)
            raise StageError(error_msg) from e
