"""
计划追踪器

用于在外部执行器运行步骤时更新 ExecutionPlan 的状态。
计划本身只被原地更新，重新规划的步骤只会追加。
"""

from typing import Dict, List, Optional

from sheetplan.engine.models import (
    ExecutionPhase,
    ExecutionPlan,
    ReplanResult,
    ReplanStrategy,
    Step,
    StepResult,
    StepStatus,
)
from sheetplan.engine.replanner import Replanner


class PlanTracker:
    """
    计划追踪器，管理步骤的状态流转

    使用示例:
        tracker = PlanTracker(plan)

        step = tracker.next_step()
        tracker.start(step.id)
        outcome = executor.execute(step)
        if outcome.success:
            tracker.complete(step.id, outcome)
        else:
            tracker.fail(step.id, outcome.error)
    """

    def __init__(self, plan: ExecutionPlan, replanner: Optional[Replanner] = None):
        """
        初始化计划追踪器

        Args:
            plan: 要追踪的执行计划
            replanner: 用于追加重新规划步骤，默认新建
        """
        self.plan = plan
        self._replanner = replanner or Replanner()
        # 失败步骤 ID -> 接替它的新步骤 ID
        self._superseded: Dict[str, str] = {}

    def _get(self, step_id: str) -> Step:
        step = self.plan.get_step(step_id)
        if step is None:
            raise ValueError(f"No step found with id: {step_id}")
        return step

    def _refresh_counters(self) -> None:
        self.plan.completed_steps = sum(1 for s in self.plan.steps if s.status == StepStatus.COMPLETED)
        self.plan.failed_steps = sum(1 for s in self.plan.steps if s.status == StepStatus.FAILED)

    def _effective(self, step_id: str) -> Optional[Step]:
        """沿接替关系找到最终代表该步骤的步骤"""
        seen = set()
        while step_id in self._superseded and step_id not in seen:
            seen.add(step_id)
            step_id = self._superseded[step_id]
        return self.plan.get_step(step_id)

    def _dependencies_met(self, step: Step) -> bool:
        for dep in step.depends_on:
            dep_step = self._effective(dep)
            if dep_step is None or dep_step.status != StepStatus.COMPLETED:
                return False
        return True

    def start(self, step_id: str) -> Step:
        """
        记录步骤开始

        Raises:
            ValueError: 计划需要澄清、步骤不是 pending 状态或依赖未完成
        """
        if self.plan.needs_clarification:
            raise ValueError(f"Plan {self.plan.id} needs clarification and cannot be executed")

        step = self._get(step_id)
        if step.status != StepStatus.PENDING:
            raise ValueError(f"Step {step_id} is not pending (status={step.status.value})")
        if not self._dependencies_met(step):
            raise ValueError(f"Step {step_id} has unfinished dependencies: {step.depends_on}")

        step.status = StepStatus.RUNNING
        self.plan.phase = ExecutionPhase.EXECUTION
        self.plan.current_step = step.order
        return step

    def complete(self, step_id: str, result: Optional[StepResult] = None) -> Step:
        """记录步骤完成"""
        step = self._get(step_id)
        if step.status != StepStatus.RUNNING:
            raise ValueError(f"No running record found for step: {step_id}")

        step.status = StepStatus.COMPLETED
        step.result = result or StepResult(success=True)
        self._refresh_counters()
        if self.is_finished():
            self.plan.phase = ExecutionPhase.COMPLETED
        return step

    def fail(self, step_id: str, error: str) -> Step:
        """记录步骤失败"""
        step = self._get(step_id)
        if step.status != StepStatus.RUNNING:
            raise ValueError(f"No running record found for step: {step_id}")

        step.status = StepStatus.FAILED
        step.result = StepResult(success=False, error=error)
        self._refresh_counters()
        self.plan.phase = ExecutionPhase.FAILED
        return step

    def skip(self, step_id: str) -> Step:
        """跳过尚未执行的步骤"""
        step = self._get(step_id)
        if step.status != StepStatus.PENDING:
            raise ValueError(f"Step {step_id} is not pending (status={step.status.value})")
        step.status = StepStatus.SKIPPED
        return step

    def ready_steps(self) -> List[Step]:
        """依赖均已完成的 pending 步骤（按计划顺序）"""
        if self.plan.needs_clarification:
            return []
        return [s for s in self.plan.steps if s.status == StepStatus.PENDING and self._dependencies_met(s)]

    def next_step(self) -> Optional[Step]:
        """下一个可执行的步骤，没有则返回 None"""
        ready = self.ready_steps()
        return ready[0] if ready else None

    def is_finished(self) -> bool:
        """所有步骤都已完成或跳过，已被接替的失败步骤视为已解决"""
        if not self.plan.steps:
            return False
        return all(self._is_resolved(s) for s in self.plan.steps)

    def _is_resolved(self, step: Step) -> bool:
        if step.status in (StepStatus.COMPLETED, StepStatus.SKIPPED):
            return True
        return step.status == StepStatus.FAILED and step.id in self._superseded

    def apply_replan(self, result: ReplanResult) -> List[Step]:
        """
        追加重新规划的步骤

        失败的步骤保持 failed，由最后一个新步骤接替：依赖失败步骤的后续步骤
        在接替步骤完成后即可执行。部分回滚不接替失败步骤。追加后计划回到执行阶段。

        Returns:
            新追加的步骤
        """
        self._replanner.apply_replan(self.plan, result)
        if result.new_steps:
            if result.strategy != ReplanStrategy.PARTIAL_ROLLBACK:
                self._superseded[result.failed_step_id] = result.new_steps[-1].id
            self.plan.phase = ExecutionPhase.EXECUTION
        return result.new_steps

    def __len__(self) -> int:
        return len(self.plan.steps)

    def __repr__(self) -> str:
        return (
            f"PlanTracker(plan={self.plan.id}, completed={self.plan.completed_steps}, "
            f"failed={self.plan.failed_steps}, phase={self.plan.phase.value})"
        )
