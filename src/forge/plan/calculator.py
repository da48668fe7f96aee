"""Pure scheduling functions over an :class:`ExecutionPlan`.

Only ``completed`` satisfies a dependency. A ``skipped`` dependency keeps its
dependents blocked until an operator resolves them as well.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Literal

from forge.plan.models import ExecutionPlan, Milestone, Task, TaskStatus

NextTaskReason = Literal["task_found", "blocked", "all_completed", "no_pending"]


@dataclass(slots=True)
class NextTaskResult:
    reason: NextTaskReason
    task: Task | None = None
    milestone: Milestone | None = None
    blocked_by: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PlanProgress:
    completed: int
    total: int
    percent: int


@dataclass(slots=True)
class BlockedTask:
    task: Task
    blocked_by: list[str]


def _task_map(plan: ExecutionPlan) -> dict[str, Task]:
    tasks: dict[str, Task] = {}
    for task, _milestone in plan.iter_tasks():
        tasks.setdefault(task.id, task)
    return tasks


def unsatisfied_dependencies(task: Task, tasks: dict[str, Task]) -> list[str]:
    unsatisfied: list[str] = []
    for dep_id in task.depends:
        dependency = tasks.get(dep_id)
        if dependency is None or dependency.status != TaskStatus.COMPLETED:
            unsatisfied.append(dep_id)
    return unsatisfied


def next_task(plan: ExecutionPlan) -> NextTaskResult:
    tasks = _task_map(plan)
    pending: list[tuple[Task, Milestone]] = [
        (task, milestone)
        for task, milestone in plan.iter_tasks()
        if task.status == TaskStatus.PENDING
    ]

    if not pending:
        finished = all(
            task.status in {TaskStatus.COMPLETED, TaskStatus.SKIPPED}
            for task, _milestone in plan.iter_tasks()
        )
        return NextTaskResult(reason="all_completed" if finished else "no_pending")

    for task, milestone in pending:
        if not unsatisfied_dependencies(task, tasks):
            return NextTaskResult(reason="task_found", task=task, milestone=milestone)

    return NextTaskResult(
        reason="blocked",
        task=pending[0][0],
        milestone=pending[0][1],
        blocked_by=[task.id for task, _milestone in pending],
    )


def progress(plan: ExecutionPlan) -> PlanProgress:
    total = 0
    completed = 0
    for task, _milestone in plan.iter_tasks():
        total += 1
        if task.status == TaskStatus.COMPLETED:
            completed += 1
    # Half-up rounding; Python's round() would send 2.5 to 2.
    percent = math.floor(completed / total * 100 + 0.5) if total else 0
    return PlanProgress(completed=completed, total=total, percent=percent)


def is_all_completed(plan: ExecutionPlan) -> bool:
    return all(
        task.status in {TaskStatus.COMPLETED, TaskStatus.SKIPPED}
        for task, _milestone in plan.iter_tasks()
    )


def blocked_tasks(plan: ExecutionPlan) -> list[BlockedTask]:
    tasks = _task_map(plan)
    blocked: list[BlockedTask] = []
    for task, _milestone in plan.iter_tasks():
        if task.status != TaskStatus.PENDING:
            continue
        unsatisfied = unsatisfied_dependencies(task, tasks)
        if unsatisfied:
            blocked.append(BlockedTask(task=task, blocked_by=unsatisfied))
    return blocked


def find_task(plan: ExecutionPlan, task_id: str) -> tuple[Task, Milestone] | None:
    for task, milestone in plan.iter_tasks():
        if task.id == task_id:
            return task, milestone
    return None


def with_task_status(plan: ExecutionPlan, task_id: str, status: TaskStatus) -> ExecutionPlan:
    """Return a copy of ``plan`` with one task's status replaced."""
    milestones = [
        replace(
            milestone,
            tasks=[
                replace(task, status=status) if task.id == task_id else replace(task)
                for task in milestone.tasks
            ],
        )
        for milestone in plan.milestones
    ]
    return ExecutionPlan(milestones=milestones, issues=list(plan.issues))
