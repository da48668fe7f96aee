from forge.plan.calculator import (
    BlockedTask,
    NextTaskResult,
    PlanProgress,
    blocked_tasks,
    find_task,
    is_all_completed,
    next_task,
    progress,
    with_task_status,
)
from forge.plan.models import ExecutionPlan, Milestone, Task, TaskStatus
from forge.plan.parser import load_plan, parse_execution_plan

__all__ = [
    "BlockedTask",
    "ExecutionPlan",
    "Milestone",
    "NextTaskResult",
    "PlanProgress",
    "Task",
    "TaskStatus",
    "blocked_tasks",
    "find_task",
    "is_all_completed",
    "load_plan",
    "next_task",
    "parse_execution_plan",
    "progress",
    "with_task_status",
]
