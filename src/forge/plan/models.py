from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class TaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class Task:
    id: str
    title: str
    milestone_id: str
    description: str = ""
    verification: str = ""
    status: TaskStatus = TaskStatus.PENDING
    depends: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "milestone_id": self.milestone_id,
            "description": self.description,
            "verification": self.verification,
            "status": str(self.status),
            "depends": list(self.depends),
        }


@dataclass(slots=True)
class Milestone:
    """Grouping of tasks. Counts are derived from task status, never stored."""

    id: str
    name: str
    description: str = ""
    tasks: list[Task] = field(default_factory=list)

    @property
    def completed_count(self) -> int:
        return sum(1 for task in self.tasks if task.status == TaskStatus.COMPLETED)

    @property
    def total_count(self) -> int:
        return len(self.tasks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "completed_count": self.completed_count,
            "total_count": self.total_count,
            "tasks": [task.to_dict() for task in self.tasks],
        }


@dataclass(slots=True)
class ExecutionPlan:
    """Transient projection of the plan documents.

    The markdown index is the source of truth for task status; a plan is
    rebuilt from it whenever it is needed and is never persisted.
    """

    milestones: list[Milestone] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)

    @property
    def total_tasks(self) -> int:
        return sum(milestone.total_count for milestone in self.milestones)

    @property
    def completed_tasks(self) -> int:
        return sum(milestone.completed_count for milestone in self.milestones)

    def iter_tasks(self):
        for milestone in self.milestones:
            for task in milestone.tasks:
                yield task, milestone

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "issues": list(self.issues),
            "milestones": [milestone.to_dict() for milestone in self.milestones],
        }
