"""Parse the TODO index and milestone detail documents into an execution plan.

Index (``TODO.md``)::

    ## M1: Setup
    - [ ] 001. Initialize project
    - [x] 002. Add dependencies
    - [~] 003. Optional step

Detail (``MILESTONES/*.md``)::

    # M1: Setup
    > Milestone description
    ### 001. Initialize project
    **Description:**
    ...
    **Verification:**
    ...
    **Depends:** none
    ---

Unknown or malformed lines are skipped. Missing documents degrade to an empty
or index-only plan instead of raising.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from forge.documents import DocumentNotFoundError, DocumentStore
from forge.plan.models import ExecutionPlan, Milestone, Task, TaskStatus

PROJECT_PATTERN = re.compile(r"^>\s*Project:\s*(.+)$", re.IGNORECASE)
INDEX_MILESTONE_PATTERN = re.compile(r"^##\s+(M\d+):\s*(.+)$", re.IGNORECASE)
INDEX_TASK_PATTERN = re.compile(r"^-\s*\[([ xX~])\]\s*(\d+)\.\s*(.+)$")
DETAIL_MILESTONE_PATTERN = re.compile(r"^#\s+(M\d+):\s*(.+)$", re.IGNORECASE)
DETAIL_TASK_PATTERN = re.compile(r"^###\s+(\d+)\.\s*(.+)$")
DEPENDS_PATTERN = re.compile(r"^\*\*Depends:\*\*\s*(.+)$", re.IGNORECASE)

CHECKBOX_STATUS = {
    " ": TaskStatus.PENDING,
    "x": TaskStatus.COMPLETED,
    "X": TaskStatus.COMPLETED,
    "~": TaskStatus.SKIPPED,
}


@dataclass(slots=True)
class IndexTask:
    id: str
    title: str
    status: TaskStatus
    milestone_id: str


@dataclass(slots=True)
class IndexMilestone:
    id: str
    name: str
    tasks: list[IndexTask] = field(default_factory=list)


@dataclass(slots=True)
class TodoIndex:
    project_name: str | None = None
    milestones: list[IndexMilestone] = field(default_factory=list)


@dataclass(slots=True)
class TaskDetail:
    id: str
    title: str
    description: str = ""
    verification: str = ""
    depends: list[str] = field(default_factory=list)


@dataclass(slots=True)
class MilestoneDetail:
    id: str = ""
    name: str = ""
    description: str = ""
    tasks: list[TaskDetail] = field(default_factory=list)


def parse_todo_index(content: str) -> TodoIndex:
    result = TodoIndex()
    current: IndexMilestone | None = None

    for raw_line in content.splitlines():
        line = raw_line.strip()

        project_match = PROJECT_PATTERN.match(line)
        if project_match:
            result.project_name = project_match.group(1).strip()
            continue

        milestone_match = INDEX_MILESTONE_PATTERN.match(line)
        if milestone_match:
            current = IndexMilestone(
                id=milestone_match.group(1).upper(),
                name=milestone_match.group(2).strip(),
            )
            result.milestones.append(current)
            continue

        task_match = INDEX_TASK_PATTERN.match(line)
        if task_match and current is not None:
            current.tasks.append(
                IndexTask(
                    id=task_match.group(2),
                    title=task_match.group(3).strip(),
                    status=CHECKBOX_STATUS[task_match.group(1)],
                    milestone_id=current.id,
                )
            )

    return result


class _DetailParser:
    def __init__(self) -> None:
        self.result = MilestoneDetail()
        self.task: TaskDetail | None = None
        self.section: str | None = None
        self.buffer: list[str] = []

    def flush_section(self) -> None:
        if self.task is not None and self.section and self.buffer:
            text = "\n".join(self.buffer).strip()
            if self.section == "description":
                self.task.description = text
            else:
                self.task.verification = text
        self.buffer = []
        self.section = None

    def finish_task(self) -> None:
        self.flush_section()
        if self.task is not None:
            self.result.tasks.append(self.task)
            self.task = None

    def feed(self, raw_line: str) -> None:
        line = raw_line.strip()

        milestone_match = DETAIL_MILESTONE_PATTERN.match(line)
        if milestone_match:
            self.result.id = milestone_match.group(1).upper()
            self.result.name = milestone_match.group(2).strip()
            return

        if line.startswith(">") and self.result.id and not self.result.description:
            self.result.description = line.lstrip(">").strip()
            return

        task_match = DETAIL_TASK_PATTERN.match(line)
        if task_match:
            self.finish_task()
            self.task = TaskDetail(id=task_match.group(1), title=task_match.group(2).strip())
            return

        if line == "**Description:**":
            self.flush_section()
            self.section = "description"
            return
        if line == "**Verification:**":
            self.flush_section()
            self.section = "verification"
            return

        depends_match = DEPENDS_PATTERN.match(line)
        if depends_match and self.task is not None:
            self.flush_section()
            depends_text = depends_match.group(1).strip()
            if depends_text.lower() != "none":
                self.task.depends = [
                    item.strip() for item in depends_text.split(",") if item.strip()
                ]
            return

        if line == "---":
            self.finish_task()
            return

        if self.section and self.task is not None:
            self.buffer.append(raw_line)


def parse_milestone_detail(content: str) -> MilestoneDetail:
    parser = _DetailParser()
    for raw_line in content.splitlines():
        parser.feed(raw_line)
    parser.finish_task()
    return parser.result


def _find_cycles(tasks: dict[str, Task]) -> list[list[str]]:
    visiting: set[str] = set()
    done: set[str] = set()
    stack: list[str] = []
    cycles: list[list[str]] = []

    def _visit(task_id: str) -> None:
        visiting.add(task_id)
        stack.append(task_id)
        for dep_id in tasks[task_id].depends:
            if dep_id not in tasks or dep_id in done:
                continue
            if dep_id in visiting:
                cycles.append(stack[stack.index(dep_id) :] + [dep_id])
                continue
            _visit(dep_id)
        stack.pop()
        visiting.discard(task_id)
        done.add(task_id)

    for task_id in tasks:
        if task_id not in done:
            _visit(task_id)
    return cycles


def find_structural_issues(milestones: list[Milestone]) -> list[str]:
    issues: list[str] = []
    tasks: dict[str, Task] = {}
    for milestone in milestones:
        for task in milestone.tasks:
            if task.id in tasks:
                issues.append(f"Duplicate task id {task.id} in milestone {milestone.id}")
                continue
            tasks[task.id] = task

    for task in tasks.values():
        for dep_id in task.depends:
            if dep_id == task.id:
                continue
            if dep_id not in tasks:
                issues.append(f"Task {task.id} depends on unknown task {dep_id}")

    for cycle in _find_cycles(tasks):
        issues.append("Dependency cycle: " + " -> ".join(cycle))
    return issues


def build_execution_plan(index: TodoIndex, details: Iterable[MilestoneDetail]) -> ExecutionPlan:
    detail_list = list(details)
    milestone_details = {detail.id: detail for detail in detail_list if detail.id}
    task_details: dict[str, TaskDetail] = {}
    for detail in detail_list:
        for task_detail in detail.tasks:
            task_details[task_detail.id] = task_detail

    milestones: list[Milestone] = []
    for index_milestone in index.milestones:
        milestone_detail = milestone_details.get(index_milestone.id)
        tasks: list[Task] = []
        for index_task in index_milestone.tasks:
            task_detail = task_details.get(index_task.id)
            tasks.append(
                Task(
                    id=index_task.id,
                    title=index_task.title,
                    milestone_id=index_milestone.id,
                    description=task_detail.description if task_detail else "",
                    verification=task_detail.verification if task_detail else "",
                    status=index_task.status,
                    depends=list(task_detail.depends) if task_detail else [],
                )
            )
        milestones.append(
            Milestone(
                id=index_milestone.id,
                name=index_milestone.name,
                description=milestone_detail.description if milestone_detail else "",
                tasks=tasks,
            )
        )

    return ExecutionPlan(milestones=milestones, issues=find_structural_issues(milestones))


def parse_execution_plan(
    index_content: str | None,
    detail_contents: Iterable[tuple[str, str]] = (),
) -> ExecutionPlan:
    if index_content is None:
        return ExecutionPlan()
    index = parse_todo_index(index_content)
    details = [parse_milestone_detail(content) for _filename, content in detail_contents]
    return build_execution_plan(index, details)


def load_plan(documents: DocumentStore, index_path: str, milestones_path: str) -> ExecutionPlan:
    """Re-read the plan documents through the document store."""
    try:
        index_content = documents.read_document(index_path)
    except DocumentNotFoundError:
        return ExecutionPlan()

    try:
        names = documents.list_documents(milestones_path)
    except DocumentNotFoundError:
        names = []

    detail_contents: list[tuple[str, str]] = []
    for name in sorted(names):
        if not name.endswith(".md"):
            continue
        try:
            detail_contents.append(
                (name, documents.read_document(f"{milestones_path}/{name}"))
            )
        except DocumentNotFoundError:
            continue
    return parse_execution_plan(index_content, detail_contents)
