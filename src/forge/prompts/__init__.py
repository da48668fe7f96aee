from __future__ import annotations

from importlib import resources
from string import Template

from forge.plan.models import Milestone, Task


def load_template(name: str) -> Template:
    resource = resources.files("forge.prompts").joinpath(f"{name}.md")
    return Template(resource.read_text(encoding="utf-8"))


def render_task_prompt(
    task: Task,
    milestone: Milestone,
    *,
    project_context: str = "",
    execution_id: str = "",
    template_name: str = "code_executor",
) -> str:
    """Fill the executor template for one task. Unknown ``$names`` are left as-is."""
    return load_template(template_name).safe_substitute(
        task_id=task.id,
        task_title=task.title,
        task_description=task.description or "(none)",
        task_verification=task.verification or "(none)",
        milestone_id=milestone.id,
        milestone_name=milestone.name,
        project_context=project_context.strip() or "(none)",
        execution_id=execution_id,
    )
