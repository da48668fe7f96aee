from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["codex", "claude"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    meta_dir: str = "META"
    todo_file: str = "TODO.md"
    milestones_dir: str = "MILESTONES"
    context_file: str = "CLAUDE.md"

    @property
    def todo_path(self) -> str:
        return f"{self.meta_dir}/{self.todo_file}"

    @property
    def milestones_path(self) -> str:
        return f"{self.meta_dir}/{self.milestones_dir}"

    @property
    def context_path(self) -> str:
        return f"{self.meta_dir}/{self.context_file}"


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 0
    retry_backoff_seconds: float = 0.5


@dataclass(slots=True)
class ExecutionConfig:
    task_timeout_seconds: float = 300.0
    poll_interval_seconds: float = 1.0
    heartbeat_interval_seconds: float = 5.0
    stale_after_seconds: float = 30.0
    auto_commit_before_execution: bool = False
    allowed_tools: list[str] = field(
        default_factory=lambda: ["Read", "Write", "Glob", "Grep"]
    )


@dataclass(slots=True)
class StateConfig:
    directory: str = ".forge/state"


@dataclass(slots=True)
class ForgeConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> ForgeConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ForgeConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            execution=ExecutionConfig(**data.get("execution", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "meta_dir": self.project.meta_dir,
                "todo_file": self.project.todo_file,
                "milestones_dir": self.project.milestones_dir,
                "context_file": self.project.context_file,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
            },
            "execution": {
                "task_timeout_seconds": self.execution.task_timeout_seconds,
                "poll_interval_seconds": self.execution.poll_interval_seconds,
                "heartbeat_interval_seconds": self.execution.heartbeat_interval_seconds,
                "stale_after_seconds": self.execution.stale_after_seconds,
                "auto_commit_before_execution": self.execution.auto_commit_before_execution,
                "allowed_tools": list(self.execution.allowed_tools),
            },
            "state": {
                "directory": self.state.directory,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        if rendered.endswith("."):
            rendered += "0"
        return rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ForgeConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("project", "backend", "execution", "state"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ForgeConfig:
    if not path.exists():
        return ForgeConfig.default()
    return ForgeConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ForgeConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
