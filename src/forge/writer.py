"""Validate and apply the agent's structured file changes.

Agent output is untrusted: every path is checked before anything touches the
disk, and every create/update goes through temp-write-then-rename.
"""

from __future__ import annotations

import json
import ntpath
import posixpath
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from forge.documents import DocumentStore, atomic_write_text
from forge.plan.models import TaskStatus

FileAction = Literal["create", "update", "delete"]
VALID_ACTIONS = ("create", "update", "delete")
CODE_BLOCK_PATTERN = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)
CHECKBOX_MARKS = {
    TaskStatus.COMPLETED: "x",
    TaskStatus.SKIPPED: "~",
    TaskStatus.PENDING: " ",
}


@dataclass(slots=True)
class FileChange:
    path: str
    action: str
    content: str | None = None


@dataclass(slots=True)
class TaskOutput:
    task_id: str
    files: list[FileChange]
    summary: str


@dataclass(slots=True)
class TaskOutputParsed:
    output: TaskOutput
    ok: Literal[True] = True


@dataclass(slots=True)
class TaskOutputParseError:
    error: str
    ok: Literal[False] = False


TaskOutputParseResult = TaskOutputParsed | TaskOutputParseError


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class FileWriteError:
    path: str
    error: str


@dataclass(slots=True)
class WriteResult:
    files_written: list[str] = field(default_factory=list)
    errors: list[FileWriteError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def describe_errors(self) -> str:
        return ", ".join(f"{item.path}: {item.error}" for item in self.errors)


def _parse_file_change(item: Any, index: int) -> FileChange | str:
    if not isinstance(item, dict):
        return f"files[{index}] is not an object"
    path = item.get("path")
    action = item.get("action")
    content = item.get("content")
    if not isinstance(path, str):
        return f"files[{index}].path must be a string"
    if action not in VALID_ACTIONS:
        return f"files[{index}].action must be one of {', '.join(VALID_ACTIONS)}"
    if action in {"create", "update"} and not isinstance(content, str):
        return f"files[{index}].content must be a string for {action}"
    return FileChange(
        path=path,
        action=action,
        content=content if isinstance(content, str) else None,
    )


def extract_task_output(raw_output: str) -> TaskOutputParseResult:
    """Pull the ``{taskId, files, summary}`` object out of free-form agent text.

    A fenced code block is preferred; otherwise the whole text is parsed.
    Only shape is checked here; :func:`validate_output` owns the rules.
    """
    match = CODE_BLOCK_PATTERN.search(raw_output)
    candidate = match.group(1).strip() if match else raw_output.strip()
    if not candidate:
        return TaskOutputParseError("Agent output is empty")
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as exc:
        return TaskOutputParseError(f"Agent output is not valid JSON: {exc.msg}")

    if not isinstance(payload, dict):
        return TaskOutputParseError("Agent output must be a JSON object")
    task_id = payload.get("taskId")
    files = payload.get("files")
    summary = payload.get("summary")
    if not isinstance(task_id, str):
        return TaskOutputParseError("Agent output is missing a string taskId")
    if not isinstance(files, list):
        return TaskOutputParseError("Agent output is missing a files array")
    if not isinstance(summary, str):
        return TaskOutputParseError("Agent output is missing a string summary")

    changes: list[FileChange] = []
    for index, item in enumerate(files):
        parsed = _parse_file_change(item, index)
        if isinstance(parsed, str):
            return TaskOutputParseError(parsed)
        changes.append(parsed)
    return TaskOutputParsed(TaskOutput(task_id=task_id, files=changes, summary=summary))


def validate_path(path: str) -> list[str]:
    errors: list[str] = []
    if not path.strip():
        return ["Empty path not allowed"]

    if any(ord(char) < 32 for char in path):
        errors.append(f"Invalid control character in path: {path!r}")

    if posixpath.isabs(path) or ntpath.isabs(path) or ntpath.splitdrive(path)[0]:
        errors.append(f"Absolute path not allowed: {path}")

    segments = re.split(r"[\\/]", path)
    if ".." in segments:
        errors.append(f"Path traversal not allowed: {path}")

    normalized = posixpath.normpath(path.replace("\\", "/"))
    if normalized == ".." or normalized.startswith("../") or normalized.startswith("/"):
        errors.append(f"Path escapes project root: {path}")
    return errors


def validate_output(output: TaskOutput) -> ValidationResult:
    errors: list[str] = []
    if not output.task_id.strip():
        errors.append("Missing or empty taskId")

    for change in output.files:
        errors.extend(validate_path(change.path))
        if change.action not in VALID_ACTIONS:
            errors.append(f"Invalid action {change.action!r} for file: {change.path}")
            continue
        if change.action in {"create", "update"} and not (change.content or "").strip():
            errors.append(f"Missing or empty content for {change.action}: {change.path}")

    return ValidationResult(valid=not errors, errors=errors)


def _resolve_inside(root: Path, relative_path: str) -> Path:
    target = (root / relative_path).resolve()
    if not target.is_relative_to(root):
        raise ValueError(f"Path escapes project root: {relative_path}")
    return target


def write_output(output: TaskOutput, root_dir: Path) -> WriteResult:
    """Apply each file change; failures are collected per path, never rolled back."""
    root = root_dir.resolve()
    result = WriteResult()
    for change in output.files:
        path_errors = validate_path(change.path)
        if path_errors:
            result.errors.append(FileWriteError(change.path, "; ".join(path_errors)))
            continue
        try:
            target = _resolve_inside(root, change.path)
            if change.action == "delete":
                if target.exists():
                    target.unlink()
            else:
                atomic_write_text(target, change.content or "")
        except (OSError, ValueError) as exc:
            result.errors.append(FileWriteError(change.path, str(exc)))
            continue
        result.files_written.append(change.path)
    return result


def mark_task_status(content: str, task_id: str, status: TaskStatus | str) -> str:
    """Rewrite the checkbox on the index line for ``task_id`` and nothing else."""
    mark = CHECKBOX_MARKS.get(TaskStatus(status))
    if mark is None:
        raise ValueError(f"Task status {status!r} cannot be recorded in the index")
    pattern = re.compile(
        rf"^(\s*-\s*\[)[ xX~](\]\s*{re.escape(task_id)}\.)",
        re.MULTILINE,
    )
    return pattern.sub(rf"\g<1>{mark}\g<2>", content)


def update_index_status(
    documents: DocumentStore,
    index_path: str,
    task_id: str,
    status: TaskStatus | str,
) -> None:
    content = documents.read_document(index_path)
    documents.write_document_atomic(index_path, mark_task_status(content, task_id, status))
