from __future__ import annotations

import os
from dataclasses import asdict, dataclass, fields
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from forge.errors import NotFoundError
from forge.state.store import StateStore, utcnow_iso

TERMINAL_EXECUTION_STATUSES = frozenset({"completed", "failed", "aborted"})
ACTIVE_EXECUTION_STATUSES = frozenset({"running", "paused"})
ATTEMPT_STATUSES = frozenset({"running", "completed", "failed", "skipped"})

_UNSET: Any = object()


def _new_id() -> str:
    return uuid4().hex


def pid_alive(pid: int) -> bool:
    if os.name == "nt":
        # Signal 0 is not a liveness check on Windows; the heartbeat age decides there.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def heartbeat_age_seconds(heartbeat_at: str | None) -> float | None:
    if not heartbeat_at:
        return None
    try:
        beat = datetime.fromisoformat(heartbeat_at)
    except ValueError:
        return None
    return (datetime.now(UTC) - beat).total_seconds()


def loop_owner_alive(record: dict[str, Any], stale_after_seconds: float) -> bool:
    """True while some process still drives this execution's loop.

    An owner counts as gone once its pid no longer exists or its heartbeat is
    older than ``stale_after_seconds``.
    """
    if not record.get("owner_id"):
        return False
    pid = record.get("owner_pid")
    if isinstance(pid, int) and not pid_alive(pid):
        return False
    age = heartbeat_age_seconds(record.get("heartbeat_at"))
    return age is not None and age <= stale_after_seconds


class _Record:
    __slots__ = ()

    @classmethod
    def from_dict(cls, payload: dict[str, Any]):
        names = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in payload.items() if key in names})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class Version(_Record):
    id: str
    project_path: str
    name: str
    dev_status: str = "authoring"
    runtime_status: str = "not_configured"
    created_at: str = ""
    updated_at: str = ""


@dataclass(slots=True)
class Execution(_Record):
    id: str
    version_id: str
    started_at: str
    completed_at: str | None = None
    status: str = "running"
    total_tasks: int = 0
    completed_tasks: int = 0
    current_task_id: str | None = None
    pre_execution_commit: str | None = None
    is_paused: bool = False
    owner_id: str | None = None
    owner_pid: int | None = None
    heartbeat_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    def has_live_owner(self, stale_after_seconds: float) -> bool:
        return loop_owner_alive(self.to_dict(), stale_after_seconds)


@dataclass(slots=True)
class TaskAttempt(_Record):
    id: str
    execution_id: str
    task_id: str
    attempt_number: int
    started_at: str
    completed_at: str | None = None
    status: str = "running"
    error_message: str | None = None


class _Repository:
    namespace = ""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def _records(self) -> dict[str, dict[str, Any]]:
        data = self.store.get_json(self.namespace, default={})
        return data if isinstance(data, dict) else {}

    def _mutate(self, record_id: str, entity: str, change) -> dict[str, Any]:
        """Apply ``change`` to one stored record under the store's revision check."""
        result: dict[str, Any] = {}

        def _updater(data: Any) -> dict[str, Any]:
            records = data if isinstance(data, dict) else {}
            if record_id not in records:
                raise NotFoundError(entity, record_id)
            record = dict(records[record_id])
            change(record)
            records[record_id] = record
            result.clear()
            result.update(record)
            return records

        self.store.update_json(self.namespace, _updater, default={})
        return result

    def _insert(self, record: dict[str, Any]) -> None:
        def _updater(data: Any) -> dict[str, Any]:
            records = data if isinstance(data, dict) else {}
            records[record["id"]] = record
            return records

        self.store.update_json(self.namespace, _updater, default={})


class VersionRepository(_Repository):
    namespace = "versions"

    def create(
        self,
        project_path: str,
        name: str,
        *,
        dev_status: str = "authoring",
        runtime_status: str = "not_configured",
    ) -> Version:
        now = utcnow_iso()
        version = Version(
            id=_new_id(),
            project_path=project_path,
            name=name,
            dev_status=dev_status,
            runtime_status=runtime_status,
            created_at=now,
            updated_at=now,
        )
        self._insert(version.to_dict())
        return version

    def get(self, version_id: str) -> Version | None:
        payload = self._records().get(version_id)
        return Version.from_dict(payload) if payload else None

    def list_all(self) -> list[Version]:
        return [Version.from_dict(payload) for payload in self._records().values()]

    def update_status(
        self,
        version_id: str,
        *,
        dev_status: str | None = None,
        runtime_status: str | None = None,
    ) -> Version:
        def _change(record: dict[str, Any]) -> None:
            if dev_status is not None:
                record["dev_status"] = dev_status
            if runtime_status is not None:
                record["runtime_status"] = runtime_status
            record["updated_at"] = utcnow_iso()

        return Version.from_dict(self._mutate(version_id, "Version", _change))


class ExecutionRepository(_Repository):
    namespace = "executions"

    def create(
        self,
        version_id: str,
        *,
        total_tasks: int = 0,
        completed_tasks: int = 0,
        pre_execution_commit: str | None = None,
    ) -> Execution:
        execution = Execution(
            id=_new_id(),
            version_id=version_id,
            started_at=utcnow_iso(),
            total_tasks=total_tasks,
            completed_tasks=completed_tasks,
            pre_execution_commit=pre_execution_commit,
        )
        self._insert(execution.to_dict())
        return execution

    def get(self, execution_id: str) -> Execution | None:
        payload = self._records().get(execution_id)
        return Execution.from_dict(payload) if payload else None

    def find_by_version(self, version_id: str) -> list[Execution]:
        """Newest first; records are stored in creation order."""
        executions = [
            Execution.from_dict(payload)
            for payload in self._records().values()
            if payload.get("version_id") == version_id
        ]
        executions.reverse()
        return executions

    def find_running_or_paused(self, version_id: str) -> Execution | None:
        for execution in self.find_by_version(version_id):
            if execution.status in ACTIVE_EXECUTION_STATUSES:
                return execution
        return None

    def find_stale(self, stale_after_seconds: float) -> list[Execution]:
        """Executions still marked running or paused whose loop owner is gone."""
        return [
            Execution.from_dict(payload)
            for payload in self._records().values()
            if payload.get("status") in ACTIVE_EXECUTION_STATUSES
            and not loop_owner_alive(payload, stale_after_seconds)
        ]

    def claim_loop(
        self, execution_id: str, owner_id: str, stale_after_seconds: float
    ) -> Execution | None:
        """Record ``owner_id`` as the loop driver. None if another live owner holds it."""
        claimed: list[bool] = []

        def _change(record: dict[str, Any]) -> None:
            claimed.clear()
            current = record.get("owner_id")
            if current and current != owner_id and loop_owner_alive(record, stale_after_seconds):
                return
            record["owner_id"] = owner_id
            record["owner_pid"] = os.getpid()
            record["heartbeat_at"] = utcnow_iso()
            claimed.append(True)

        execution = Execution.from_dict(self._mutate(execution_id, "Execution", _change))
        return execution if claimed else None

    def heartbeat(self, execution_id: str, owner_id: str) -> bool:
        """Refresh the heartbeat. False once ``owner_id`` no longer holds the loop."""
        held: list[bool] = []

        def _change(record: dict[str, Any]) -> None:
            held.clear()
            if record.get("owner_id") != owner_id:
                return
            record["heartbeat_at"] = utcnow_iso()
            held.append(True)

        self._mutate(execution_id, "Execution", _change)
        return bool(held)

    def release_loop(self, execution_id: str, owner_id: str) -> None:
        def _change(record: dict[str, Any]) -> None:
            if record.get("owner_id") != owner_id:
                return
            record["owner_id"] = None
            record["owner_pid"] = None
            record["heartbeat_at"] = None

        self._mutate(execution_id, "Execution", _change)

    def set_paused(self, execution_id: str, paused: bool) -> Execution:
        def _change(record: dict[str, Any]) -> None:
            if record.get("status") in TERMINAL_EXECUTION_STATUSES:
                return
            record["is_paused"] = paused
            record["status"] = "paused" if paused else "running"

        return Execution.from_dict(self._mutate(execution_id, "Execution", _change))

    def update_progress(
        self,
        execution_id: str,
        *,
        completed_tasks: int | None = None,
        total_tasks: int | None = None,
        current_task_id: str | None = _UNSET,
    ) -> Execution:
        def _change(record: dict[str, Any]) -> None:
            if completed_tasks is not None:
                record["completed_tasks"] = completed_tasks
            if total_tasks is not None:
                record["total_tasks"] = total_tasks
            if current_task_id is not _UNSET:
                record["current_task_id"] = current_task_id

        return Execution.from_dict(self._mutate(execution_id, "Execution", _change))

    def complete(self, execution_id: str, status: str) -> Execution:
        """Move to a terminal status.

        ``completed`` and ``aborted`` are final; a ``failed`` execution may still
        be aborted. Anything else leaves the stored status untouched, so an
        abort racing a finishing loop always wins.
        """
        if status not in TERMINAL_EXECUTION_STATUSES:
            raise ValueError(f"Not a terminal execution status: {status}")

        def _change(record: dict[str, Any]) -> None:
            current = record.get("status")
            if current in {"completed", "aborted"}:
                return
            if current == "failed" and status != "aborted":
                return
            record["status"] = status
            record["completed_at"] = utcnow_iso()
            record["is_paused"] = False

        return Execution.from_dict(self._mutate(execution_id, "Execution", _change))


class TaskAttemptRepository(_Repository):
    namespace = "attempts"

    def create(self, execution_id: str, task_id: str) -> TaskAttempt:
        created: dict[str, Any] = {}

        def _updater(data: Any) -> dict[str, Any]:
            records = data if isinstance(data, dict) else {}
            attempt = TaskAttempt(
                id=_new_id(),
                execution_id=execution_id,
                task_id=task_id,
                attempt_number=self._count(records.values(), execution_id, task_id) + 1,
                started_at=utcnow_iso(),
            )
            records[attempt.id] = attempt.to_dict()
            created.clear()
            created.update(records[attempt.id])
            return records

        self.store.update_json(self.namespace, _updater, default={})
        return TaskAttempt.from_dict(created)

    @staticmethod
    def _count(records, execution_id: str, task_id: str) -> int:
        return sum(
            1
            for payload in records
            if payload.get("execution_id") == execution_id and payload.get("task_id") == task_id
        )

    def next_attempt_number(self, execution_id: str, task_id: str) -> int:
        return self._count(self._records().values(), execution_id, task_id) + 1

    def get(self, attempt_id: str) -> TaskAttempt | None:
        payload = self._records().get(attempt_id)
        return TaskAttempt.from_dict(payload) if payload else None

    def complete(
        self,
        attempt_id: str,
        status: str,
        error_message: str | None = None,
    ) -> TaskAttempt:
        if status not in ATTEMPT_STATUSES - {"running"}:
            raise ValueError(f"Not a terminal attempt status: {status}")

        def _change(record: dict[str, Any]) -> None:
            record["status"] = status
            record["completed_at"] = utcnow_iso()
            record["error_message"] = error_message

        return TaskAttempt.from_dict(self._mutate(attempt_id, "TaskAttempt", _change))

    def find_by_execution(self, execution_id: str) -> list[TaskAttempt]:
        return [
            TaskAttempt.from_dict(payload)
            for payload in self._records().values()
            if payload.get("execution_id") == execution_id
        ]

    def find_running(self, execution_id: str) -> list[TaskAttempt]:
        return [
            attempt
            for attempt in self.find_by_execution(execution_id)
            if attempt.status == "running"
        ]
