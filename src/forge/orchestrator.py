"""Per-execution control loop.

One asyncio task runs the loop for one execution id. The persisted execution
record is the only signal channel: pause, abort, retry and skip all work by
writing to the store, and the loop notices on its next poll. Nothing about the
plan is kept between iterations; it is re-read from the documents each time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from forge.backends.base import AgentBackend, AgentRequest
from forge.config import ForgeConfig
from forge.documents import DocumentNotFoundError, DocumentStore
from forge.errors import NotFoundError, ValidationError
from forge.plan import calculator
from forge.plan.models import ExecutionPlan, Task, TaskStatus
from forge.plan.parser import load_plan
from forge.prompts import render_task_prompt
from forge.state.repositories import (
    Execution,
    ExecutionRepository,
    TaskAttempt,
    TaskAttemptRepository,
    Version,
    VersionRepository,
)
from forge.state.store import StateStoreError
from forge.state.vcs import GitSnapshotter, VersionControlError
from forge.state_machine import StateMachine, StateMachineError, load_state_machine
from forge.writer import extract_task_output, update_index_status, validate_output, write_output

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]
RECOVERY_ACTIONS = ("resume", "abort")
# Index states that count towards Execution.completed_tasks.
COUNTED_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED})


@dataclass(slots=True)
class AbortResult:
    execution: Execution
    rollback_failed: bool = False
    rollback_error: str | None = None


class ExecutionOrchestrator:
    def __init__(
        self,
        versions: VersionRepository,
        executions: ExecutionRepository,
        attempts: TaskAttemptRepository,
        backend: AgentBackend,
        config: ForgeConfig,
        *,
        vcs: GitSnapshotter | None = None,
        documents: Callable[[Path], DocumentStore] = DocumentStore,
        dev_flow: StateMachine | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.versions = versions
        self.executions = executions
        self.attempts = attempts
        self.backend = backend
        self.config = config
        self.vcs = vcs
        self.documents = documents
        self.dev_flow = dev_flow or load_state_machine("dev_flow")
        self.event_hook = event_hook
        self._loops: dict[str, asyncio.Task[None]] = {}
        self.owner_id = uuid4().hex

    def _emit(self, name: str, execution_id: str, **payload: Any) -> None:
        event = {"event": name, "execution_id": execution_id, **payload}
        logger.debug("execution event: %s", event)
        if self.event_hook is not None:
            self.event_hook(event)

    def _require_execution(self, execution_id: str) -> Execution:
        execution = self.executions.get(execution_id)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        return execution

    def _require_version(self, version_id: str) -> Version:
        version = self.versions.get(version_id)
        if version is None:
            raise NotFoundError("Version", version_id)
        return version

    def _load_plan(self, documents: DocumentStore) -> ExecutionPlan:
        project = self.config.project
        return load_plan(documents, project.todo_path, project.milestones_path)

    def _advance_dev(self, version_id: str, event: str, *, fallback: str | None = None) -> None:
        """Best-effort development-flow transition; a rejected event never raises."""
        version = self.versions.get(version_id)
        if version is None:
            logger.warning("Version %s vanished before %s", version_id, event)
            return
        try:
            target = self.dev_flow.transition(version.dev_status, event)
        except StateMachineError as exc:
            logger.warning("Development flow rejected %s for %s: %s", event, version_id, exc)
            if fallback is None:
                return
            target = fallback
        self.versions.update_status(version_id, dev_status=target)

    # -- operator commands -------------------------------------------------

    def start_execution(self, version_id: str) -> Execution:
        if not version_id.strip():
            raise ValidationError("Version ID is required", "version_id")
        version = self._require_version(version_id)
        if version.dev_status != "ready":
            raise ValidationError(
                f"Cannot start execution from state '{version.dev_status}'. "
                "Must be in 'ready' state.",
                "dev_status",
            )

        existing = self.executions.find_running_or_paused(version_id)
        if existing is not None:
            return existing

        if not self.backend.is_available():
            raise ValidationError("No agent backend is available on PATH.", "backend")

        root = Path(version.project_path)
        documents = self.documents(root)
        if not documents.exists(self.config.project.todo_path):
            raise ValidationError(
                f"Cannot start: {self.config.project.todo_path} does not exist", "todo"
            )
        plan = self._load_plan(documents)
        if plan.total_tasks == 0:
            raise ValidationError(
                f"Cannot start: no tasks found in {self.config.project.todo_path}", "tasks"
            )

        pre_execution_commit: str | None = None
        if self.vcs is not None and self.vcs.is_repo(root):
            if self.vcs.is_dirty(root):
                if not self.config.execution.auto_commit_before_execution:
                    raise ValidationError(
                        "Working tree has uncommitted changes. Commit or stash first, "
                        "or enable auto_commit_before_execution.",
                        "git",
                    )
                self.vcs.commit_all(root)
            try:
                pre_execution_commit = self.vcs.snapshot(root)
            except VersionControlError as exc:
                logger.warning("Pre-execution snapshot failed for %s: %s", root, exc)

        execution = self.executions.create(
            version_id,
            total_tasks=plan.total_tasks,
            completed_tasks=sum(
                1 for task, _milestone in plan.iter_tasks() if task.status in COUNTED_STATUSES
            ),
            pre_execution_commit=pre_execution_commit,
        )
        self.versions.update_status(
            version_id, dev_status=self.dev_flow.transition(version.dev_status, "START")
        )
        logger.info("Started execution %s for version %s", execution.id, version_id)
        return execution

    def pause(self, execution_id: str) -> Execution:
        execution = self._require_execution(execution_id)
        if execution.status != "running":
            raise ValidationError(
                f"Cannot pause execution in state '{execution.status}'.", "status"
            )
        execution = self.executions.set_paused(execution_id, True)
        self._advance_dev(execution.version_id, "PAUSE")
        logger.info("Paused execution %s", execution_id)
        return execution

    def resume(self, execution_id: str) -> Execution:
        execution = self._require_execution(execution_id)
        if not execution.is_paused and execution.status != "paused":
            raise ValidationError("Execution is not paused.", "status")
        execution = self.executions.set_paused(execution_id, False)
        self._advance_dev(execution.version_id, "RESUME")
        logger.info("Resumed execution %s", execution_id)
        return execution

    def abort(self, execution_id: str) -> AbortResult:
        execution = self._require_execution(execution_id)
        if execution.status in {"completed", "aborted"}:
            raise ValidationError(
                f"Cannot abort execution in state '{execution.status}'.", "status"
            )
        version = self._require_version(execution.version_id)
        root = Path(version.project_path)

        rollback_failed = False
        rollback_error: str | None = None
        if execution.pre_execution_commit and self.vcs is not None and self.vcs.is_repo(root):
            try:
                self.vcs.rollback(root, execution.pre_execution_commit)
            except VersionControlError as exc:
                rollback_failed = True
                rollback_error = str(exc)
                logger.warning("Rollback of %s failed: %s", execution_id, exc)

        for attempt in self.attempts.find_running(execution_id):
            self.attempts.complete(attempt.id, "failed", "Execution aborted")
        execution = self.executions.complete(execution_id, "aborted")
        self._advance_dev(execution.version_id, "ABORT", fallback="ready")
        logger.info("Aborted execution %s", execution_id)
        return AbortResult(
            execution=execution,
            rollback_failed=rollback_failed,
            rollback_error=rollback_error,
        )

    def _require_paused(self, execution_id: str, action: str) -> tuple[Execution, Version]:
        execution = self._require_execution(execution_id)
        if not execution.is_paused and execution.status != "paused":
            raise ValidationError(f"Execution must be paused to {action} a task", "status")
        return execution, self._require_version(execution.version_id)

    def _require_task(self, version: Version, task_id: str) -> tuple[DocumentStore, Task]:
        if not task_id.strip():
            raise ValidationError("Task ID is required", "task_id")
        documents = self.documents(Path(version.project_path))
        found = calculator.find_task(self._load_plan(documents), task_id)
        if found is None:
            raise NotFoundError("Task", task_id)
        return documents, found[0]

    def retry_task(self, execution_id: str, task_id: str) -> Execution:
        """Put ``task_id`` back to pending and let the loop pick it up with a new attempt."""
        execution, version = self._require_paused(execution_id, "retry")
        documents, task = self._require_task(version, task_id)
        update_index_status(documents, self.config.project.todo_path, task_id, TaskStatus.PENDING)
        if task.status in COUNTED_STATUSES:
            self.executions.update_progress(
                execution_id, completed_tasks=max(execution.completed_tasks - 1, 0)
            )
        self._advance_dev(version.id, "RETRY")
        execution = self.executions.set_paused(execution_id, False)
        logger.info("Retrying task %s in execution %s", task_id, execution_id)
        return execution

    def skip_task(self, execution_id: str, task_id: str) -> Execution:
        """Mark ``task_id`` skipped. Its dependents stay blocked."""
        execution, version = self._require_paused(execution_id, "skip")
        documents, task = self._require_task(version, task_id)
        update_index_status(documents, self.config.project.todo_path, task_id, TaskStatus.SKIPPED)
        completed_tasks = execution.completed_tasks
        if task.status not in COUNTED_STATUSES:
            completed_tasks += 1
        self.executions.update_progress(
            execution_id,
            completed_tasks=completed_tasks,
            current_task_id=None,
        )
        self._advance_dev(version.id, "RESUME")
        execution = self.executions.set_paused(execution_id, False)
        logger.info("Skipped task %s in execution %s", task_id, execution_id)
        return execution

    # -- loop registry and crash recovery ----------------------------------

    def _has_local_loop(self, execution_id: str) -> bool:
        task = self._loops.get(execution_id)
        return task is not None and not task.done()

    def is_active(self, execution_id: str) -> bool:
        """True if a loop drives this execution here or in any other live process."""
        if self._has_local_loop(execution_id):
            return True
        execution = self.executions.get(execution_id)
        return execution is not None and execution.has_live_owner(
            self.config.execution.stale_after_seconds
        )

    def launch(self, execution_id: str) -> asyncio.Task[None]:
        """Schedule the loop on the running event loop; at most one per execution."""
        existing = self._loops.get(execution_id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(self.run_loop(execution_id), name=f"forge-{execution_id}")
        self._loops[execution_id] = task
        task.add_done_callback(lambda _task: self._forget(execution_id, _task))
        return task

    def _forget(self, execution_id: str, task: asyncio.Task[None]) -> None:
        if self._loops.get(execution_id) is task:
            del self._loops[execution_id]

    async def wait(self, execution_id: str) -> None:
        task = self._loops.get(execution_id)
        if task is not None:
            await task

    def find_stale(self) -> list[Execution]:
        return [
            execution
            for execution in self.executions.find_stale(self.config.execution.stale_after_seconds)
            if not self._has_local_loop(execution.id)
        ]

    async def recover(self, execution_id: str, action: str) -> Execution | AbortResult:
        if action not in RECOVERY_ACTIONS:
            raise ValidationError(
                f"Recovery action must be one of {', '.join(RECOVERY_ACTIONS)}", "action"
            )
        execution = self._require_execution(execution_id)
        if execution.is_terminal or self.is_active(execution_id):
            raise ValidationError(f"Execution {execution_id} is not stale.", "status")

        if action == "abort":
            return self.abort(execution_id)

        for attempt in self.attempts.find_running(execution_id):
            self.attempts.complete(attempt.id, "failed", "Interrupted before completion")
        if execution.is_paused:
            execution = self.executions.set_paused(execution_id, False)
            self._advance_dev(execution.version_id, "RESUME")
        logger.info("Recovering execution %s", execution_id)
        self.launch(execution_id)
        return execution

    def status(self, execution_id: str) -> dict[str, Any]:
        execution = self._require_execution(execution_id)
        version = self._require_version(execution.version_id)
        plan = self._load_plan(self.documents(Path(version.project_path)))
        progress = calculator.progress(plan)
        next_result = calculator.next_task(plan)
        return {
            "execution": execution.to_dict(),
            "active": self.is_active(execution_id),
            "dev_status": version.dev_status,
            "progress": {
                "completed": progress.completed,
                "total": progress.total,
                "percent": progress.percent,
            },
            "next": {
                "reason": next_result.reason,
                "task_id": next_result.task.id if next_result.task else None,
                "blocked_by": list(next_result.blocked_by),
            },
            "issues": list(plan.issues),
            "attempts": [
                attempt.to_dict() for attempt in self.attempts.find_by_execution(execution_id)
            ],
        }

    # -- the loop ----------------------------------------------------------

    async def _wait_while_paused(self, execution_id: str) -> bool:
        """Block while the pause flag is set. False means the loop should exit."""
        execution = await asyncio.to_thread(self.executions.get, execution_id)
        if execution is None or execution.is_terminal:
            return False
        if not execution.is_paused:
            return True

        self._emit("paused", execution_id)
        poll_interval = self.config.execution.poll_interval_seconds
        while True:
            await asyncio.sleep(poll_interval)
            execution = await asyncio.to_thread(self.executions.get, execution_id)
            if execution is None or execution.is_terminal:
                return False
            if not execution.is_paused:
                break
        self._emit("resumed", execution_id)
        return True

    async def _heartbeat(self, execution_id: str, loop_task: asyncio.Task[Any]) -> None:
        """Keep the ownership record fresh; stop the loop if another owner took over."""
        interval = self.config.execution.heartbeat_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                held = await asyncio.to_thread(
                    self.executions.heartbeat, execution_id, self.owner_id
                )
            except (StateStoreError, NotFoundError) as exc:
                logger.warning("Heartbeat for execution %s failed: %s", execution_id, exc)
                continue
            if not held:
                logger.warning("Execution %s was claimed by another loop", execution_id)
                loop_task.cancel()
                return

    async def run_loop(self, execution_id: str) -> None:
        execution = await asyncio.to_thread(self._require_execution, execution_id)
        version = await asyncio.to_thread(self.versions.get, execution.version_id)
        if version is None:
            self._emit("error", execution_id, error="Version not found")
            return
        claimed = await asyncio.to_thread(
            self.executions.claim_loop,
            execution_id,
            self.owner_id,
            self.config.execution.stale_after_seconds,
        )
        if claimed is None:
            logger.warning("Execution %s is already driven by another loop", execution_id)
            self._emit("error", execution_id, error="Execution loop is already active")
            return

        root = Path(version.project_path)
        documents = self.documents(root)
        loop_task = asyncio.current_task()
        heartbeat = asyncio.create_task(
            self._heartbeat(execution_id, loop_task), name=f"forge-heartbeat-{execution_id}"
        )
        logger.info("Execution loop started for %s", execution_id)
        try:
            await self._loop(execution_id, root, documents)
        finally:
            heartbeat.cancel()
            try:
                self.executions.release_loop(execution_id, self.owner_id)
            except (StateStoreError, NotFoundError):
                logger.exception("Could not release loop ownership of %s", execution_id)
        logger.info("Execution loop finished for %s", execution_id)

    async def _loop(self, execution_id: str, root: Path, documents: DocumentStore) -> None:
        while True:
            try:
                if not await self._wait_while_paused(execution_id):
                    return
                execution = await asyncio.to_thread(self.executions.get, execution_id)
                if execution is None or execution.status == "aborted":
                    return
                if await self._run_iteration(execution, root, documents):
                    return
            except Exception as exc:
                logger.exception("Unexpected error in execution %s", execution_id)
                await self._pause_after_error(execution_id, str(exc))
                self._emit("error", execution_id, error=str(exc))

    async def _pause_after_error(self, execution_id: str, error: str) -> None:
        """Best effort: fail running attempts and pause. On failure, back off one poll."""
        try:
            await asyncio.to_thread(self._record_unexpected_error, execution_id, error)
        except Exception:
            logger.exception("Could not record the failure of execution %s", execution_id)
            await asyncio.sleep(self.config.execution.poll_interval_seconds)

    def _record_unexpected_error(self, execution_id: str, error: str) -> None:
        for attempt in self.attempts.find_running(execution_id):
            self.attempts.complete(attempt.id, "failed", f"Unexpected error: {error}")
        execution = self.executions.set_paused(execution_id, True)
        self._advance_dev(execution.version_id, "PAUSE")

    def _park(self, execution: Execution) -> None:
        self.executions.set_paused(execution.id, True)
        self._advance_dev(execution.version_id, "PAUSE")

    async def _fail_task(self, execution: Execution, attempt: TaskAttempt, error: str) -> None:
        await asyncio.to_thread(self.attempts.complete, attempt.id, "failed", error)
        await asyncio.to_thread(self._park, execution)
        logger.info("Task %s failed in %s: %s", attempt.task_id, execution.id, error)
        self._emit("task_failed", execution.id, task_id=attempt.task_id, error=error)

    def _project_context(self, documents: DocumentStore) -> str:
        try:
            return documents.read_document(self.config.project.context_path)
        except DocumentNotFoundError:
            return ""

    def _finish(self, execution: Execution) -> Execution:
        self.executions.update_progress(execution.id, current_task_id=None)
        finished = self.executions.complete(execution.id, "completed")
        if finished.status == "completed":
            self._advance_dev(finished.version_id, "COMPLETE", fallback="completed")
        return finished

    def _begin_attempt(self, execution_id: str, task_id: str, total_tasks: int) -> TaskAttempt:
        for leftover in self.attempts.find_running(execution_id):
            self.attempts.complete(leftover.id, "failed", "Interrupted before completion")
        self.executions.update_progress(
            execution_id, current_task_id=task_id, total_tasks=total_tasks
        )
        return self.attempts.create(execution_id, task_id)

    def _record_task_done(
        self,
        execution: Execution,
        attempt: TaskAttempt,
        documents: DocumentStore,
    ) -> ExecutionPlan:
        update_index_status(
            documents, self.config.project.todo_path, attempt.task_id, TaskStatus.COMPLETED
        )
        self.attempts.complete(attempt.id, "completed")
        self.executions.update_progress(
            execution.id,
            completed_tasks=execution.completed_tasks + 1,
            current_task_id=None,
        )
        return self._load_plan(documents)

    async def _run_iteration(
        self,
        execution: Execution,
        root: Path,
        documents: DocumentStore,
    ) -> bool:
        """Run one step of the loop. True means the loop is done."""
        execution_id = execution.id
        try:
            plan = await asyncio.to_thread(self._load_plan, documents)
        except OSError as exc:
            await asyncio.to_thread(self.executions.complete, execution_id, "failed")
            await asyncio.to_thread(
                self._advance_dev, execution.version_id, "FAIL", fallback="error"
            )
            self._emit("error", execution_id, error=f"Failed to load execution plan: {exc}")
            return True

        if plan.issues:
            await asyncio.to_thread(self._park, execution)
            self._emit(
                "error",
                execution_id,
                error="Execution plan has structural issues",
                issues=list(plan.issues),
            )
            return False

        result = calculator.next_task(plan)
        if result.reason in {"all_completed", "no_pending"}:
            progress = calculator.progress(plan)
            execution = await asyncio.to_thread(self._finish, execution)
            if execution.status != "completed":
                return True
            logger.info("Execution %s completed", execution_id)
            self._emit(
                "completed",
                execution_id,
                completed=progress.completed,
                total=progress.total,
            )
            return True

        if result.reason == "blocked":
            await asyncio.to_thread(self._park, execution)
            logger.info("Execution %s blocked on %s", execution_id, result.blocked_by)
            self._emit("blocked", execution_id, blocked_task_ids=list(result.blocked_by))
            return False

        task, milestone = result.task, result.milestone
        attempt = await asyncio.to_thread(
            self._begin_attempt, execution_id, task.id, plan.total_tasks
        )
        self._emit(
            "task_started",
            execution_id,
            task_id=task.id,
            title=task.title,
            attempt_number=attempt.attempt_number,
        )

        prompt = render_task_prompt(
            task,
            milestone,
            project_context=await asyncio.to_thread(self._project_context, documents),
            execution_id=execution_id,
        )
        request = AgentRequest(
            prompt=prompt,
            working_directory=root,
            timeout_seconds=self.config.execution.task_timeout_seconds,
            session_id=execution_id,
            allowed_tools=list(self.config.execution.allowed_tools),
        )
        agent_result = await self.backend.invoke(request)

        current = await asyncio.to_thread(self.executions.get, execution_id)
        if current is None or current.status == "aborted":
            await asyncio.to_thread(
                self.attempts.complete, attempt.id, "failed", "Execution aborted"
            )
            return True

        if not agent_result.succeeded:
            error = agent_result.error_detail or "Agent execution failed"
            await self._fail_task(execution, attempt, error)
            return False

        parsed = extract_task_output(agent_result.raw_output)
        if not parsed.ok:
            await self._fail_task(
                execution, attempt, f"Failed to parse structured output: {parsed.error}"
            )
            return False
        output = parsed.output
        if output.task_id != task.id:
            logger.warning("Agent answered task %s while running %s", output.task_id, task.id)

        validation = validate_output(output)
        if not validation.valid:
            await self._fail_task(
                execution, attempt, f"Invalid task output: {', '.join(validation.errors)}"
            )
            return False

        write_result = await asyncio.to_thread(write_output, output, root)
        if not write_result.success:
            await self._fail_task(
                execution, attempt, f"Failed to write files: {write_result.describe_errors()}"
            )
            return False

        updated_plan = await asyncio.to_thread(self._record_task_done, current, attempt, documents)
        self._emit(
            "task_done",
            execution_id,
            task_id=task.id,
            files_written=list(write_result.files_written),
            summary=output.summary,
        )
        progress = calculator.progress(updated_plan)
        self._emit(
            "progress",
            execution_id,
            completed=progress.completed,
            total=progress.total,
            percent=progress.percent,
        )
        return False
