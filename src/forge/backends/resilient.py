from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from forge.backends.base import (
    AgentBackend,
    AgentRequest,
    AgentResult,
    BackendExecutionError,
    BackendTimeoutError,
)
from forge.backends.process import BackendEventHook

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 0
    backoff_seconds: float = 0.5


class ResilientBackend(AgentBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover."""

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str | None = None,
        fallback_backend: AgentBackend | None = None,
        retry_policy: RetryPolicy | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        log = logger.warning if event["event"] == "backend_attempt_failed" else logger.info
        log("backend event: %s", event)
        if self.event_hook:
            self.event_hook(event)

    def _candidates(self) -> list[tuple[str, AgentBackend]]:
        candidates = [(self.primary_name, self.primary_backend)]
        if (
            self.fallback_backend is not None
            and self.fallback_name
            and self.fallback_name != self.primary_name
        ):
            candidates.append((self.fallback_name, self.fallback_backend))
        return candidates

    def is_available(self) -> bool:
        return any(backend.is_available() for _name, backend in self._candidates())

    async def _collect_with_timeout(self, backend: AgentBackend, request: AgentRequest) -> str:
        try:
            return await asyncio.wait_for(backend.collect(request), timeout=request.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {request.timeout_seconds:.1f}s",
                backend=backend.name,
                retriable=True,
            ) from exc

    async def _execute_attempts(self, request: AgentRequest) -> str:
        errors: list[str] = []
        for backend_name, backend in self._candidates():
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "session_id": request.session_id,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    output = await self._collect_with_timeout(backend, request)
                except BackendExecutionError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                            "session_id": request.session_id,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                except OSError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": True,
                            "session_id": request.session_id,
                        }
                    )
                    continue
                if backend_name != self.primary_name:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend_name,
                            "attempt": attempt,
                            "session_id": request.session_id,
                        }
                    )
                return output

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(f"All backend attempts failed. {summary}", retriable=False)

    async def execute(self, request: AgentRequest) -> AsyncIterator[str]:
        yield await self._execute_attempts(request)

    async def invoke(self, request: AgentRequest) -> AgentResult:
        try:
            output = await self._execute_attempts(request)
        except BackendExecutionError as exc:
            return AgentResult(succeeded=False, error_detail=str(exc))
        return AgentResult(succeeded=True, raw_output=output)
