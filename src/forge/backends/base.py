from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


@dataclass(slots=True)
class AgentRequest:
    prompt: str
    working_directory: Path
    timeout_seconds: float = 300.0
    session_id: str | None = None
    allowed_tools: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AgentResult:
    succeeded: bool
    raw_output: str = ""
    error_detail: str | None = None


class AgentBackend(ABC):
    name = "agent"

    @abstractmethod
    def execute(self, request: AgentRequest) -> AsyncIterator[str]:
        """Run the agent for one request and stream textual chunks."""

    def is_available(self) -> bool:
        return True

    async def collect(self, request: AgentRequest) -> str:
        chunks: list[str] = []
        async for chunk in self.execute(request):
            chunks.append(chunk)
        return "".join(chunks).strip()

    async def invoke(self, request: AgentRequest) -> AgentResult:
        """Run one request to completion; backend failures come back as a result."""
        try:
            output = await asyncio.wait_for(self.collect(request), timeout=request.timeout_seconds)
        except TimeoutError:
            return AgentResult(
                succeeded=False,
                error_detail=f"{self.name} timed out after {request.timeout_seconds:.1f}s",
            )
        except BackendExecutionError as exc:
            return AgentResult(succeeded=False, error_detail=str(exc))
        return AgentResult(succeeded=True, raw_output=output)
