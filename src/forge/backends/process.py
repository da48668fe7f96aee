from __future__ import annotations

import asyncio
import json
import logging
import shutil
from collections.abc import AsyncIterator, Callable
from typing import Any

from forge.backends.base import (
    AgentBackend,
    AgentRequest,
    BackendExecutionError,
    BackendProcessError,
)

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


def appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


def extract_text(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        )
    delta = event.get("delta")
    if isinstance(delta, str):
        return delta
    return ""


class SubprocessBackend(AgentBackend):
    """Streams a CLI agent that prints one JSON event per line.

    Lines that are not JSON are either buffered (when they look like the
    start of a multi-line object) or passed through verbatim. The child is
    killed if the consumer is cancelled, which is how request timeouts end it.
    """

    binary = ""

    def __init__(self, binary: str | None = None, event_hook: BackendEventHook | None = None):
        if binary:
            self.binary = binary
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    def build_command(self, request: AgentRequest) -> list[str]:
        raise NotImplementedError

    def extract_content(self, event: dict[str, Any]) -> str:
        return extract_text(event)

    async def execute(self, request: AgentRequest) -> AsyncIterator[str]:
        command = self.build_command(request)
        self._emit(
            {
                "event": "agent_process_start",
                "backend": self.name,
                "session_id": request.session_id,
                "cwd": str(request.working_directory),
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(request.working_directory),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} backend did not expose stdout.", backend=self.name, retriable=False
            )

        # stderr is read concurrently with stdout; either pipe can fill first.
        stderr_task = (
            asyncio.create_task(process.stderr.read()) if process.stderr is not None else None
        )
        try:
            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    yield line + "\n"
                    continue

                if not isinstance(event, dict):
                    yield candidate + "\n"
                    continue
                content = self.extract_content(event)
                if content:
                    yield content

            if parse_buffer:
                yield parse_buffer

            return_code = await process.wait()
            stderr_bytes = await stderr_task if stderr_task is not None else b""
        finally:
            if stderr_task is not None and not stderr_task.done():
                stderr_task.cancel()
            if process.returncode is None:
                logger.warning("Killing %s agent process %s", self.name, process.pid)
                process.kill()
                await process.wait()

        stderr_output = stderr_bytes.decode("utf-8", errors="replace").strip()
        self._emit({"event": "agent_process_exit", "backend": self.name, "exit_code": return_code})
        if return_code != 0:
            raise BackendExecutionError(
                f"{self.name} backend failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
