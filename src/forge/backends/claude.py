from __future__ import annotations

from typing import Any

from forge.backends.base import AgentRequest
from forge.backends.process import SubprocessBackend, extract_text


class ClaudeCodeBackend(SubprocessBackend):
    name = "claude"
    binary = "claude"

    def build_command(self, request: AgentRequest) -> list[str]:
        command = [
            self.binary,
            "-p",
            request.prompt,
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if request.allowed_tools:
            command.extend(["--allowedTools", ",".join(request.allowed_tools)])
        return command

    def extract_content(self, event: dict[str, Any]) -> str:
        # The closing "result" event repeats the assistant text.
        if event.get("type") == "result":
            return ""
        message = event.get("message")
        if isinstance(message, dict):
            return extract_text(message)
        return extract_text(event)
