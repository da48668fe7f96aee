from __future__ import annotations

from typing import Any

from forge.backends.base import AgentRequest
from forge.backends.process import SubprocessBackend, extract_text


class CodexBackend(SubprocessBackend):
    name = "codex"
    binary = "codex"

    def build_command(self, request: AgentRequest) -> list[str]:
        return [self.binary, "exec", "--json", request.prompt]

    def extract_content(self, event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict):
            text = item.get("text")
            if item.get("type") == "agent_message" and isinstance(text, str):
                return text
            return ""

        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            return extract_text(message)
        return extract_text(event)
