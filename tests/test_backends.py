import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from forge.backends import RetryPolicy
from forge.backends.base import AgentBackend, AgentRequest, BackendExecutionError
from forge.backends.claude import ClaudeCodeBackend
from forge.backends.codex import CodexBackend
from forge.backends.resilient import ResilientBackend


def _request(**overrides: Any) -> AgentRequest:
    values: dict[str, Any] = {
        "prompt": "implement feature",
        "working_directory": Path("."),
        "timeout_seconds": 5.0,
        "session_id": "exec-1",
    }
    values.update(overrides)
    return AgentRequest(**values)


class AlwaysFailBackend(AgentBackend):
    def __init__(self, retriable: bool = True) -> None:
        self.retriable = retriable
        self.calls = 0

    async def execute(self, request: AgentRequest) -> AsyncIterator[str]:
        _ = request
        self.calls += 1
        raise BackendExecutionError("boom", backend="fake", retriable=self.retriable)
        yield ""  # pragma: no cover


class SuccessBackend(AgentBackend):
    async def execute(self, request: AgentRequest) -> AsyncIterator[str]:
        _ = request
        yield "o"
        yield "k"


class SlowBackend(AgentBackend):
    name = "slow"

    async def execute(self, request: AgentRequest) -> AsyncIterator[str]:
        _ = request
        await asyncio.sleep(10)
        yield "late"  # pragma: no cover


class UnavailableBackend(SuccessBackend):
    def is_available(self) -> bool:
        return False


def _fake_process(monkeypatch: pytest.MonkeyPatch, lines: list[bytes], exit_code: int = 0) -> dict:
    captured: dict[str, Any] = {}

    class FakeStdout:
        def __init__(self) -> None:
            self._lines = list(lines)

        def __aiter__(self) -> "FakeStdout":
            return self

        async def __anext__(self) -> bytes:
            if not self._lines:
                raise StopAsyncIteration
            return self._lines.pop(0)

    class FakeStderr:
        async def read(self) -> bytes:
            return b"stderr text" if exit_code else b""

    class FakeProcess:
        pid = 4242

        def __init__(self) -> None:
            self.stdout = FakeStdout()
            self.stderr = FakeStderr()
            self.returncode: int | None = None

        async def wait(self) -> int:
            self.returncode = exit_code
            return exit_code

        def kill(self) -> None:
            captured["killed"] = True

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = list(args)
        captured["cwd"] = kwargs.get("cwd")
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    return captured


def test_codex_build_command_shape() -> None:
    command = CodexBackend(binary="codex").build_command(_request())

    assert command == ["codex", "exec", "--json", "implement feature"]


def test_claude_build_command_shape() -> None:
    command = ClaudeCodeBackend(binary="claude").build_command(
        _request(allowed_tools=["Read", "Write"])
    )

    assert command[0:3] == ["claude", "-p", "implement feature"]
    assert "--output-format" in command
    assert "stream-json" in command
    assert command[-2:] == ["--allowedTools", "Read,Write"]


def test_claude_command_without_tools_has_no_allowed_tools_flag() -> None:
    command = ClaudeCodeBackend().build_command(_request())

    assert "--allowedTools" not in command


def test_invoke_collects_chunks() -> None:
    result = asyncio.run(SuccessBackend().invoke(_request()))

    assert result.succeeded
    assert result.raw_output == "ok"
    assert result.error_detail is None


def test_invoke_times_out() -> None:
    result = asyncio.run(SlowBackend().invoke(_request(timeout_seconds=0.2)))

    assert not result.succeeded
    assert result.error_detail == "slow timed out after 0.2s"


def test_invoke_reports_backend_errors() -> None:
    result = asyncio.run(AlwaysFailBackend().invoke(_request()))

    assert not result.succeeded
    assert result.error_detail == "boom"


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()

    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0),
        event_hook=events.append,
    )

    async def _run() -> str:
        parts: list[str] = []
        async for part in backend.execute(_request()):
            parts.append(part)
        return "".join(parts)

    output = asyncio.run(_run())

    assert output == "ok"
    assert primary.calls == 2
    event_names = [event["event"] for event in events]
    assert event_names == [
        "backend_attempt_failed",
        "backend_retry",
        "backend_attempt_failed",
        "backend_fallback_success",
    ]
    assert all(event["session_id"] == "exec-1" for event in events)


def test_resilient_backend_stops_retrying_non_retriable_errors() -> None:
    primary = AlwaysFailBackend(retriable=False)
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0),
    )

    result = asyncio.run(backend.invoke(_request()))

    assert not result.succeeded
    assert primary.calls == 1
    assert result.error_detail.startswith("All backend attempts failed.")
    assert "primary[0]: boom" in result.error_detail


def test_resilient_backend_times_out_each_attempt() -> None:
    events: list[dict[str, Any]] = []
    backend = ResilientBackend(
        primary_name="slow",
        primary_backend=SlowBackend(),
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        event_hook=events.append,
    )

    result = asyncio.run(backend.invoke(_request(timeout_seconds=0.05)))

    assert result.succeeded
    assert result.raw_output == "ok"
    assert "timed out" in events[0]["error"]


def test_resilient_backend_availability_and_same_name_fallback() -> None:
    unavailable = ResilientBackend("claude", UnavailableBackend(), "codex", UnavailableBackend())
    duplicate = ResilientBackend("claude", UnavailableBackend(), "claude", SuccessBackend())
    mixed = ResilientBackend("claude", UnavailableBackend(), "codex", SuccessBackend())

    assert not unavailable.is_available()
    assert not duplicate.is_available()
    assert mixed.is_available()


def test_claude_backend_streams_assistant_text(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[dict[str, Any]] = []
    captured = _fake_process(
        monkeypatch,
        [
            b'{"type":"system","subtype":"init"}\n',
            b'{"type":"assistant","message":{"content":[\n',
            b'{"type":"text","text":"hello "}]}}\n',
            b'{"type":"assistant","message":{"content":[{"type":"text","text":"world"}]}}\n',
            b'{"type":"result","result":"hello world"}\n',
        ],
    )
    backend = ClaudeCodeBackend(event_hook=events.append)

    output = asyncio.run(backend.collect(_request(working_directory=Path("/tmp/project"))))

    assert output == "hello world"
    assert captured["args"][0] == "claude"
    assert captured["cwd"] == "/tmp/project"
    assert [event["event"] for event in events] == ["agent_process_start", "agent_process_exit"]


def test_codex_backend_passes_through_noise(monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_process(
        monkeypatch,
        [
            b'{"type":"item.completed","item":{"type":"reasoning","text":"thinking"}}\n',
            b"noise-before-json\n",
            b'{"type":"item.completed","item":{"type":"agent_message","text":"done"}}\n',
        ],
    )

    output = asyncio.run(CodexBackend().collect(_request()))

    assert output == "noise-before-json\ndone"


def test_subprocess_nonzero_exit_is_retriable_error(monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_process(monkeypatch, [b'{"content":"partial"}\n'], exit_code=2)

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(CodexBackend().collect(_request()))

    assert excinfo.value.exit_code == 2
    assert excinfo.value.retriable
    assert "stderr text" in str(excinfo.value)


def test_missing_binary_is_not_retriable() -> None:
    backend = CodexBackend(binary="forge-test-missing-binary")

    result = asyncio.run(backend.invoke(_request()))

    assert not backend.is_available()
    assert not result.succeeded
    assert "binary not found" in result.error_detail


def test_stderr_is_drained_while_stdout_streams(monkeypatch: pytest.MonkeyPatch) -> None:
    drained = asyncio.Event()

    class BlockedStdout:
        def __init__(self) -> None:
            self._lines = [b'{"content":"done"}\n']

        def __aiter__(self) -> "BlockedStdout":
            return self

        async def __anext__(self) -> bytes:
            # stdout stays stuck until the full stderr pipe has been read.
            await drained.wait()
            if not self._lines:
                raise StopAsyncIteration
            return self._lines.pop(0)

    class NoisyStderr:
        async def read(self) -> bytes:
            drained.set()
            return b"warning\n" * 10000

    class FakeProcess:
        pid = 4343

        def __init__(self) -> None:
            self.stdout = BlockedStdout()
            self.stderr = NoisyStderr()
            self.returncode: int | None = None

        async def wait(self) -> int:
            self.returncode = 0
            return 0

        def kill(self) -> None:
            self.returncode = -9

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    result = asyncio.run(CodexBackend().invoke(_request(timeout_seconds=2.0)))

    assert result.succeeded
    assert result.raw_output == "done"
