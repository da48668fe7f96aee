import json
import re
import subprocess
from collections.abc import AsyncIterator
from pathlib import Path

from click.testing import CliRunner

from forge.backends.base import AgentBackend, AgentRequest
from forge.cli import cli
from forge.config import load_config

TODO = "## M1: Setup\n- [ ] 001. Create module\n- [ ] 002. Use module\n"
DETAIL = (
    "# M1: Setup\n"
    "### 001. Create module\n**Description:**\nWrite src/a.py\n**Depends:** none\n---\n"
    "### 002. Use module\n**Description:**\nWrite src/b.py\n**Depends:** 001\n---\n"
)


class FakeBackend(AgentBackend):
    """Answers every task with one file; task ids in ``broken`` get unusable output."""

    broken: set[str] = set()

    async def execute(self, request: AgentRequest) -> AsyncIterator[str]:
        match = re.search(r"^## Task (\d+):", request.prompt, re.MULTILINE)
        assert match is not None
        task_id = match.group(1)
        if task_id in self.broken:
            yield "no json here"
            return
        payload = {
            "taskId": task_id,
            "files": [{"path": f"src/t{task_id}.py", "action": "create", "content": "ok = 1\n"}],
            "summary": f"implemented {task_id}",
        }
        yield "```json\n" + json.dumps(payload) + "\n```"


def _git(args: list[str], cwd: Path) -> str:
    return subprocess.run(
        ["git", *args], cwd=cwd, check=True, text=True, capture_output=True
    ).stdout


def _init_project(repo_path: Path) -> None:
    (repo_path / "META" / "MILESTONES").mkdir(parents=True)
    (repo_path / "META" / "TODO.md").write_text(TODO, encoding="utf-8")
    (repo_path / "META" / "MILESTONES" / "M1.md").write_text(DETAIL, encoding="utf-8")
    _git(["init"], cwd=repo_path)
    _git(["config", "user.email", "test@example.com"], cwd=repo_path)
    _git(["config", "user.name", "Test User"], cwd=repo_path)
    _git(["add", "-A"], cwd=repo_path)
    _git(["commit", "-m", "seed"], cwd=repo_path)


def _commit_config(repo_path: Path) -> None:
    _git(["add", "forge.toml"], cwd=repo_path)
    _git(["commit", "-m", "add forge config"], cwd=repo_path)


def _events(output: str) -> list[dict]:
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


def _setup(tmp_path: Path, monkeypatch) -> tuple[Path, CliRunner]:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_project(repo)
    monkeypatch.chdir(repo)
    monkeypatch.setattr("forge.cli._build_backend", lambda config: FakeBackend())
    monkeypatch.setattr(FakeBackend, "broken", set())
    return repo, CliRunner()


def test_cli_full_lifecycle_commands(tmp_path: Path, monkeypatch) -> None:
    repo, runner = _setup(tmp_path, monkeypatch)

    init_result = runner.invoke(cli, ["init", "--version-name", "first"])
    assert init_result.exit_code == 0, init_result.output
    assert "Version:" in init_result.output
    assert "(first, reviewing)" in init_result.output
    assert load_config(repo / "forge.toml").project.name == "repo"
    _commit_config(repo)

    refused = runner.invoke(cli, ["start"])
    assert refused.exit_code != 0
    assert "Must be in 'ready' state" in refused.output

    approve_result = runner.invoke(cli, ["approve"])
    assert approve_result.exit_code == 0
    assert "Version first is ready." in approve_result.output

    plan_result = runner.invoke(cli, ["plan"])
    assert plan_result.exit_code == 0
    plan = json.loads(plan_result.output)
    assert plan["next"]["task_id"] == "001"
    assert plan["blocked"] == [{"task_id": "002", "blocked_by": ["001"]}]

    start_result = runner.invoke(cli, ["start"])
    assert start_result.exit_code == 0, start_result.output
    events = _events(start_result.output)
    assert [event["event"] for event in events][-1] == "completed"
    assert re.search(r"Execution [0-9a-f]{32}: completed \(2/2 tasks\)", start_result.output)
    assert (repo / "src" / "t002.py").exists()
    assert "- [x] 002. Use module" in (repo / "META" / "TODO.md").read_text(encoding="utf-8")

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    status = json.loads(status_result.output)
    assert status["execution"]["status"] == "completed"
    assert status["dev_status"] == "completed"
    assert status["progress"]["percent"] == 100
    assert len(status["attempts"]) == 2


def test_cli_pause_retry_skip_and_abort(tmp_path: Path, monkeypatch) -> None:
    repo, runner = _setup(tmp_path, monkeypatch)
    assert runner.invoke(cli, ["init", "--ready"]).exit_code == 0
    _commit_config(repo)
    FakeBackend.broken = {"001"}

    start_result = runner.invoke(cli, ["start", "--exit-on-pause"])
    assert start_result.exit_code == 0, start_result.output
    names = [event["event"] for event in _events(start_result.output)]
    assert names == ["task_started", "task_failed", "paused"]
    assert "paused (0/2 tasks)" in start_result.output

    retry_result = runner.invoke(cli, ["retry", "001"])
    assert retry_result.exit_code == 0
    assert "Task 001 queued for retry." in retry_result.output

    stale_result = runner.invoke(cli, ["stale"])
    assert stale_result.exit_code == 0
    execution_id = stale_result.output.split()[0]
    assert "running" in stale_result.output

    resumed = runner.invoke(cli, ["stale", "--resume", execution_id, "--exit-on-pause"])
    assert resumed.exit_code == 0, resumed.output
    assert [event["event"] for event in _events(resumed.output)][-1] == "paused"

    skip_result = runner.invoke(cli, ["skip", "001"])
    assert skip_result.exit_code == 0
    assert "Task 001 skipped." in skip_result.output

    pause_result = runner.invoke(cli, ["pause"])
    assert pause_result.exit_code == 0
    assert runner.invoke(cli, ["pause"]).exit_code != 0

    abort_result = runner.invoke(cli, ["abort"])
    assert abort_result.exit_code == 0
    assert f"Execution {execution_id} aborted." in abort_result.output
    assert not (repo / "src").exists()
    assert "- [ ] 001. Create module" in (repo / "META" / "TODO.md").read_text(encoding="utf-8")

    status = json.loads(runner.invoke(cli, ["status"]).output)
    assert status["execution"]["status"] == "aborted"
    assert status["dev_status"] == "ready"
    assert runner.invoke(cli, ["stale"]).output.strip() == "No stale executions."


def test_cli_refuses_dirty_tree_and_reports_missing_version(tmp_path: Path, monkeypatch) -> None:
    repo, runner = _setup(tmp_path, monkeypatch)

    no_version = runner.invoke(cli, ["status"])
    assert no_version.exit_code != 0
    assert "No version registered" in no_version.output

    assert runner.invoke(cli, ["init", "--ready"]).exit_code == 0
    dirty = runner.invoke(cli, ["start"])
    assert dirty.exit_code != 0
    assert "uncommitted changes" in dirty.output

    status = json.loads(runner.invoke(cli, ["status"]).output)
    assert status["execution"] is None
    assert status["version"]["dev_status"] == "ready"


def test_backend_command_updates_config(tmp_path: Path, monkeypatch) -> None:
    repo, runner = _setup(tmp_path, monkeypatch)

    result = runner.invoke(cli, ["backend", "codex"])

    assert result.exit_code == 0
    assert load_config(repo / "forge.toml").backend.primary == "codex"
    assert runner.invoke(cli, ["backend", "gpt"]).exit_code != 0
