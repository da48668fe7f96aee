from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

SNAPSHOT_MESSAGE = "chore(execution): pre-execution snapshot"
AUTO_COMMIT_MESSAGE = "chore: snapshot before execution"


class VersionControlError(RuntimeError):
    """Raised when a git command fails."""


class GitSnapshotter:
    """Captures the working tree before an execution and restores it on abort.

    ``excludes`` are project-relative directories (the state directory) that
    neither count as local changes nor get cleaned on rollback.
    """

    def __init__(self, binary: str = "git", excludes: tuple[str, ...] = ()) -> None:
        self.binary = binary
        self.excludes = tuple(item.strip("/") for item in excludes if item.strip("/"))

    def _excluded(self, path: str) -> bool:
        path = path.strip('"')
        return any(path == item or path.startswith(f"{item}/") for item in self.excludes)

    def _run_git(
        self,
        working_directory: Path,
        args: list[str],
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                [self.binary, "--no-pager", *args],
                cwd=working_directory,
                text=True,
                capture_output=True,
            )
        except OSError as exc:
            raise VersionControlError(f"Unable to run git: {exc}") from exc
        if check and proc.returncode != 0:
            raise VersionControlError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def is_repo(self, working_directory: Path) -> bool:
        try:
            proc = self._run_git(
                working_directory, ["rev-parse", "--is-inside-work-tree"], check=False
            )
        except VersionControlError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def is_dirty(self, working_directory: Path) -> bool:
        proc = self._run_git(working_directory, ["status", "--porcelain", "-uall"])
        changed = [line[3:] for line in proc.stdout.splitlines() if len(line) > 3]
        return any(not self._excluded(path) for path in changed)

    def head(self, working_directory: Path) -> str:
        return self._run_git(working_directory, ["rev-parse", "HEAD"]).stdout.strip()

    def commit_all(self, working_directory: Path, message: str = AUTO_COMMIT_MESSAGE) -> str:
        pathspec = [".", *(f":(exclude){item}" for item in self.excludes)]
        self._run_git(working_directory, ["add", "-A", "--", *pathspec])
        self._run_git(working_directory, ["commit", "-m", message])
        return self.head(working_directory)

    def snapshot(self, working_directory: Path) -> str:
        self._run_git(working_directory, ["commit", "--allow-empty", "-m", SNAPSHOT_MESSAGE])
        ref = self.head(working_directory)
        logger.info("Captured snapshot %s in %s", ref, working_directory)
        return ref

    def rollback(self, working_directory: Path, ref: str) -> None:
        """Restore tracked files to ``ref`` and drop untracked files created since."""
        self._run_git(working_directory, ["reset", "--hard", ref])
        clean_args = ["clean", "-fd"]
        for item in self.excludes:
            clean_args.extend(["-e", item])
        self._run_git(working_directory, clean_args)
        logger.info("Rolled back %s to %s", working_directory, ref)
