from __future__ import annotations

import os
from pathlib import Path
from uuid import uuid4


class DocumentNotFoundError(FileNotFoundError):
    """Raised when a plan document or directory does not exist."""


def temp_sibling(target: Path) -> Path:
    return target.with_name(f".{target.name}.{uuid4().hex}.tmp")


def atomic_write_text(target: Path, content: str) -> None:
    """Write ``content`` to a temp sibling, fsync it, then rename it over ``target``.

    The rename is the commit point: a crash before it leaves at most an
    orphaned temp file and the previous target untouched.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_path = temp_sibling(target)
    try:
        with open(temp_path, "w", encoding="utf-8", newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, target)
    except BaseException:
        try:
            temp_path.unlink()
        except FileNotFoundError:
            pass
        raise


class DocumentStore:
    """Reads and writes plan documents relative to a project root."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def _resolve(self, relative_path: str) -> Path:
        return self.root / relative_path

    def exists(self, relative_path: str) -> bool:
        return self._resolve(relative_path).exists()

    def read_document(self, relative_path: str) -> str:
        """Return the document verbatim; line endings are not translated."""
        path = self._resolve(relative_path)
        try:
            with open(path, encoding="utf-8", newline="") as handle:
                return handle.read()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as exc:
            raise DocumentNotFoundError(f"Document not found: {relative_path}") from exc

    def write_document_atomic(self, relative_path: str, content: str) -> None:
        atomic_write_text(self._resolve(relative_path), content)

    def list_documents(self, relative_path: str) -> list[str]:
        path = self._resolve(relative_path)
        if not path.is_dir():
            raise DocumentNotFoundError(f"Directory not found: {relative_path}")
        return sorted(item.name for item in path.iterdir() if item.is_file())
