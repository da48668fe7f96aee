from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from forge.documents import atomic_write_text


class StateStoreError(RuntimeError):
    """Raised when persisted-state operations fail."""


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class StateStore:
    """JSON-file record store, one file per namespace.

    Each file holds an envelope ``{schema_version, revision, updated_at, data}``.
    Writers take an exclusive lock file and bump ``revision``; ``update_json``
    re-reads and retries when another writer got there first. This is the only
    channel through which pause and abort reach a running loop, including one
    in another process.
    """

    NAMESPACES = {"versions", "executions", "attempts"}
    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.state_dir = state_dir.resolve()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds
        self.stale_lock_seconds = 30.0

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    def _break_stale_lock(self) -> bool:
        try:
            age = time.time() - self.lock_file.stat().st_mtime
        except FileNotFoundError:
            return True
        if age < self.stale_lock_seconds:
            return False
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass
        return True

    @contextmanager
    def _state_lock(self):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._break_stale_lock():
                    continue
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"Corrupt state file {path.name}: {exc.msg}") from exc

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        try:
            atomic_write_text(self._file(namespace), serialized + "\n")
        except OSError as exc:
            raise StateStoreError(f"Failed to write state namespace {namespace}: {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if isinstance(raw_payload, dict) and {"schema_version", "revision", "data"} <= set(
            raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data", default),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateStoreError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(8):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except StateStoreError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateStoreError(str(last_error) if last_error else "State update failed.")
