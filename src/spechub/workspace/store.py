from __future__ import annotations

import json
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from spechub.workspace.base import KeyValueStore, WorkspaceIOError


class StateStoreError(WorkspaceIOError):
    """Raised when persisted hub state cannot be read or written."""


class JsonStateStore(KeyValueStore):
    """Key-value store persisted as a versioned JSON envelope on disk."""

    SCHEMA_VERSION = 1

    def __init__(self, path: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.path = path
        self.lock_file = path.with_name(f"{path.name}.lock")
        self.lock_timeout_seconds = lock_timeout_seconds

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @contextmanager
    def _state_lock(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
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

    def _read_raw(self) -> Any:
        if not self.path.exists():
            return None
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def get_envelope(self) -> dict[str, Any]:
        raw = self._read_raw()
        if isinstance(raw, dict) and {"schema_version", "revision", "data"} <= raw.keys():
            data = raw.get("data")
            return {
                "schema_version": int(raw.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw.get("revision") or 1),
                "updated_at": raw.get("updated_at") or self._utcnow_iso(),
                "data": data if isinstance(data, dict) else {},
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": {},
        }

    def update(self, updater: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        with self._state_lock():
            current = self.get_envelope()
            data = dict(current["data"])
            updater(data)
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current["revision"] + 1,
                "updated_at": self._utcnow_iso(),
                "data": data,
            }
            serialized = json.dumps(envelope, ensure_ascii=False, indent=2)
            temp_path = self.path.with_name(f"{self.path.name}.tmp")
            try:
                temp_path.write_text(serialized, encoding="utf-8")
                temp_path.replace(self.path)
            except OSError as exc:
                raise StateStoreError(f"Unable to persist hub state: {exc}") from exc
            return data

    def get(self, key: str, default: Any = None) -> Any:
        return self.get_envelope()["data"].get(key, default)

    def set(self, key: str, value: Any) -> None:
        def _updater(data: dict[str, Any]) -> None:
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value

        self.update(_updater)


class MemoryStateStore(KeyValueStore):
    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self.data: dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        if value is None:
            self.data.pop(key, None)
        else:
            self.data[key] = value
