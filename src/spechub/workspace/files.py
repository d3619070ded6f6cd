from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping
from pathlib import Path, PurePosixPath

from spechub.models import DEFAULT_SPEC_ROOT
from spechub.workspace.base import (
    FileReadResult,
    FileStore,
    SpecRootUnavailableError,
    TreeListing,
    WorkspaceIOError,
)

IGNORED_DIRECTORIES = frozenset({".git", "node_modules", ".venv", "__pycache__", ".spechub"})


class LocalFileStore(FileStore):
    """Reads and writes workspace files on the local filesystem."""

    def __init__(
        self,
        workspaces: Mapping[str, Path],
        *,
        max_bytes: int = 400_000,
    ) -> None:
        self.workspaces = {key: Path(value).resolve() for key, value in workspaces.items()}
        self.max_bytes = max_bytes

    def _root(self, workspace_id: str) -> Path:
        root = self.workspaces.get(workspace_id)
        if root is None:
            raise WorkspaceIOError(f"Unknown workspace: {workspace_id}")
        return root

    @staticmethod
    def _resolve(root: Path, relative: str) -> Path:
        parts = PurePosixPath(relative.replace("\\", "/"))
        if parts.is_absolute() or ".." in parts.parts:
            raise WorkspaceIOError(f"Path escapes workspace root: {relative}", path=relative)
        return root.joinpath(*parts.parts)

    @staticmethod
    def _external_relative(path: str) -> str:
        normalized = path.replace("\\", "/")
        prefix = f"{DEFAULT_SPEC_ROOT}/"
        if normalized.startswith(prefix):
            return normalized[len(prefix) :]
        return normalized

    def _read_file(self, target: Path, relative: str) -> FileReadResult:
        if not target.is_file():
            return FileReadResult(content="", truncated=False, exists=False)
        try:
            with target.open("rb") as handle:
                raw = handle.read(self.max_bytes + 1)
        except OSError as exc:
            raise WorkspaceIOError(f"Unable to read {relative}: {exc}", path=relative) from exc
        truncated = len(raw) > self.max_bytes
        content = raw[: self.max_bytes].decode("utf-8", errors="replace")
        return FileReadResult(content=content, truncated=truncated, exists=True)

    def _write_file(self, target: Path, relative: str, content: str) -> None:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("w", encoding="utf-8", newline="") as handle:
                handle.write(content)
        except OSError as exc:
            raise WorkspaceIOError(f"Unable to write {relative}: {exc}", path=relative) from exc

    @staticmethod
    def _walk(root: Path, prefix: str = "") -> TreeListing:
        listing = TreeListing()
        for current, directories, files in os.walk(root):
            directories[:] = sorted(d for d in directories if d not in IGNORED_DIRECTORIES)
            relative_dir = Path(current).relative_to(root).as_posix()
            base = "" if relative_dir == "." else f"{relative_dir}/"
            for name in directories:
                listing.directories.append(f"{prefix}{base}{name}")
            for name in sorted(files):
                listing.files.append(f"{prefix}{base}{name}")
        return listing

    async def read(self, workspace_id: str, path: str) -> FileReadResult:
        target = self._resolve(self._root(workspace_id), path)
        return await asyncio.to_thread(self._read_file, target, path)

    async def write(self, workspace_id: str, path: str, content: str) -> None:
        target = self._resolve(self._root(workspace_id), path)
        await asyncio.to_thread(self._write_file, target, path, content)

    async def list_tree(self, workspace_id: str) -> TreeListing:
        return await asyncio.to_thread(self._walk, self._root(workspace_id))

    async def read_external(self, workspace_id: str, spec_root: str, path: str) -> FileReadResult:
        root = Path(spec_root)
        target = self._resolve(root, self._external_relative(path))
        return await asyncio.to_thread(self._read_file, target, path)

    async def write_external(
        self, workspace_id: str, spec_root: str, path: str, content: str
    ) -> None:
        root = Path(spec_root)
        target = self._resolve(root, self._external_relative(path))
        await asyncio.to_thread(self._write_file, target, path, content)

    async def list_external_tree(self, workspace_id: str, spec_root: str) -> TreeListing:
        root = Path(spec_root)
        if not root.is_absolute():
            raise SpecRootUnavailableError(f"Spec root must be an absolute path: {spec_root}")
        if not root.is_dir():
            raise SpecRootUnavailableError(f"Spec root does not exist: {spec_root}")
        listing = await asyncio.to_thread(self._walk, root, f"{DEFAULT_SPEC_ROOT}/")
        listing.directories.insert(0, DEFAULT_SPEC_ROOT)
        return listing
