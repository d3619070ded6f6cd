from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, replace

from spechub.paths import normalize_spec_root_input
from spechub.workspace.base import (
    CommandResult,
    CommandRunner,
    FileReadResult,
    FileStore,
    TreeListing,
    WorkspaceIOError,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkspaceContext:
    """Binds a workspace id and an optional external spec root to its collaborators."""

    workspace_id: str
    files: FileStore
    commands: CommandRunner
    custom_spec_root: str | None = None

    def __post_init__(self) -> None:
        self.custom_spec_root = normalize_spec_root_input(self.custom_spec_root)

    def with_spec_root(self, custom_spec_root: str | None) -> WorkspaceContext:
        return replace(self, custom_spec_root=custom_spec_root)

    async def read(self, path: str) -> FileReadResult:
        if self.custom_spec_root:
            return await self.files.read_external(self.workspace_id, self.custom_spec_root, path)
        return await self.files.read(self.workspace_id, path)

    async def read_optional(self, path: str) -> FileReadResult:
        try:
            return await self.read(path)
        except WorkspaceIOError as exc:
            logger.debug("Unable to read %s: %s", path, exc)
            return FileReadResult(content="", truncated=False, exists=False)

    async def write(self, path: str, content: str) -> None:
        if self.custom_spec_root:
            await self.files.write_external(
                self.workspace_id, self.custom_spec_root, path, content
            )
            return
        await self.files.write(self.workspace_id, path, content)

    async def list_tree(self) -> TreeListing:
        if self.custom_spec_root:
            return await self.files.list_external_tree(self.workspace_id, self.custom_spec_root)
        return await self.files.list_tree(self.workspace_id)

    async def run(
        self,
        argv: Sequence[str],
        *,
        timeout_seconds: float | None = None,
        use_spec_root: bool = True,
    ) -> CommandResult:
        return await self.commands.run(
            self.workspace_id,
            argv,
            custom_spec_root=self.custom_spec_root if use_spec_root else None,
            timeout_seconds=timeout_seconds,
        )
