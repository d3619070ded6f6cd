from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from spechub.errors import SpecHubError


class WorkspaceIOError(SpecHubError):
    """Raised when a workspace file or command operation fails."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class SpecRootUnavailableError(WorkspaceIOError):
    """Raised when an external spec root cannot be listed."""


class CommandRunnerError(WorkspaceIOError):
    """Raised when a command process cannot be started."""


class CommandTimeoutError(CommandRunnerError):
    """Raised when a command exceeds its timeout."""


@dataclass(slots=True)
class CommandResult:
    command: tuple[str, ...]
    exit_code: int
    success: bool
    stdout: str = ""
    stderr: str = ""


@dataclass(slots=True)
class FileReadResult:
    content: str
    truncated: bool = False
    exists: bool = True


@dataclass(slots=True)
class TreeListing:
    files: list[str] = field(default_factory=list)
    directories: list[str] = field(default_factory=list)


class CommandRunner(ABC):
    @abstractmethod
    async def run(
        self,
        workspace_id: str,
        argv: Sequence[str],
        *,
        custom_spec_root: str | None = None,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        """Run ``argv`` for a workspace and capture its output."""


class FileStore(ABC):
    @abstractmethod
    async def read(self, workspace_id: str, path: str) -> FileReadResult:
        """Read a workspace relative file."""

    @abstractmethod
    async def write(self, workspace_id: str, path: str, content: str) -> None:
        """Write a workspace relative file, creating parent directories."""

    @abstractmethod
    async def list_tree(self, workspace_id: str) -> TreeListing:
        """List every file and directory of the workspace."""

    @abstractmethod
    async def read_external(self, workspace_id: str, spec_root: str, path: str) -> FileReadResult:
        """Read an ``openspec/...`` path resolved against an external spec root."""

    @abstractmethod
    async def write_external(
        self, workspace_id: str, spec_root: str, path: str, content: str
    ) -> None:
        """Write an ``openspec/...`` path resolved against an external spec root."""

    @abstractmethod
    async def list_external_tree(self, workspace_id: str, spec_root: str) -> TreeListing:
        """List an external spec root, addressing entries as ``openspec/...``."""


class KeyValueStore(ABC):
    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value for ``key``."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Persist ``value`` under ``key``."""
