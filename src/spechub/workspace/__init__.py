from spechub.workspace.base import (
    CommandResult,
    CommandRunner,
    CommandRunnerError,
    CommandTimeoutError,
    FileReadResult,
    FileStore,
    KeyValueStore,
    SpecRootUnavailableError,
    TreeListing,
    WorkspaceIOError,
)
from spechub.workspace.commands import LocalCommandRunner
from spechub.workspace.context import WorkspaceContext
from spechub.workspace.files import LocalFileStore
from spechub.workspace.store import JsonStateStore, MemoryStateStore, StateStoreError

__all__ = [
    "CommandResult",
    "CommandRunner",
    "CommandRunnerError",
    "CommandTimeoutError",
    "FileReadResult",
    "FileStore",
    "JsonStateStore",
    "KeyValueStore",
    "LocalCommandRunner",
    "LocalFileStore",
    "MemoryStateStore",
    "SpecRootUnavailableError",
    "StateStoreError",
    "TreeListing",
    "WorkspaceContext",
    "WorkspaceIOError",
]
