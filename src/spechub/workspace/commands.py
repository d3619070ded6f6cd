from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path

from spechub.models import DEFAULT_SPEC_ROOT
from spechub.workspace.base import (
    CommandResult,
    CommandRunner,
    CommandRunnerError,
    CommandTimeoutError,
    WorkspaceIOError,
)

logger = logging.getLogger(__name__)


class LocalCommandRunner(CommandRunner):
    """Runs commands with ``asyncio`` subprocesses under a workspace root."""

    def __init__(
        self,
        workspaces: Mapping[str, Path],
        *,
        default_timeout_seconds: float = 180.0,
    ) -> None:
        self.workspaces = {key: Path(value).resolve() for key, value in workspaces.items()}
        self.default_timeout_seconds = default_timeout_seconds

    @contextmanager
    def _working_directory(self, workspace_id: str, custom_spec_root: str | None) -> Iterator[Path]:
        if not custom_spec_root:
            root = self.workspaces.get(workspace_id)
            if root is None:
                raise WorkspaceIOError(f"Unknown workspace: {workspace_id}")
            yield root
            return

        spec_root = Path(custom_spec_root)
        if spec_root.name == DEFAULT_SPEC_ROOT:
            yield spec_root.parent
            return

        # The spec CLI only looks for ./openspec, so expose the root under that name.
        with tempfile.TemporaryDirectory(prefix="spechub-root-") as staging:
            staging_path = Path(staging)
            try:
                os.symlink(spec_root, staging_path / DEFAULT_SPEC_ROOT, target_is_directory=True)
            except OSError as exc:
                raise CommandRunnerError(f"Unable to stage spec root {spec_root}: {exc}") from exc
            yield staging_path

    async def run(
        self,
        workspace_id: str,
        argv: Sequence[str],
        *,
        custom_spec_root: str | None = None,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        command = tuple(argv)
        timeout = timeout_seconds if timeout_seconds is not None else self.default_timeout_seconds
        with self._working_directory(workspace_id, custom_spec_root) as cwd:
            logger.debug("Running %s in %s", command, cwd)
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=str(cwd),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as exc:
                raise CommandRunnerError(f"Command not found: {command[0]}") from exc
            except OSError as exc:
                raise CommandRunnerError(f"Unable to start {command[0]}: {exc}") from exc

            try:
                stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
            except TimeoutError as exc:
                process.kill()
                await process.wait()
                raise CommandTimeoutError(
                    f"Command timed out after {timeout:.1f}s: {' '.join(command)}"
                ) from exc

        exit_code = process.returncode if process.returncode is not None else -1
        return CommandResult(
            command=command,
            exit_code=exit_code,
            success=exit_code == 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
