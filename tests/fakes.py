import asyncio
from collections.abc import Callable, Sequence
from typing import Any

from spechub.agents import AgentDispatcher, AgentRequest, EventBus
from spechub.workspace import (
    CommandResult,
    CommandRunner,
    FileReadResult,
    FileStore,
    SpecRootUnavailableError,
    TreeListing,
    WorkspaceIOError,
)

WORKSPACE_ID = "ws-1"

HEALTHY_PROBES: dict[tuple[str, ...], str] = {
    ("node", "-v"): "v20.11.0",
    ("openspec", "--version"): "openspec 0.9.2",
    ("specify", "--version"): "specify 0.0.20",
}


def _tree(paths: Sequence[str]) -> TreeListing:
    directories: set[str] = set()
    for path in paths:
        parts = path.split("/")[:-1]
        for depth in range(1, len(parts) + 1):
            directories.add("/".join(parts[:depth]))
    return TreeListing(files=sorted(paths), directories=sorted(directories))


class InMemoryFileStore(FileStore):
    def __init__(
        self,
        files: dict[str, str] | None = None,
        *,
        external: dict[str, dict[str, str]] | None = None,
    ) -> None:
        self.files: dict[str, str] = dict(files or {})
        self.external: dict[str, dict[str, str]] = {
            root: dict(tree) for root, tree in (external or {}).items()
        }
        self.writes: list[tuple[str, str]] = []
        self.list_calls = 0
        self.fail_writes_for: set[str] = set()

    async def read(self, workspace_id: str, path: str) -> FileReadResult:
        if path not in self.files:
            return FileReadResult(content="", exists=False)
        return FileReadResult(content=self.files[path])

    async def write(self, workspace_id: str, path: str, content: str) -> None:
        if path in self.fail_writes_for:
            raise WorkspaceIOError(f"Unable to write {path}", path=path)
        self.writes.append((path, content))
        self.files[path] = content

    async def list_tree(self, workspace_id: str) -> TreeListing:
        self.list_calls += 1
        return _tree(list(self.files))

    def _external_tree(self, spec_root: str) -> dict[str, str]:
        tree = self.external.get(spec_root)
        if tree is None:
            raise SpecRootUnavailableError(f"Spec root not found: {spec_root}", path=spec_root)
        return tree

    async def read_external(self, workspace_id: str, spec_root: str, path: str) -> FileReadResult:
        tree = self._external_tree(spec_root)
        if path not in tree:
            return FileReadResult(content="", exists=False)
        return FileReadResult(content=tree[path])

    async def write_external(
        self, workspace_id: str, spec_root: str, path: str, content: str
    ) -> None:
        self._external_tree(spec_root)[path] = content
        self.writes.append((f"{spec_root}:{path}", content))

    async def list_external_tree(self, workspace_id: str, spec_root: str) -> TreeListing:
        return _tree(list(self._external_tree(spec_root)))


CommandHandler = Callable[[tuple[str, ...]], CommandResult | None]


class ScriptedCommandRunner(CommandRunner):
    """Answers known argv tuples; unknown commands exit 127."""

    def __init__(
        self,
        outputs: dict[tuple[str, ...], str] | None = None,
        *,
        failures: dict[tuple[str, ...], str] | None = None,
        handler: CommandHandler | None = None,
    ) -> None:
        self.outputs = {**HEALTHY_PROBES, **(outputs or {})}
        self.failures = dict(failures or {})
        self.handler = handler
        self.calls: list[tuple[tuple[str, ...], str | None]] = []

    async def run(
        self,
        workspace_id: str,
        argv: Sequence[str],
        *,
        custom_spec_root: str | None = None,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        command = tuple(argv)
        self.calls.append((command, custom_spec_root))
        if self.handler is not None:
            handled = self.handler(command)
            if handled is not None:
                return handled
        if command in self.failures:
            return CommandResult(
                command=command, exit_code=1, success=False, stderr=self.failures[command]
            )
        if command in self.outputs:
            return CommandResult(
                command=command, exit_code=0, success=True, stdout=self.outputs[command]
            )
        return CommandResult(
            command=command, exit_code=127, success=False, stderr=f"{command[0]}: not found"
        )

    def commands(self) -> list[tuple[str, ...]]:
        return [command for command, _ in self.calls]


class FakeDispatcher(AgentDispatcher):
    """Replies to agent turns by publishing a scripted event sequence on the bus.

    ``script`` receives the thread id and returns ``(method, params)`` pairs.
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        workspace_id: str = WORKSPACE_ID,
        reply: str = "",
        script: Callable[[str], list[tuple[str, dict[str, Any]]]] | None = None,
        thread_ids: bool = True,
        sync_reply: str | None = None,
        sync_delay: float = 0.0,
        sync_error: Exception | None = None,
    ) -> None:
        self.bus = bus
        self.workspace_id = workspace_id
        self.reply = reply
        self.script = script
        self.thread_ids = thread_ids
        self.sync_reply = sync_reply if sync_reply is not None else reply
        self.sync_delay = sync_delay
        self.sync_error = sync_error
        self.requests: list[AgentRequest] = []
        self.prompts: list[str] = []

    def _default_script(self, thread_id: str) -> list[tuple[str, dict[str, Any]]]:
        return [
            ("item/agentMessage/delta", {"threadId": thread_id, "delta": self.reply}),
            ("turn/completed", {"threadId": thread_id}),
        ]

    def _play(self, thread_id: str) -> None:
        events = self.script(thread_id) if self.script else self._default_script(thread_id)

        async def publish() -> None:
            await asyncio.sleep(0)
            for method, params in events:
                self.bus.emit(self.workspace_id, method, params)

        asyncio.get_running_loop().create_task(publish())

    async def start_thread(self, workspace_id: str) -> dict[str, Any]:
        if not self.thread_ids:
            return {}
        return {"result": {"thread": {"id": "codex-thread-1"}}}

    async def send_user_message(
        self,
        workspace_id: str,
        thread_id: str,
        text: str,
        *,
        access_mode: str = "full-access",
        custom_spec_root: str | None = None,
    ) -> dict[str, Any]:
        self.prompts.append(text)
        self._play(thread_id)
        return {"result": {"threadId": thread_id}}

    async def send_message(self, workspace_id: str, request: AgentRequest) -> dict[str, Any]:
        self.requests.append(request)
        self.prompts.append(request.text)
        if not self.thread_ids:
            return {}
        thread_id = f"{request.engine}-pending-abc123"
        self._play(thread_id)
        return {"threadId": thread_id}

    async def send_message_sync(self, workspace_id: str, request: AgentRequest) -> dict[str, Any]:
        self.requests.append(request)
        self.prompts.append(request.text)
        if self.sync_delay:
            await asyncio.sleep(self.sync_delay)
        if self.sync_error is not None:
            raise self.sync_error
        return {"text": self.sync_reply, "engine": request.engine}


def openspec_change_files(
    change_id: str,
    *,
    tasks: str = "- [ ] 1.1 Build it\n",
    delta: str = "## ADDED Requirements\n### Requirement: Login\nUsers log in.\n",
    capability: str = "auth",
    with_verification: bool = False,
) -> dict[str, str]:
    base = f"openspec/changes/{change_id}"
    files = {
        f"{base}/proposal.md": "# Proposal\n",
        f"{base}/design.md": "# Design\n",
        f"{base}/tasks.md": tasks,
        f"{base}/specs/{capability}/spec.md": delta,
    }
    if with_verification:
        files[f"{base}/verification.md"] = "# Verification\n"
    return files
