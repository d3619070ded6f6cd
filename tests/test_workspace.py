import asyncio
import json
from pathlib import Path

import pytest

from spechub.workspace import (
    CommandRunnerError,
    CommandTimeoutError,
    JsonStateStore,
    LocalCommandRunner,
    LocalFileStore,
    MemoryStateStore,
    SpecRootUnavailableError,
    StateStoreError,
    WorkspaceContext,
    WorkspaceIOError,
)
from spechub.workspace import commands as commands_module


class FakeProcess:
    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", code: int = 0, delay: float = 0):
        self._stdout = stdout
        self._stderr = stderr
        self._delay = delay
        self.returncode: int | None = None
        self._code = code
        self.killed = False

    async def communicate(self) -> tuple[bytes, bytes]:
        if self._delay:
            await asyncio.sleep(self._delay)
        self.returncode = self._code
        return self._stdout, self._stderr

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    async def wait(self) -> int:
        return self.returncode


def test_json_state_store_envelope_and_revision(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path / ".spechub" / "state.json")

    assert store.get("specHub.mode.ws-1") is None
    store.set("specHub.mode.ws-1", "byo")
    store.set("specHub.verify.ws-1:openspec.c1", {"success": True, "at": 1.0})

    envelope = json.loads(store.path.read_text(encoding="utf-8"))
    assert envelope["schema_version"] == JsonStateStore.SCHEMA_VERSION
    assert envelope["revision"] == 3
    assert envelope["data"]["specHub.mode.ws-1"] == "byo"
    assert store.get("specHub.verify.ws-1:openspec.c1") == {"success": True, "at": 1.0}

    store.set("specHub.mode.ws-1", None)
    assert store.get("specHub.mode.ws-1", "managed") == "managed"
    assert not store.lock_file.exists()


def test_json_state_store_ignores_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")
    store = JsonStateStore(path)

    assert store.get_envelope()["data"] == {}
    store.set("key", 1)
    assert store.get("key") == 1


def test_json_state_store_lock_timeout(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path / "state.json", lock_timeout_seconds=0.05)
    store.lock_file.write_text("999", encoding="utf-8")

    with pytest.raises(StateStoreError, match="Timed out waiting for state lock."):
        store.set("key", 1)


def test_memory_state_store_set_none_deletes() -> None:
    store = MemoryStateStore({"a": 1})

    store.set("b", 2)
    store.set("a", None)

    assert store.data == {"b": 2}


def test_local_file_store_roundtrip_and_listing(tmp_path: Path) -> None:
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("ref", encoding="utf-8")
    files = LocalFileStore({"ws": tmp_path}, max_bytes=8)

    async def _run():
        await files.write("ws", "openspec/changes/c1/tasks.md", "- [ ] one\n")
        read = await files.read("ws", "openspec/changes/c1/tasks.md")
        missing = await files.read("ws", "openspec/absent.md")
        listing = await files.list_tree("ws")
        return read, missing, listing

    read, missing, listing = asyncio.run(_run())

    assert read.content == "- [ ] on"
    assert read.truncated is True
    assert missing.exists is False
    assert listing.files == ["openspec/changes/c1/tasks.md"]
    assert listing.directories == ["openspec", "openspec/changes", "openspec/changes/c1"]


def test_local_file_store_rejects_escaping_paths(tmp_path: Path) -> None:
    files = LocalFileStore({"ws": tmp_path})

    with pytest.raises(WorkspaceIOError, match="Path escapes workspace root"):
        asyncio.run(files.read("ws", "../secret.txt"))
    with pytest.raises(WorkspaceIOError, match="Unknown workspace"):
        asyncio.run(files.list_tree("other"))


def test_external_root_is_addressed_as_openspec(tmp_path: Path) -> None:
    root = tmp_path / "specs"
    (root / "changes" / "c1").mkdir(parents=True)
    (root / "changes" / "c1" / "proposal.md").write_text("# P\n", encoding="utf-8")
    ctx = WorkspaceContext("ws", LocalFileStore({"ws": tmp_path / "repo"}), None, f"file://{root}")

    async def _run():
        listing = await ctx.list_tree()
        read = await ctx.read("openspec/changes/c1/proposal.md")
        await ctx.write("openspec/project.md", "# Project\n")
        return listing, read

    listing, read = asyncio.run(_run())

    assert ctx.custom_spec_root == str(root)
    assert listing.directories[0] == "openspec"
    assert "openspec/changes/c1/proposal.md" in listing.files
    assert read.content == "# P\n"
    assert (root / "project.md").read_text(encoding="utf-8") == "# Project\n"


def test_external_root_must_exist(tmp_path: Path) -> None:
    files = LocalFileStore({"ws": tmp_path})

    with pytest.raises(SpecRootUnavailableError, match="does not exist"):
        asyncio.run(files.list_external_tree("ws", str(tmp_path / "missing")))
    with pytest.raises(SpecRootUnavailableError, match="absolute path"):
        asyncio.run(files.list_external_tree("ws", "relative/specs"))


def test_command_runner_captures_output(monkeypatch, tmp_path: Path) -> None:
    seen: dict = {}

    async def fake_exec(*args, **kwargs):
        seen["args"] = args
        seen["cwd"] = kwargs["cwd"]
        return FakeProcess(stdout=b"openspec 0.9.2\n", stderr=b"warn", code=0)

    monkeypatch.setattr(commands_module.asyncio, "create_subprocess_exec", fake_exec)
    runner = LocalCommandRunner({"ws": tmp_path})

    result = asyncio.run(runner.run("ws", ["openspec", "--version"]))

    assert seen["args"] == ("openspec", "--version")
    assert seen["cwd"] == str(tmp_path.resolve())
    assert result.success is True
    assert result.stdout == "openspec 0.9.2\n"
    assert result.stderr == "warn"


def test_command_runner_stages_custom_spec_root(monkeypatch, tmp_path: Path) -> None:
    external = tmp_path / "shared-specs"
    external.mkdir()
    seen: dict = {}

    async def fake_exec(*args, **kwargs):
        staged = Path(kwargs["cwd"]) / "openspec"
        seen["link"] = staged.resolve()
        return FakeProcess(code=2)

    monkeypatch.setattr(commands_module.asyncio, "create_subprocess_exec", fake_exec)
    runner = LocalCommandRunner({"ws": tmp_path})

    result = asyncio.run(
        runner.run("ws", ["openspec", "validate", "c1"], custom_spec_root=str(external))
    )

    assert seen["link"] == external.resolve()
    assert result.exit_code == 2
    assert result.success is False


def test_command_runner_missing_binary_and_timeout(monkeypatch, tmp_path: Path) -> None:
    async def missing(*args, **kwargs):
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(commands_module.asyncio, "create_subprocess_exec", missing)
    runner = LocalCommandRunner({"ws": tmp_path})
    with pytest.raises(CommandRunnerError, match="Command not found: openspec"):
        asyncio.run(runner.run("ws", ["openspec", "--version"]))

    process = FakeProcess(delay=1.0)

    async def slow(*args, **kwargs):
        return process

    monkeypatch.setattr(commands_module.asyncio, "create_subprocess_exec", slow)
    with pytest.raises(CommandTimeoutError, match="timed out after 0.2s"):
        asyncio.run(runner.run("ws", ["openspec", "archive", "c1"], timeout_seconds=0.2))
    assert process.killed is True


def test_command_runner_reports_unstageable_spec_root(monkeypatch, tmp_path: Path) -> None:
    external = tmp_path / "shared-specs"
    external.mkdir()
    spawned: list[tuple] = []

    def refuse_symlink(*args, **kwargs):
        raise PermissionError("symlinks are not permitted")

    async def fake_exec(*args, **kwargs):
        spawned.append(args)
        return FakeProcess()

    monkeypatch.setattr(commands_module.os, "symlink", refuse_symlink)
    monkeypatch.setattr(commands_module.asyncio, "create_subprocess_exec", fake_exec)
    runner = LocalCommandRunner({"ws": tmp_path})

    with pytest.raises(CommandRunnerError, match="Unable to stage spec root") as excinfo:
        asyncio.run(runner.run("ws", ["openspec", "list"], custom_spec_root=str(external)))

    assert "symlinks are not permitted" in str(excinfo.value)
    assert spawned == []
