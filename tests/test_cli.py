import json
from pathlib import Path

from click.testing import CliRunner
from fakes import HEALTHY_PROBES, openspec_change_files

from spechub.cli import cli
from spechub.config import load_config
from spechub.session import mode_store_key
from spechub.workspace import JsonStateStore
from spechub.workspace import commands as commands_module


class FakeProcess:
    def __init__(self, stdout: str, code: int = 0) -> None:
        self._stdout = stdout.encode("utf-8")
        self.returncode: int | None = None
        self._code = code

    async def communicate(self) -> tuple[bytes, bytes]:
        self.returncode = self._code
        return self._stdout, b""


def _workspace(
    tmp_path: Path, monkeypatch, files: dict[str, str], outputs: dict | None = None
) -> list[tuple[str, ...]]:
    for relative, content in files.items():
        target = tmp_path / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    known = {**HEALTHY_PROBES, **(outputs or {})}
    calls: list[tuple[str, ...]] = []

    async def fake_exec(*args, **kwargs):
        calls.append(args)
        if args not in known:
            raise FileNotFoundError(args[0])
        return FakeProcess(known[args])

    monkeypatch.setattr(commands_module.asyncio, "create_subprocess_exec", fake_exec)
    result = CliRunner().invoke(cli, ["init", "--workspace-id", "ws-cli"])
    assert result.exit_code == 0, result.output
    return calls


def test_init_writes_config(tmp_path: Path, monkeypatch) -> None:
    _workspace(tmp_path, monkeypatch, {})

    config = load_config(tmp_path / "spechub.toml")

    assert config.workspace.id == "ws-cli"
    assert (tmp_path / ".spechub").is_dir()

    result = CliRunner().invoke(cli, ["init", "--dispatcher", "responses"])
    assert result.exit_code == 0
    assert "Workspace: ws-cli" in result.output
    assert "Dispatcher: responses" in result.output


def test_status_reports_snapshot_and_actions(tmp_path: Path, monkeypatch) -> None:
    _workspace(tmp_path, monkeypatch, openspec_change_files("c1"))

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["snapshot"]["provider"] == "openspec"
    assert payload["selected_change"] == "c1"
    available = {action["key"]: action["available"] for action in payload["actions"]}
    assert available == {"continue": True, "apply": True, "verify": True, "archive": False}


def test_show_lists_tasks_and_rejects_unknown_change(tmp_path: Path, monkeypatch) -> None:
    _workspace(tmp_path, monkeypatch, openspec_change_files("c1", tasks="- [ ] 1.1 a [P1]\n"))

    result = CliRunner().invoke(cli, ["show", "c1"])
    missing = CliRunner().invoke(cli, ["show", "zz"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["tasks"][0]["text"] == "1.1 a [P1]"
    assert payload["tasks"][0]["priority"] == "P1"
    assert payload["artifacts"]["design"]["exists"] is True
    assert missing.exit_code == 1
    assert "Change not found: zz" in missing.output


def test_task_toggle_updates_file(tmp_path: Path, monkeypatch) -> None:
    _workspace(tmp_path, monkeypatch, openspec_change_files("c1"))

    result = CliRunner().invoke(cli, ["task", "c1", "0", "--check"])

    assert result.exit_code == 0, result.output
    assert "Task 1 marked as done (1/1)." in result.output
    tasks = (tmp_path / "openspec/changes/c1/tasks.md").read_text(encoding="utf-8")
    assert tasks == "- [x] 1.1 Build it\n"


def test_run_verify_prints_event(tmp_path: Path, monkeypatch) -> None:
    validate = ("openspec", "validate", "c1", "--strict")
    calls = _workspace(
        tmp_path, monkeypatch, openspec_change_files("c1"), {validate: "Change 'c1' is valid"}
    )

    result = CliRunner().invoke(cli, ["run", "verify", "c1"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["kind"] == "validate"
    assert payload["success"] is True
    assert validate in calls
    state = JsonStateStore(tmp_path / ".spechub/state.json")
    assert state.get("specHub.verify.ws-cli:openspec.c1")["success"] is True


def test_run_archive_reports_blockers(tmp_path: Path, monkeypatch) -> None:
    _workspace(tmp_path, monkeypatch, openspec_change_files("c1"))

    result = CliRunner().invoke(cli, ["run", "archive", "c1"])

    assert result.exit_code == 1
    assert "Strict verify must pass before archive" in result.output


def test_preflight_reports_blockers(tmp_path: Path, monkeypatch) -> None:
    files = openspec_change_files("c1", delta="## REMOVED Requirements\n### Requirement: Old\n")
    _workspace(tmp_path, monkeypatch, files)

    result = CliRunner().invoke(cli, ["preflight", "c1"])

    assert result.exit_code == 1
    assert "1 preflight blocker(s)." in result.output
    assert "requires existing openspec/specs/auth/spec.md" in result.output


def test_mode_is_persisted(tmp_path: Path, monkeypatch) -> None:
    _workspace(tmp_path, monkeypatch, openspec_change_files("c1"))

    result = CliRunner().invoke(cli, ["mode", "byo"])

    assert result.exit_code == 0, result.output
    assert "Environment mode set to byo" in result.output
    state = JsonStateStore(tmp_path / ".spechub/state.json")
    assert state.get(mode_store_key("ws-cli")) == "byo"


def test_spec_root_set_show_and_reset(tmp_path: Path, monkeypatch) -> None:
    external = tmp_path / "shared" / "openspec"
    (external / "changes" / "ext").mkdir(parents=True)
    (external / "changes" / "ext" / "proposal.md").write_text("# P\n", encoding="utf-8")
    _workspace(tmp_path, monkeypatch, {})
    runner = CliRunner()

    before = runner.invoke(cli, ["spec-root"])
    updated = runner.invoke(cli, ["spec-root", f"file://{external}"])
    shown = runner.invoke(cli, ["spec-root"])
    reset = runner.invoke(cli, ["spec-root", "--reset"])

    assert before.output.strip() == "default"
    assert updated.exit_code == 0, updated.output
    assert f"Spec root: {external}" in updated.output
    assert shown.output.strip() == str(external)
    assert "Spec root: default" in reset.output


def test_project_context_save_and_show(tmp_path: Path, monkeypatch) -> None:
    _workspace(tmp_path, monkeypatch, {})
    payload_path = tmp_path / "project.json"
    payload_path.write_text(
        json.dumps({"domain": "Logistics", "key_commands": "make test"}), encoding="utf-8"
    )
    runner = CliRunner()

    empty = runner.invoke(cli, ["project"])
    saved = runner.invoke(cli, ["project", "--save", str(payload_path)])
    shown = runner.invoke(cli, ["project"])

    assert "No project context found." in empty.output
    assert "Project context saved." in saved.output
    info = json.loads(shown.output)
    assert info["domain"] == "Logistics"
    assert info["key_commands"] == "make test"


def test_bootstrap_failure_exits_with_output(tmp_path: Path, monkeypatch) -> None:
    _workspace(tmp_path, monkeypatch, {})

    result = CliRunner().invoke(cli, ["bootstrap", "--legacy"])

    assert result.exit_code == 1
    assert "Command not found: openspec" in result.output
