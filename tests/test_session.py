import asyncio
import json
from typing import Any

from fakes import (
    WORKSPACE_ID,
    FakeDispatcher,
    InMemoryFileStore,
    ScriptedCommandRunner,
    openspec_change_files,
)

from spechub.agents import EventBus
from spechub.config import HubConfig
from spechub.models import ProjectInfo
from spechub.session import (
    NO_WORKSPACE_BLOCKER,
    SpecHubSession,
    mode_store_key,
    spec_root_store_key,
    verify_store_key,
)
from spechub.workspace import MemoryStateStore

VALIDATE = ("openspec", "validate", "c1", "--strict")
INSTRUCTIONS = ("openspec", "instructions", "tasks", "--change", "c1")


class GatedRunner(ScriptedCommandRunner):
    """Holds the next ``node -v`` probe until ``gate`` is set."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.gate: asyncio.Event | None = None
        self.blocked = False

    async def run(self, workspace_id: str, argv, **kwargs: Any):
        if self.gate is not None and tuple(argv) == ("node", "-v") and not self.blocked:
            self.blocked = True
            await self.gate.wait()
        return await super().run(workspace_id, argv, **kwargs)


def _session(
    files: dict[str, str],
    *,
    runner: ScriptedCommandRunner | None = None,
    store: MemoryStateStore | None = None,
    external: dict[str, dict[str, str]] | None = None,
    reply: str = "",
    clock=None,
    config: HubConfig | None = None,
) -> SpecHubSession:
    bus = EventBus()
    kwargs: dict[str, Any] = {}
    if clock is not None:
        kwargs["clock"] = clock
    if config is not None:
        kwargs["config"] = config
    return SpecHubSession(
        WORKSPACE_ID,
        files=InMemoryFileStore(files, external=external),
        commands=runner or ScriptedCommandRunner(),
        dispatcher=FakeDispatcher(bus, reply=reply),
        event_bus=bus,
        store=store or MemoryStateStore(),
        **kwargs,
    )


def _actions(session: SpecHubSession):
    return {action.key: action for action in session.actions}


def test_new_session_has_placeholder_snapshot() -> None:
    session = _session({})

    assert session.snapshot.blockers == [NO_WORKSPACE_BLOCKER]
    assert session.selected_change is None
    assert session.actions == []
    assert session.gate.status == "fail"


def test_refresh_selects_first_change_and_loads_artifacts() -> None:
    files = {
        **openspec_change_files("2024-01-01-older"),
        **openspec_change_files("2024-02-01-newer", tasks="- [x] 1.1 a\n- [ ] 1.2 b [P2]\n"),
    }
    session = _session(files)

    assert asyncio.run(session.refresh()) is True

    assert session.selected_change.id == "2024-02-01-newer"
    tasks = session.artifacts["tasks"]
    assert tasks.exists is True
    assert [item.text for item in tasks.task_checklist] == ["1.1 a", "1.2 b [P2]"]
    assert tasks.task_progress.required_checked == 1
    assert session.artifacts["specs"].sources[0].path.endswith("specs/auth/spec.md")


def test_selection_survives_refresh_and_falls_back_when_removed() -> None:
    files = {**openspec_change_files("a"), **openspec_change_files("b")}
    session = _session(files)

    async def _run() -> None:
        await session.refresh()
        await session.select_change("b")
        await session.refresh(force=True)
        assert session.selected_change.id == "b"
        for path in [path for path in session.files.files if "/changes/b/" in path]:
            del session.files.files[path]
        await session.refresh(force=True, rescan=True)

    asyncio.run(_run())

    assert session.selected_change.id == "a"


def test_silent_refresh_is_debounced() -> None:
    now = [0.0]
    session = _session(openspec_change_files("c1"), clock=lambda: now[0])

    async def _run() -> list[bool]:
        results = [await session.refresh(silent=True)]
        now[0] = 0.5
        results.append(await session.refresh(silent=True))
        results.append(await session.refresh(silent=True, force=True))
        now[0] = 1.0
        results.append(await session.refresh(silent=True))
        return results

    assert asyncio.run(_run()) == [True, False, True, True]
    assert session.files.list_calls == 1


def test_stale_refresh_result_is_discarded() -> None:
    runner = GatedRunner()
    session = _session(openspec_change_files("c1"), runner=runner)

    async def _run() -> tuple[bool, bool]:
        runner.gate = asyncio.Event()
        slow = asyncio.create_task(session.refresh(force=True, rescan=True))
        while not runner.blocked:
            await asyncio.sleep(0)
        session.files.files.update(openspec_change_files("c2"))
        fast = await session.refresh(force=True, rescan=True)
        runner.gate.set()
        return await slow, fast

    slow_result, fast_result = asyncio.run(_run())

    assert fast_result is True
    assert slow_result is False
    assert [change.id for change in session.snapshot.changes] == ["c1", "c2"]


def test_verify_unlocks_archive_and_persists_evidence() -> None:
    store = MemoryStateStore()
    runner = ScriptedCommandRunner(outputs={VALIDATE: "Change 'c1' is valid"})
    files = openspec_change_files("c1", tasks="- [x] 1.1 Build it\n")
    session = _session(files, runner=runner, store=store)

    async def _run():
        await session.refresh()
        before = _actions(session)["archive"]
        event = await session.execute_action("verify")
        return before, event

    before, event = asyncio.run(_run())

    assert before.available is False
    assert before.blockers == ["Strict verify must pass before archive"]
    assert event.kind == "validate" and event.success is True
    assert _actions(session)["archive"].available is True
    assert session.gate.status == "pass"
    persisted = store.get(verify_store_key(WORKSPACE_ID, "openspec", "c1"))
    assert persisted["success"] is True

    reopened = _session(files, runner=runner, store=store)
    asyncio.run(reopened.refresh())
    assert reopened.verify_state.ran is True
    assert _actions(reopened)["archive"].available is True


def test_verify_of_longer_change_id_does_not_count_for_prefix() -> None:
    validate_long = ("openspec", "validate", "add-foo-bar", "--strict")
    runner = ScriptedCommandRunner(outputs={validate_long: "valid"})
    files = {**openspec_change_files("add-foo"), **openspec_change_files("add-foo-bar")}
    session = _session(files, runner=runner)

    async def _run() -> None:
        await session.refresh()
        await session.select_change("add-foo-bar")
        await session.execute_action("verify")
        assert session.last_verify_event is not None
        await session.select_change("add-foo")

    asyncio.run(_run())

    assert session.selected_change.id == "add-foo"
    assert session.last_verify_event is None
    assert session.verify_state.ran is False
    assert _actions(session)["archive"].available is False


def test_archive_waits_for_required_tasks() -> None:
    store = MemoryStateStore(
        {verify_store_key(WORKSPACE_ID, "openspec", "c1"): {"success": True, "at": 1.0}}
    )
    files = openspec_change_files("c1", tasks="- [x] 1.1 a\n- [ ] 1.2 b\n- [ ] 1.3 c [P2]\n")
    session = _session(files, store=store)

    asyncio.run(session.refresh())
    assert _actions(session)["archive"].blockers == ["Required tasks are incomplete"]

    assert asyncio.run(session.update_task_checklist_item(1, True)) is True
    assert _actions(session)["archive"].available is True


def test_preflight_blockers_stop_verify() -> None:
    runner = ScriptedCommandRunner(outputs={VALIDATE: "valid"})
    files = openspec_change_files(
        "c1", delta="## MODIFIED Requirements\n### Requirement: Login\n"
    )
    session = _session(files, runner=runner)

    async def _run():
        await session.refresh()
        return await session.execute_action("verify")

    assert asyncio.run(_run()) is None
    assert session.action_error == (
        "Archive preflight failed: delta MODIFIED requires existing openspec/specs/auth/spec.md"
    )
    assert VALIDATE not in runner.commands()
    assert session.last_preflight.hints


def test_failed_verify_surfaces_validation_issues() -> None:
    runner = ScriptedCommandRunner(failures={VALIDATE: "ERROR spec.md missing scenario"})
    session = _session(openspec_change_files("c1"), runner=runner)

    async def _run():
        await session.refresh()
        return await session.execute_action("verify")

    event = asyncio.run(_run())

    assert event.success is False
    assert session.validation_issues[0].target == "spec.md"
    assert session.gate.status == "fail"


def test_unavailable_action_is_not_run() -> None:
    runner = ScriptedCommandRunner()
    session = _session(openspec_change_files("c1"), runner=runner)

    async def _run():
        await session.refresh()
        return await session.execute_action("archive")

    assert asyncio.run(_run()) is None
    openspec_calls = [command for command in runner.commands() if command[0] == "openspec"]
    assert openspec_calls == [("openspec", "--version")]


def test_scopes_are_isolated_per_provider() -> None:
    runner = ScriptedCommandRunner(outputs={VALIDATE: "valid"})
    external = {"/srv/empty": {"openspec/README.md": "notes\n"}}
    store = MemoryStateStore()
    session = _session(openspec_change_files("c1"), runner=runner, external=external, store=store)

    async def _run() -> None:
        await session.refresh()
        await session.execute_action("verify")
        assert len(session.timeline) == 1

        await session.set_custom_spec_root("file:///srv/empty")
        assert session.snapshot.provider == "unknown"
        assert len(session.timeline) == 0
        assert session.apply_execution.status == "idle"
        assert session.selected_change is None
        assert store.get(spec_root_store_key(WORKSPACE_ID)) == "/srv/empty"

        await session.set_custom_spec_root(None)

    asyncio.run(_run())

    assert session.snapshot.provider == "openspec"
    assert len(session.timeline) == 1
    assert session.selected_change.id == "c1"
    assert store.get(spec_root_store_key(WORKSPACE_ID)) == ""


def test_custom_spec_root_is_restored_from_store() -> None:
    external = {"/srv/specs": openspec_change_files("ext")}
    store = MemoryStateStore({spec_root_store_key(WORKSPACE_ID): "/srv/specs"})
    session = _session({}, external=external, store=store)

    asyncio.run(session.refresh())

    assert session.custom_spec_root == "/srv/specs"
    assert session.snapshot.spec_root.source == "custom"
    assert session.selected_change.id == "ext"


def test_spec_root_reset_overrides_configured_root() -> None:
    external = {"/srv/specs": openspec_change_files("ext")}
    files = openspec_change_files("local")
    store = MemoryStateStore()
    config = HubConfig.default()
    config.workspace.spec_root = "/srv/specs"
    session = _session(files, external=external, store=store, config=config)
    assert session.custom_spec_root == "/srv/specs"

    asyncio.run(session.set_custom_spec_root(None))
    reopened = _session(files, external=external, store=store, config=config)
    asyncio.run(reopened.refresh())

    assert reopened.custom_spec_root is None
    assert reopened.snapshot.spec_root.source == "default"
    assert reopened.selected_change.id == "local"


def test_speckit_passthrough_runs_without_spec_root() -> None:
    runner = ScriptedCommandRunner(outputs={("specify", "check", "--help"): "usage"})
    session = _session({"specify.md": "# Spec\n"}, runner=runner)

    async def _run():
        await session.refresh()
        assert _actions(session)["verify"].kind == "passthrough"
        return await session.execute_action("verify", ignore_availability=True)

    event = asyncio.run(_run())

    assert event.success is True
    assert event.kind == "action"
    assert session.action_error is None
    assert ("specify", "check", "--help") in runner.commands()


def test_switch_mode_persists_and_rediagnoses() -> None:
    store = MemoryStateStore()
    runner = ScriptedCommandRunner(failures={("openspec", "--version"): ""})
    session = _session(openspec_change_files("c1"), runner=runner, store=store)

    async def _run() -> None:
        await session.refresh()
        assert session.snapshot.environment.mode == "managed"
        await session.switch_mode("byo")

    asyncio.run(_run())

    assert store.get(mode_store_key(WORKSPACE_ID)) == "byo"
    assert session.snapshot.environment.mode == "byo"
    assert session.snapshot.environment.hints[0].startswith("BYO mode:")


def test_task_toggle_writes_file_and_records_event() -> None:
    session = _session(openspec_change_files("c1", tasks="- [ ] 1.1 a\n- [ ] 1.2 b\n"))
    path = "openspec/changes/c1/tasks.md"

    async def _run() -> bool:
        await session.refresh()
        return await session.update_task_checklist_item(1, True)

    assert asyncio.run(_run()) is True

    assert session.files.files[path] == "- [ ] 1.1 a\n- [x] 1.2 b\n"
    event = next(iter(session.timeline))
    assert event.kind == "task-update"
    assert event.command == f"toggle {path} [2] -> checked"
    assert event.output == "Task 2 marked as done."
    assert session.artifacts["tasks"].task_progress.checked == 1


def test_task_toggle_failure_reverts_optimistic_state() -> None:
    session = _session(openspec_change_files("c1", tasks="- [ ] 1.1 a\n"))
    session.files.fail_writes_for.add("openspec/changes/c1/tasks.md")

    async def _run() -> bool:
        await session.refresh()
        return await session.update_task_checklist_item(0, True)

    assert asyncio.run(_run()) is False
    assert session.task_update_error == "Unable to write openspec/changes/c1/tasks.md"
    assert session.artifacts["tasks"].task_checklist[0].checked is False
    assert len(session.timeline) == 0


def test_apply_executes_and_writes_back_tasks() -> None:
    reply = json.dumps(
        {"summary": "Built it.", "changed_files": ["src/app.py"], "completed_task_refs": ["1.1"]}
    )
    runner = ScriptedCommandRunner(outputs={INSTRUCTIONS: "Implement 1.1"})
    session = _session(openspec_change_files("c1"), runner=runner, reply=reply)

    async def _run():
        await session.refresh()
        return await session.execute_action("apply", apply_executor="codex")

    instructions = asyncio.run(_run())

    assert instructions.command == "openspec instructions tasks --change c1"
    state = session.apply_execution
    assert state.status == "success"
    assert state.completed_task_indices == [0]
    assert session.files.files["openspec/changes/c1/tasks.md"] == "- [x] 1.1 Build it\n"
    commands = [event.command for event in session.timeline]
    assert commands[0] == "auto-check c1 (1)"
    assert "Implement 1.1" in session.dispatcher.prompts[0]
    assert session.artifacts["tasks"].task_progress.checked == 1


def test_apply_failure_sets_action_error() -> None:
    runner = ScriptedCommandRunner(failures={INSTRUCTIONS: "openspec exploded"})
    session = _session(openspec_change_files("c1"), runner=runner)

    async def _run():
        await session.refresh()
        return await session.execute_action("apply")

    assert asyncio.run(_run()) is None
    assert session.apply_execution.status == "failed"
    assert session.action_error == "openspec exploded"


def test_bootstrap_and_project_context() -> None:
    runner = ScriptedCommandRunner(
        outputs={("openspec", "init", "--tools", "none", "--force"): "initialized"}
    )
    session = _session({"README.md": "legacy app\n"}, runner=runner)
    info = ProjectInfo(
        project_type="legacy",
        domain="Payments",
        key_commands="make test\nmake lint",
        summary="First pass",
    )

    assert asyncio.run(session.execute_bootstrap(info)) is True

    assert ("openspec", "init", "--tools", "none", "--force") in runner.commands()
    assert session.snapshot.provider == "openspec"
    loaded = asyncio.run(session.load_project_info())
    assert loaded.project_type == "legacy"
    assert loaded.domain == "Payments"
    assert loaded.key_commands == "make test\nmake lint"
    assert loaded.architecture == ""


def test_bootstrap_failure_reports_output() -> None:
    runner = ScriptedCommandRunner(
        failures={("openspec", "init", "--tools", "none"): "permission denied"}
    )
    session = _session({}, runner=runner)

    assert asyncio.run(session.execute_bootstrap(ProjectInfo())) is False
    assert session.bootstrap_error == "permission denied"
    assert "openspec/project.md" not in session.files.files


def test_persist_project_info_keeps_history() -> None:
    session = _session({})

    async def _run() -> None:
        await session.persist_project_info(ProjectInfo(domain="One", summary="first"))
        await session.persist_project_info(ProjectInfo(domain="Two", summary="second"))

    asyncio.run(_run())

    content = session.files.files["openspec/project.md"]
    history = content.split("## Update History\n", 1)[1]
    assert history.index("second") < history.index("first")
    assert "## Domain\nTwo" in content
    assert session.timeline.first(lambda e: e.command == "write openspec/project.md")
