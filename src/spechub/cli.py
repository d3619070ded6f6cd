from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import click

from spechub.agents import (
    AgentDispatcher,
    CliAgentDispatcher,
    EventBus,
    ResponsesAgentDispatcher,
)
from spechub.config import DEFAULT_CONFIG_FILENAME, HubConfig, load_config, save_config
from spechub.errors import SpecHubError
from spechub.models import ContinueBrief, ProjectInfo
from spechub.session import SpecHubSession
from spechub.workspace import JsonStateStore, LocalCommandRunner, LocalFileStore

APPLY_EXECUTORS = ["codex", "claude", "opencode"]


def configure_logging(level: str) -> None:
    """Configure root logging for the spec hub CLI."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


@dataclass(slots=True)
class Runtime:
    base_dir: Path
    config_path: Path
    config: HubConfig
    workspace_root: Path
    event_bus: EventBus
    dispatcher: AgentDispatcher
    session: SpecHubSession


def _resolve_config_path(base_dir: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = base_dir / config_path
    return config_path.resolve()


def _build_dispatcher(
    config: HubConfig, event_bus: EventBus, workspaces: dict[str, Path]
) -> AgentDispatcher:
    if config.agents.dispatcher == "responses":
        if config.agents.model:
            return ResponsesAgentDispatcher(model=config.agents.model)
        return ResponsesAgentDispatcher()
    return CliAgentDispatcher(
        event_bus,
        workspaces,
        binaries=config.agents.binaries(),
        model=config.agents.model or None,
        heartbeat_seconds=config.agents.heartbeat_seconds,
    )


def _load_runtime(base_dir: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    configure_logging(config.logging.level)
    workspace_root = config.workspace_root(base_dir)
    workspaces = {config.workspace.id: workspace_root}
    event_bus = EventBus()
    dispatcher = _build_dispatcher(config, event_bus, workspaces)
    session = SpecHubSession(
        config.workspace.id,
        files=LocalFileStore(workspaces, max_bytes=config.workspace.max_file_bytes),
        commands=LocalCommandRunner(
            workspaces, default_timeout_seconds=config.commands.action_timeout_seconds
        ),
        dispatcher=dispatcher,
        event_bus=event_bus,
        store=JsonStateStore(config.state_path(workspace_root)),
        config=config,
    )
    return Runtime(
        base_dir=base_dir,
        config_path=config_path,
        config=config,
        workspace_root=workspace_root,
        event_bus=event_bus,
        dispatcher=dispatcher,
        session=session,
    )


def _runtime(config_value: str) -> Runtime:
    base_dir = Path.cwd().resolve()
    return _load_runtime(base_dir, _resolve_config_path(base_dir, config_value))


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except SpecHubError as exc:
        raise click.ClickException(str(exc)) from exc


async def _open_change(session: SpecHubSession, change_id: str) -> None:
    await session.refresh(force=True, rescan=True)
    if session.snapshot.find_change(change_id) is None:
        raise click.ClickException(f"Change not found: {change_id}")
    await session.select_change(change_id)


def _session_payload(session: SpecHubSession) -> dict[str, Any]:
    change = session.selected_change
    return {
        "snapshot": session.snapshot.to_dict(),
        "selected_change": change.id if change else None,
        "actions": [asdict(action) for action in session.actions],
        "gate": asdict(session.gate),
    }


config_option = click.option(
    "--config", "config_value", default=DEFAULT_CONFIG_FILENAME, show_default=True
)


@click.group()
def cli() -> None:
    """Spec Hub CLI."""


@cli.command("init")
@click.option("--workspace-id", default=None)
@click.option("--spec-root", default=None)
@click.option("--dispatcher", type=click.Choice(["cli", "responses"]), default=None)
@config_option
def init_command(
    workspace_id: str | None, spec_root: str | None, dispatcher: str | None, config_value: str
) -> None:
    base_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(base_dir, config_value)
    config = load_config(config_path)
    if workspace_id:
        config.workspace.id = workspace_id
    if spec_root is not None:
        config.workspace.spec_root = spec_root
    if dispatcher:
        config.agents.dispatcher = dispatcher  # type: ignore[assignment]
    save_config(config_path, config)
    config.state_path(config.workspace_root(base_dir)).parent.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Spec Hub in {config.workspace_root(base_dir)}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Workspace: {config.workspace.id}")
    click.echo(f"Dispatcher: {config.agents.dispatcher}")


@cli.command("status")
@config_option
def status_command(config_value: str) -> None:
    runtime = _runtime(config_value)

    async def _status() -> dict[str, Any]:
        await runtime.session.refresh(force=True, rescan=True)
        return _session_payload(runtime.session)

    _echo_json(_run(_status()))


@cli.command("doctor")
@config_option
def doctor_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    _run(runtime.session.refresh(force=True, rescan=True))
    environment = runtime.session.snapshot.environment
    _echo_json(asdict(environment))
    if environment.status == "blocked":
        raise click.ClickException("Environment is blocked.")


@cli.command("show")
@click.argument("change_id")
@config_option
def show_command(change_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    session = runtime.session

    async def _show() -> dict[str, Any]:
        await _open_change(session, change_id)
        tasks = session.artifacts["tasks"]
        return {
            **_session_payload(session),
            "artifacts": {
                key: {"path": entry.path, "exists": entry.exists, "truncated": entry.truncated}
                for key, entry in session.artifacts.items()
            },
            "tasks": [asdict(item) for item in tasks.task_checklist],
            "task_progress": asdict(tasks.task_progress) if tasks.task_progress else None,
        }

    _echo_json(_run(_show()))


@cli.command("preflight")
@click.argument("change_id")
@config_option
def preflight_command(change_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    result = _run(runtime.session.run_preflight(change_id))
    _echo_json(asdict(result))
    if result.blockers:
        raise click.ClickException(f"{len(result.blockers)} preflight blocker(s).")


@cli.command("run")
@click.argument("action", type=click.Choice(["continue", "verify", "archive"]))
@click.argument("change_id")
@click.option("--force", is_flag=True, default=False, help="Ignore action availability.")
@config_option
def run_command(action: str, change_id: str, force: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    session = runtime.session

    async def _execute() -> Any:
        await _open_change(session, change_id)
        return await session.execute_action(
            action,  # type: ignore[arg-type]
            ignore_availability=force,
        )

    event = _run(_execute())
    if event is None:
        blockers = next((a.blockers for a in session.actions if a.key == action), [])
        raise click.ClickException(
            session.action_error or "; ".join(blockers) or f"{action} is unavailable."
        )
    _echo_json(asdict(event))
    if not event.success:
        raise click.ClickException(f"{action} failed.")


@cli.command("apply")
@click.argument("change_id")
@click.option("--executor", type=click.Choice(APPLY_EXECUTORS), default=None)
@click.option("--mode", type=click.Choice(["execute", "guidance"]), default="execute")
@click.option("--brief", "brief_path", type=click.Path(exists=True, dir_okay=False), default=None)
@click.option("--force", is_flag=True, default=False, help="Ignore action availability.")
@config_option
def apply_command(
    change_id: str,
    executor: str | None,
    mode: str,
    brief_path: str | None,
    force: bool,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    session = runtime.session
    brief = None
    if brief_path:
        data = json.loads(Path(brief_path).read_text(encoding="utf-8"))
        brief = ContinueBrief(**data)

    async def _apply() -> None:
        await _open_change(session, change_id)
        await session.execute_action(
            "apply",
            apply_mode=mode,  # type: ignore[arg-type]
            apply_executor=executor,  # type: ignore[arg-type]
            continue_brief=brief,
            ignore_availability=force,
        )

    _run(_apply())
    state = session.apply_execution
    for line in state.logs:
        click.echo(line, err=True)
    if state.status == "idle":
        raise click.ClickException(session.action_error or "apply is unavailable.")
    _echo_json(asdict(state))
    if state.status == "failed":
        raise click.ClickException(state.error or "Apply failed.")


@cli.command("task")
@click.argument("change_id")
@click.argument("index", type=int)
@click.option("--check/--uncheck", "checked", default=True)
@config_option
def task_command(change_id: str, index: int, checked: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    session = runtime.session

    async def _toggle() -> bool:
        await _open_change(session, change_id)
        return await session.update_task_checklist_item(index, checked)

    if not _run(_toggle()):
        raise click.ClickException(session.task_update_error or "Task update failed.")
    progress = session.artifacts["tasks"].task_progress
    click.echo(
        f"Task {index + 1} marked as {'done' if checked else 'pending'} "
        f"({progress.checked if progress else 0}/{progress.total if progress else 0})."
    )


@cli.command("bootstrap")
@click.option("--legacy", is_flag=True, default=False)
@click.option("--domain", default="")
@click.option("--architecture", default="")
@click.option("--constraints", default="")
@click.option("--key-commands", default="")
@click.option("--owners", default="")
@click.option("--summary", default="")
@config_option
def bootstrap_command(
    legacy: bool,
    domain: str,
    architecture: str,
    constraints: str,
    key_commands: str,
    owners: str,
    summary: str,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    info = ProjectInfo(
        project_type="legacy" if legacy else "new",
        domain=domain,
        architecture=architecture,
        constraints=constraints,
        key_commands=key_commands,
        owners=owners,
        summary=summary,
    )
    if not _run(runtime.session.execute_bootstrap(info)):
        raise click.ClickException(runtime.session.bootstrap_error or "OpenSpec bootstrap failed")
    click.echo("OpenSpec workspace initialized.")


@cli.command("project")
@click.option("--save", "save_path", type=click.Path(exists=True, dir_okay=False), default=None)
@config_option
def project_command(save_path: str | None, config_value: str) -> None:
    """Show the project context, or save one from a JSON file."""
    runtime = _runtime(config_value)
    if save_path:
        data = json.loads(Path(save_path).read_text(encoding="utf-8"))
        if not _run(runtime.session.persist_project_info(ProjectInfo(**data))):
            raise click.ClickException(runtime.session.project_info_error or "Save failed.")
        click.echo("Project context saved.")
        return
    info = _run(runtime.session.load_project_info())
    if info is None:
        click.echo("No project context found.")
        return
    _echo_json(asdict(info))


@cli.command("mode")
@click.argument("mode", type=click.Choice(["managed", "byo"]))
@config_option
def mode_command(mode: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _run(runtime.session.switch_mode(mode))  # type: ignore[arg-type]
    click.echo(f"Environment mode set to {mode}")


@cli.command("spec-root")
@click.argument("path", required=False)
@click.option("--reset", is_flag=True, default=False)
@config_option
def spec_root_command(path: str | None, reset: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    session = runtime.session
    if path is None and not reset:
        click.echo(session.custom_spec_root or "default")
        return
    _run(session.set_custom_spec_root(None if reset else path))
    click.echo(f"Spec root: {session.custom_spec_root or 'default'}")
    for blocker in session.snapshot.blockers:
        click.echo(f"- {blocker}", err=True)
