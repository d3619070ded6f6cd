"""Live spec hub state for one workspace.

:class:`SpecHubSession` owns the current snapshot, the loaded artifacts and
one :class:`ScopeState` per ``<workspace>:<provider>`` scope. Everything the
caller reads (actions, gate, verify evidence) is derived from that state on
access rather than cached.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from spechub.actions import build_actions, build_gate_state, run_action
from spechub.agents.base import AgentDispatcher
from spechub.agents.events import EventBus
from spechub.apply import ApplyOrchestrator
from spechub.artifacts import ArtifactMap, empty_artifacts, load_artifacts, update_task_checklist
from spechub.checklist import summarize_task_progress
from spechub.config import HubConfig
from spechub.errors import SpecHubError
from spechub.models import (
    DEFAULT_SPEC_ROOT,
    ActionKey,
    ApplyExecutionState,
    ApplyExecutor,
    ApplyMode,
    ChangeSummary,
    ContinueBrief,
    EnvironmentHealth,
    EnvironmentMode,
    GateState,
    HubAction,
    PreflightResult,
    ProjectInfo,
    SpecProvider,
    SpecRoot,
    TaskChecklistUpdate,
    TimelineEvent,
    ValidationIssue,
    VerifyState,
    WorkspaceSnapshot,
)
from spechub.paths import normalize_spec_root_input
from spechub.project import (
    PROJECT_INFO_PATH,
    initialize_workspace,
    load_project_info,
    save_project_info,
)
from spechub.requirements import evaluate_change_preflight
from spechub.snapshot import build_workspace_snapshot
from spechub.timeline import Timeline, new_timeline_event
from spechub.workspace.base import (
    CommandRunner,
    FileStore,
    KeyValueStore,
    TreeListing,
    WorkspaceIOError,
)
from spechub.workspace.context import WorkspaceContext

logger = logging.getLogger(__name__)

NO_WORKSPACE_BLOCKER = "No workspace selected."

_UNSET: Any = object()


def provider_scope_key(workspace_id: str, provider: SpecProvider) -> str:
    return f"{workspace_id}:{provider}"


def mode_store_key(workspace_id: str) -> str:
    return f"specHub.mode.{workspace_id}"


def spec_root_store_key(workspace_id: str) -> str:
    return f"specHub.specRoot.{workspace_id}"


def verify_store_key(workspace_id: str, provider: SpecProvider, change_id: str) -> str:
    return f"specHub.verify.{provider_scope_key(workspace_id, provider)}.{change_id}"


def parse_persisted_verify_state(value: Any) -> VerifyState:
    if not isinstance(value, dict) or not isinstance(value.get("success"), bool):
        return VerifyState()
    return VerifyState(ran=True, success=value["success"])


def empty_snapshot() -> WorkspaceSnapshot:
    return WorkspaceSnapshot(
        provider="unknown",
        support_level="none",
        spec_root=SpecRoot(source="default", path=DEFAULT_SPEC_ROOT),
        environment=EnvironmentHealth(
            mode="byo",
            status="degraded",
            blockers=[NO_WORKSPACE_BLOCKER],
            hints=["Select a workspace first."],
        ),
        blockers=[NO_WORKSPACE_BLOCKER],
    )


@dataclass(slots=True)
class ScopeState:
    selected_change_id: str | None = None
    timeline: Timeline = field(default_factory=Timeline)
    apply_execution: ApplyExecutionState = field(default_factory=ApplyExecutionState)


class SpecHubSession:
    def __init__(
        self,
        workspace_id: str,
        *,
        files: FileStore,
        commands: CommandRunner,
        dispatcher: AgentDispatcher,
        event_bus: EventBus,
        store: KeyValueStore,
        config: HubConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.workspace_id = workspace_id
        self.files = files
        self.commands = commands
        self.dispatcher = dispatcher
        self.event_bus = event_bus
        self.store = store
        self.config = config or HubConfig.default()
        self._clock = clock

        stored_mode = store.get(mode_store_key(workspace_id))
        self.mode: EnvironmentMode = (
            stored_mode
            if stored_mode in ("managed", "byo")
            else self.config.workspace.mode or "managed"
        )
        stored_root = store.get(spec_root_store_key(workspace_id))
        self.custom_spec_root = normalize_spec_root_input(
            stored_root if stored_root is not None else self.config.workspace.spec_root
        )

        self.snapshot = empty_snapshot()
        self.artifacts: ArtifactMap = empty_artifacts()
        self.workspace_files: TreeListing | None = None
        self.running_action: ActionKey | None = None
        self.action_error: str | None = None
        self.task_update_error: str | None = None
        self.bootstrap_error: str | None = None
        self.project_info_error: str | None = None
        self.last_preflight: PreflightResult | None = None

        self._scopes: dict[str, ScopeState] = {}
        self._scope_key = provider_scope_key(workspace_id, self.snapshot.provider)
        self.scope = self._scope_for(self._scope_key)
        self._refresh_sequence = 0
        self._artifact_sequence = 0
        self._last_auto_refresh: float | None = None

    # Derived state

    @property
    def ctx(self) -> WorkspaceContext:
        return WorkspaceContext(
            self.workspace_id, self.files, self.commands, self.custom_spec_root
        )

    @property
    def timeline(self) -> Timeline:
        return self.scope.timeline

    @property
    def apply_execution(self) -> ApplyExecutionState:
        return self.scope.apply_execution

    @property
    def selected_change(self) -> ChangeSummary | None:
        return self.snapshot.find_change(self.scope.selected_change_id)

    @property
    def last_verify_event(self) -> TimelineEvent | None:
        change = self.selected_change
        if change is None:
            return None
        return self.timeline.first(
            lambda event: event.kind == "validate" and change.id in event.command.split()
        )

    @property
    def verify_state(self) -> VerifyState:
        event = self.last_verify_event
        if event is not None:
            return VerifyState(ran=True, success=event.success)
        change = self.selected_change
        if change is None:
            return VerifyState()
        key = verify_store_key(self.workspace_id, self.snapshot.provider, change.id)
        return parse_persisted_verify_state(self.store.get(key))

    @property
    def actions(self) -> list[HubAction]:
        change = self.selected_change
        if change is None:
            return []
        return build_actions(
            change,
            self.snapshot.support_level,
            self.snapshot.provider,
            self.snapshot.environment,
            self.verify_state,
            self.artifacts["tasks"].task_progress,
        )

    @property
    def gate(self) -> GateState:
        return build_gate_state(
            self.snapshot,
            self.selected_change,
            self.last_verify_event,
            self.verify_state,
            self.artifacts,
        )

    @property
    def validation_issues(self) -> list[ValidationIssue]:
        event = self.last_verify_event
        return list(event.validation_issues) if event else []

    # Refresh

    def _scope_for(self, key: str) -> ScopeState:
        if key not in self._scopes:
            self._scopes[key] = ScopeState(timeline=Timeline(self.config.session.timeline_limit))
        return self._scopes[key]

    async def _rescan(self) -> TreeListing:
        try:
            self.workspace_files = await self.files.list_tree(self.workspace_id)
        except WorkspaceIOError as exc:
            if self.workspace_files is None:
                raise
            logger.warning("Workspace rescan failed, keeping previous listing: %s", exc)
        return self.workspace_files

    async def refresh(
        self,
        *,
        silent: bool = False,
        force: bool = False,
        rescan: bool = False,
        custom_spec_root: Any = _UNSET,
    ) -> bool:
        """Rebuild the snapshot; returns False when debounced or superseded."""
        if silent and not force:
            now = self._clock()
            debounce = self.config.session.refresh_debounce_seconds
            if self._last_auto_refresh is not None and now - self._last_auto_refresh < debounce:
                return False
            self._last_auto_refresh = now

        self._refresh_sequence += 1
        sequence = self._refresh_sequence

        listing = self.workspace_files
        if rescan or listing is None:
            listing = await self._rescan()
        root = self.custom_spec_root if custom_spec_root is _UNSET else custom_spec_root
        snapshot = await build_workspace_snapshot(
            self.ctx.with_spec_root(root),
            listing.files,
            listing.directories,
            mode=self.mode,
            probe_timeout_seconds=self.config.commands.probe_timeout_seconds,
        )
        if sequence != self._refresh_sequence:
            logger.debug("Discarding stale refresh %s", sequence)
            return False

        previous_selection = self.scope.selected_change_id
        self.snapshot = snapshot
        scope_key = provider_scope_key(self.workspace_id, snapshot.provider)
        if scope_key != self._scope_key:
            self._scope_key = scope_key
            self.scope = self._scope_for(scope_key)

        if snapshot.find_change(previous_selection) is not None:
            selected = previous_selection
        else:
            selected = snapshot.changes[0].id if snapshot.changes else None
        self.scope.selected_change_id = selected
        await self._load_artifacts(snapshot.find_change(selected))
        return sequence == self._refresh_sequence

    async def _load_artifacts(self, change: ChangeSummary | None) -> None:
        self._artifact_sequence += 1
        sequence = self._artifact_sequence
        if change is None:
            self.artifacts = empty_artifacts()
            return
        loaded = await load_artifacts(self.ctx, change)
        if sequence == self._artifact_sequence:
            self.artifacts = loaded

    async def select_change(self, change_id: str) -> None:
        self.scope.selected_change_id = change_id
        await self._load_artifacts(self.snapshot.find_change(change_id))

    async def switch_mode(self, mode: EnvironmentMode) -> None:
        self.mode = mode
        self.store.set(mode_store_key(self.workspace_id), mode)
        await self.refresh(force=True)

    async def set_custom_spec_root(self, value: str | None) -> None:
        normalized = normalize_spec_root_input(value)
        self.custom_spec_root = normalized
        # An empty string records an explicit reset over the configured root.
        self.store.set(spec_root_store_key(self.workspace_id), normalized or "")
        await self.refresh(force=True, custom_spec_root=normalized)

    # Actions

    async def run_preflight(self, change_id: str) -> PreflightResult:
        """Evaluate the archive preflight for a change against a fresh file listing."""
        ctx = self.ctx
        if ctx.custom_spec_root:
            listing = await ctx.list_tree()
        else:
            listing = await self._rescan()
        self.last_preflight = await evaluate_change_preflight(ctx, change_id, listing.files)
        return self.last_preflight

    def _record(self, *events: TimelineEvent) -> None:
        self.timeline.record(*events)

    async def _run_action_event(
        self, change: ChangeSummary, action_key: ActionKey
    ) -> TimelineEvent:
        provider = self.snapshot.provider
        event = await run_action(
            self.ctx,
            change.id,
            action_key,
            provider,
            timeout_seconds=self.config.commands.action_timeout_seconds,
        )
        linked = [
            TimelineEvent(
                id=f"{event.id}-{ref}",
                at=event.at,
                kind="git-link",
                action=action_key,
                command=f"git show {ref}",
                success=True,
                output=f"Detected related git ref: {ref}",
                git_refs=[ref],
            )
            for ref in event.git_refs
        ]
        if action_key == "verify":
            self.store.set(
                verify_store_key(self.workspace_id, provider, change.id),
                {"success": event.success, "at": event.at},
            )
        self._record(event, *linked)
        return event

    async def execute_action(
        self,
        action_key: ActionKey,
        *,
        apply_mode: ApplyMode = "execute",
        apply_executor: ApplyExecutor | None = None,
        continue_brief: ContinueBrief | None = None,
        ignore_availability: bool = False,
    ) -> TimelineEvent | None:
        change = self.selected_change
        if change is None:
            return None
        action = next((entry for entry in self.actions if entry.key == action_key), None)
        if action is None or (not action.available and not ignore_availability):
            return None
        provider = self.snapshot.provider
        if action.kind == "native" and provider != "openspec":
            self.action_error = (
                f"Provider mismatch: native action requires openspec, got {provider}"
            )
            return None

        self.action_error = None
        self.running_action = action_key
        try:
            if provider == "openspec" and action_key in ("verify", "archive"):
                preflight = await self.run_preflight(change.id)
                if preflight.blockers:
                    self.action_error = "\n".join(preflight.blockers)
                    return None
            if action_key == "apply":
                executor = apply_executor or self.config.agents.executor
                return await self._execute_apply(change, apply_mode, executor, continue_brief)
            event = await self._run_action_event(change, action_key)
            await self.refresh()
            return event
        except SpecHubError as exc:
            logger.warning("Action %s for %s failed: %s", action_key, change.id, exc)
            self.action_error = str(exc)
            return None
        finally:
            self.running_action = None

    async def _execute_apply(
        self,
        change: ChangeSummary,
        mode: ApplyMode,
        executor: ApplyExecutor,
        continue_brief: ContinueBrief | None,
    ) -> TimelineEvent | None:
        scope = self.scope
        instructions: list[TimelineEvent] = []

        async def run_instructions() -> TimelineEvent:
            event = await self._run_action_event(change, "apply")
            instructions.append(event)
            return event

        async def update_checklist(index: int, checked: bool) -> TaskChecklistUpdate:
            return await self._write_task(change, index, checked)

        def on_start(state: ApplyExecutionState) -> None:
            scope.apply_execution = state

        orchestrator = ApplyOrchestrator(
            self.workspace_id,
            dispatcher=self.dispatcher,
            event_bus=self.event_bus,
            run_instructions=run_instructions,
            update_checklist=update_checklist,
            refresh=self.refresh,
            record_event=scope.timeline.record,
            timeout_seconds=self.config.agents.turn_timeout_seconds,
            heartbeat_seconds=self.config.agents.heartbeat_seconds,
            custom_spec_root=self.custom_spec_root,
            on_start=on_start,
        )
        state = await orchestrator.run(
            change,
            self.artifacts["tasks"].task_checklist,
            executor=executor,
            mode=mode,
            continue_brief=continue_brief,
        )
        if state.status == "failed":
            self.action_error = state.error
            return None
        return instructions[0] if instructions else None

    async def _write_task(
        self, change: ChangeSummary, index: int, checked: bool
    ) -> TaskChecklistUpdate:
        updated = await update_task_checklist(self.ctx, change, index, checked)
        self.artifacts["tasks"] = replace(
            self.artifacts["tasks"],
            content=updated.content,
            task_checklist=updated.task_checklist,
            task_progress=updated.task_progress,
        )
        return updated

    async def update_task_checklist_item(self, index: int, checked: bool) -> bool:
        change = self.selected_change
        if change is None:
            return False
        self.task_update_error = None
        previous = self.artifacts["tasks"]
        if previous.task_checklist:
            checklist = [
                replace(item, checked=checked) if item.index == index else item
                for item in previous.task_checklist
            ]
            self.artifacts["tasks"] = replace(
                previous, task_checklist=checklist, task_progress=summarize_task_progress(checklist)
            )

        try:
            updated = await self._write_task(change, index, checked)
            self._record(
                new_timeline_event(
                    kind="task-update",
                    action="apply",
                    command=(
                        f"toggle {updated.path} [{index + 1}] -> "
                        f"{'checked' if checked else 'unchecked'}"
                    ),
                    success=True,
                    output=f"Task {index + 1} marked as {'done' if checked else 'pending'}.",
                )
            )
            await self.refresh(silent=True, force=True)
            return True
        except SpecHubError as exc:
            self.artifacts["tasks"] = previous
            self.task_update_error = str(exc)
            return False

    # Project context

    async def execute_bootstrap(self, info: ProjectInfo) -> bool:
        self.bootstrap_error = None
        try:
            event = await initialize_workspace(
                self.ctx, info, timeout_seconds=self.config.commands.action_timeout_seconds
            )
            self._record(event)
            if not event.success:
                self.bootstrap_error = event.output or "OpenSpec bootstrap failed"
                return False
            await self.refresh(force=True, rescan=True)
            return True
        except SpecHubError as exc:
            self.bootstrap_error = str(exc)
            return False

    async def persist_project_info(self, info: ProjectInfo) -> bool:
        self.project_info_error = None
        try:
            entry = await save_project_info(self.ctx, info)
        except SpecHubError as exc:
            self.project_info_error = str(exc)
            return False
        self._record(
            new_timeline_event(
                kind="action",
                action="bootstrap",
                command=f"write {PROJECT_INFO_PATH}",
                success=True,
                output=f"{entry}\nProject context saved: {PROJECT_INFO_PATH}",
            )
        )
        return True

    async def load_project_info(self) -> ProjectInfo | None:
        return await load_project_info(self.ctx)
