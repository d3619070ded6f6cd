"""Workspace snapshot: provider detection, change enumeration and status derivation."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Iterable
from datetime import UTC, datetime

from spechub.checklist import parse_task_progress
from spechub.environment import (
    DEFAULT_PROBE_TIMEOUT_SECONDS,
    default_mode_for_provider,
    diagnose_environment,
)
from spechub.models import (
    DEFAULT_SPEC_ROOT,
    ChangeArtifacts,
    ChangeStatus,
    ChangeSummary,
    EnvironmentHealth,
    EnvironmentMode,
    SpecProvider,
    SpecRoot,
    SupportLevel,
    TaskProgress,
    WorkspaceSnapshot,
)
from spechub.paths import has_prefix
from spechub.requirements import (
    CHANGES_ROOT,
    change_base_path,
    collect_archive_preflight_blockers,
    delta_spec_paths,
)
from spechub.workspace.base import WorkspaceIOError
from spechub.workspace.context import WorkspaceContext

logger = logging.getLogger(__name__)

SPECKIT_CHANGE_ID = "spec-kit-workspace"
SPECKIT_MINIMAL_BLOCKER = "Spec-Kit uses minimal compatibility mode (read-only + passthrough)."

_DATE_HINT = re.compile(r"\d{4}-\d{2}-\d{2}")

_SPECKIT_PROPOSAL = ("specify.md", "spec-kit.md", ".specify/proposal.md", ".specify/spec.md")
_SPECKIT_DESIGN = (".specify/design.md", ".specify/architecture.md", ".specify/approach.md")
_SPECKIT_TASKS = (".specify/tasks.md", ".specify/todo.md")
_SPECKIT_VERIFICATION = (".specify/verification.md",)
_SPECKIT_MARKER_FILES = frozenset({"specify.md", "specify.yaml", "spec-kit.md"})


def detect_provider(
    files: Iterable[str], directories: Iterable[str]
) -> tuple[SpecProvider, SupportLevel]:
    paths = [*directories, *files]
    if any(has_prefix(path, CHANGES_ROOT) for path in paths):
        return "openspec", "full"
    if any(has_prefix(path, ".specify") for path in paths) or any(
        path in _SPECKIT_MARKER_FILES for path in files
    ):
        return "speckit", "minimal"
    return "unknown", "none"


def collect_openspec_changes(
    files: Iterable[str], directories: Iterable[str]
) -> tuple[list[str], list[str]]:
    """Return ``(active, archived)`` change ids found under ``openspec/changes``."""
    active: set[str] = set()
    archived: set[str] = set()
    for path in [*directories, *files]:
        if not has_prefix(path, CHANGES_ROOT):
            continue
        segments = path[len(CHANGES_ROOT) + 1 :].split("/")
        head = segments[0].strip()
        if not head:
            continue
        if head == "archive":
            if len(segments) > 1 and segments[1].strip():
                archived.add(segments[1].strip())
            continue
        active.add(head)
    return sorted(active), sorted(archived)


def date_hint_from_change_id(change_id: str) -> float:
    latest = 0.0
    for candidate in _DATE_HINT.findall(change_id):
        try:
            parsed = datetime.strptime(candidate, "%Y-%m-%d").replace(tzinfo=UTC)
        except ValueError:
            continue
        latest = max(latest, parsed.timestamp())
    return latest


def classify_change_status(
    *,
    archived: bool,
    complete: bool,
    blockers: list[str],
    progress: TaskProgress,
    has_verification: bool,
) -> ChangeStatus:
    if archived:
        return "archived"
    if not complete:
        return "blocked" if blockers else "draft"
    if 0 < progress.required_checked < progress.required_total:
        return "implementing"
    all_required = (
        progress.required_total > 0 and progress.required_checked == progress.required_total
    )
    all_tasks = progress.total > 0 and progress.checked == progress.total
    if has_verification or all_required or all_tasks:
        return "verified"
    return "ready"


def _first_existing(files: set[str], candidates: Iterable[str]) -> str | None:
    return next((candidate for candidate in candidates if candidate in files), None)


def collect_speckit_change(files: set[str]) -> ChangeSummary | None:
    proposal = _first_existing(files, _SPECKIT_PROPOSAL)
    design = _first_existing(files, _SPECKIT_DESIGN)
    tasks = _first_existing(files, _SPECKIT_TASKS)
    verification = _first_existing(files, _SPECKIT_VERIFICATION)
    claimed = {proposal, design, tasks, verification}
    spec_paths = sorted(
        path
        for path in files
        if (has_prefix(path, ".specify") or has_prefix(path, "specs"))
        and path.endswith(".md")
        and path not in claimed
    )
    if not spec_paths and claimed == {None}:
        return None
    return ChangeSummary(
        id=SPECKIT_CHANGE_ID,
        status="blocked",
        updated_at=time.time(),
        artifacts=ChangeArtifacts(
            proposal_path=proposal,
            design_path=design,
            tasks_path=tasks,
            verification_path=verification,
            spec_paths=spec_paths,
        ),
        blockers=[SPECKIT_MINIMAL_BLOCKER],
    )


async def summarize_openspec_change(
    ctx: WorkspaceContext,
    change_id: str,
    files: set[str],
    *,
    archived: bool = False,
) -> ChangeSummary:
    base = change_base_path(change_id, archived=archived)
    proposal_path = f"{base}/proposal.md"
    design_path = f"{base}/design.md"
    tasks_path = f"{base}/tasks.md"
    verification_path = f"{base}/verification.md"
    spec_paths = delta_spec_paths(files, base)

    has_proposal = proposal_path in files
    has_design = design_path in files
    has_tasks = tasks_path in files
    has_verification = verification_path in files
    has_specs = bool(spec_paths)

    archive_blockers: list[str] = []
    if not archived:
        archive_blockers = await collect_archive_preflight_blockers(ctx, base, spec_paths, files)

    blockers: list[str] = []
    if not has_proposal:
        blockers.append("Missing proposal.md")
    if not has_design:
        blockers.append("Missing design.md")
    if not has_tasks:
        blockers.append("Missing tasks.md")
    if not has_specs:
        blockers.append("Missing specs delta")

    tasks_content = ""
    # Archived changes are immutable evidence; their tasks are never re-read.
    if has_tasks and not archived:
        response = await ctx.read_optional(tasks_path)
        tasks_content = response.content
        if not response.exists:
            blockers.append("Unable to read tasks.md")

    _, progress = parse_task_progress(tasks_content)
    status = classify_change_status(
        archived=archived,
        complete=has_proposal and has_design and has_tasks and has_specs,
        blockers=blockers,
        progress=progress,
        has_verification=has_verification,
    )
    return ChangeSummary(
        id=change_id,
        status=status,
        updated_at=date_hint_from_change_id(change_id),
        artifacts=ChangeArtifacts(
            proposal_path=proposal_path if has_proposal else None,
            design_path=design_path if has_design else None,
            tasks_path=tasks_path if has_tasks else None,
            verification_path=verification_path if has_verification else None,
            spec_paths=spec_paths,
        ),
        blockers=blockers,
        archive_blockers=archive_blockers,
    )


def _spec_root(ctx: WorkspaceContext) -> SpecRoot:
    if ctx.custom_spec_root:
        return SpecRoot(source="custom", path=ctx.custom_spec_root)
    return SpecRoot(source="default", path=DEFAULT_SPEC_ROOT)


def _unavailable_root_snapshot(
    ctx: WorkspaceContext, mode: EnvironmentMode | None, error: str
) -> WorkspaceSnapshot:
    blocker = f"Custom spec root is unavailable: {error}"
    return WorkspaceSnapshot(
        provider="unknown",
        support_level="none",
        spec_root=_spec_root(ctx),
        environment=EnvironmentHealth(
            mode=mode or "managed",
            status="degraded",
            blockers=[blocker],
            hints=[
                "Please choose a valid absolute spec root path or restore default workspace path."
            ],
        ),
        blockers=[blocker],
    )


async def build_workspace_snapshot(
    ctx: WorkspaceContext,
    files: Iterable[str],
    directories: Iterable[str],
    *,
    mode: EnvironmentMode | None = None,
    probe_timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
) -> WorkspaceSnapshot:
    """Build a fresh snapshot from a workspace listing.

    With a custom spec root on ``ctx`` the given listing is replaced by the
    external tree. An unreadable external root produces a degraded snapshot
    instead of raising.
    """
    file_set = {path for path in files if path}
    directory_set = {path for path in directories if path}
    if ctx.custom_spec_root:
        try:
            external = await ctx.list_tree()
        except WorkspaceIOError as exc:
            logger.warning("Custom spec root %s is unavailable: %s", ctx.custom_spec_root, exc)
            return _unavailable_root_snapshot(ctx, mode, str(exc))
        file_set = {path for path in external.files if path}
        directory_set = {path for path in external.directories if path}

    provider, support_level = detect_provider(file_set, directory_set)
    resolved_mode = mode or default_mode_for_provider(provider)
    environment = await diagnose_environment(
        ctx, provider, resolved_mode, timeout_seconds=probe_timeout_seconds
    )
    spec_root = _spec_root(ctx)

    if provider == "unknown":
        return WorkspaceSnapshot(
            provider=provider,
            support_level=support_level,
            spec_root=spec_root,
            environment=environment,
            blockers=["No supported spec workspace detected.", *environment.blockers],
        )

    if provider == "speckit":
        change = collect_speckit_change(file_set)
        return WorkspaceSnapshot(
            provider=provider,
            support_level=support_level,
            spec_root=spec_root,
            environment=environment,
            changes=[change] if change else [],
            blockers=[
                "Spec-Kit is currently in minimal compatibility mode.",
                *environment.blockers,
            ],
        )

    active_ids, archived_ids = collect_openspec_changes(file_set, directory_set)
    summaries = await asyncio.gather(
        *(summarize_openspec_change(ctx, change_id, file_set) for change_id in active_ids),
        *(
            summarize_openspec_change(ctx, change_id, file_set, archived=True)
            for change_id in archived_ids
        ),
    )
    changes = sorted(summaries, key=lambda change: (-change.updated_at, change.id))
    blockers = list(environment.blockers)
    if not changes:
        blockers.append("No active changes found under openspec/changes.")
    return WorkspaceSnapshot(
        provider=provider,
        support_level=support_level,
        spec_root=spec_root,
        environment=environment,
        changes=changes,
        blockers=blockers,
    )
