from __future__ import annotations

import asyncio

from spechub.checklist import parse_task_progress, set_checklist_item
from spechub.errors import ChecklistUpdateError
from spechub.models import (
    ArtifactEntry,
    ArtifactSource,
    ArtifactType,
    ChangeSummary,
    TaskChecklistUpdate,
)
from spechub.workspace.base import FileReadResult
from spechub.workspace.context import WorkspaceContext

ArtifactMap = dict[ArtifactType, ArtifactEntry]
ARTIFACT_TYPES: tuple[ArtifactType, ...] = ("proposal", "design", "tasks", "verification", "specs")


def empty_artifacts() -> ArtifactMap:
    return {
        artifact_type: ArtifactEntry(type=artifact_type, path=None, exists=False, content="")
        for artifact_type in ARTIFACT_TYPES
    }


async def _read(ctx: WorkspaceContext, path: str | None) -> FileReadResult:
    if not path:
        return FileReadResult(content="", truncated=False, exists=False)
    return await ctx.read_optional(path)


async def load_artifacts(ctx: WorkspaceContext, change: ChangeSummary) -> ArtifactMap:
    artifacts = change.artifacts
    proposal, design, tasks, verification, *specs = await asyncio.gather(
        _read(ctx, artifacts.proposal_path),
        _read(ctx, artifacts.design_path),
        _read(ctx, artifacts.tasks_path),
        _read(ctx, artifacts.verification_path),
        *(_read(ctx, path) for path in artifacts.spec_paths),
    )
    sources = [
        ArtifactSource(path=path, content=response.content, truncated=response.truncated)
        for path, response in zip(artifacts.spec_paths, specs)
    ]
    checklist, progress = parse_task_progress(tasks.content)
    first_spec = sources[0] if sources else None

    return {
        "proposal": ArtifactEntry(
            type="proposal",
            path=artifacts.proposal_path,
            exists=proposal.exists,
            content=proposal.content,
            truncated=proposal.truncated,
        ),
        "design": ArtifactEntry(
            type="design",
            path=artifacts.design_path,
            exists=design.exists,
            content=design.content,
            truncated=design.truncated,
        ),
        "tasks": ArtifactEntry(
            type="tasks",
            path=artifacts.tasks_path,
            exists=tasks.exists,
            content=tasks.content,
            truncated=tasks.truncated,
            task_checklist=checklist,
            task_progress=progress,
        ),
        "verification": ArtifactEntry(
            type="verification",
            path=artifacts.verification_path,
            exists=verification.exists,
            content=verification.content,
            truncated=verification.truncated,
        ),
        "specs": ArtifactEntry(
            type="specs",
            path=first_spec.path if first_spec else None,
            exists=bool(sources),
            content=first_spec.content if first_spec else "",
            truncated=any(source.truncated for source in sources),
            sources=sources,
        ),
    }


async def update_task_checklist(
    ctx: WorkspaceContext, change: ChangeSummary, index: int, checked: bool
) -> TaskChecklistUpdate:
    """Rewrite one checkbox of the change's tasks document and persist it."""
    tasks_path = change.artifacts.tasks_path
    if not tasks_path:
        raise ChecklistUpdateError("tasks.md is required")
    response = await ctx.read_optional(tasks_path)
    if not response.exists:
        raise ChecklistUpdateError("Unable to read tasks.md")

    content = set_checklist_item(response.content, index, checked)
    if content != response.content:
        await ctx.write(tasks_path, content)
    checklist, progress = parse_task_progress(content)
    return TaskChecklistUpdate(
        path=tasks_path, content=content, task_checklist=checklist, task_progress=progress
    )
