"""Project context document (``openspec/project.md``) and workspace bootstrap."""

from __future__ import annotations

import logging
import re
import shlex
from dataclasses import replace
from datetime import UTC, datetime

from spechub.actions import DEFAULT_ACTION_TIMEOUT_SECONDS
from spechub.checklist import split_lines
from spechub.models import DEFAULT_SPEC_ROOT, ProjectInfo, ProjectType, TimelineEvent
from spechub.timeline import new_timeline_event
from spechub.workspace.base import WorkspaceIOError
from spechub.workspace.context import WorkspaceContext

logger = logging.getLogger(__name__)

PROJECT_INFO_PATH = f"{DEFAULT_SPEC_ROOT}/project.md"
HISTORY_MARKER = "## Update History"
MAX_HISTORY_ENTRIES = 30

_TYPE_LINE = re.compile(r"- Type:\s*(.+)$", re.MULTILINE)


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _non_empty(value: str) -> str:
    return value.strip() or "N/A"


def _section_value(value: str) -> str:
    normalized = value.strip()
    return "" if normalized == "N/A" else normalized


def parse_section(content: str, title: str) -> str:
    pattern = re.compile(
        rf"##\s+{re.escape(title)}\s*\n([\s\S]*?)(?=\n##\s+|$)", re.IGNORECASE
    )
    matched = pattern.search(content)
    return matched.group(1).strip() if matched else ""


def parse_history(content: str) -> list[str]:
    index = content.find(HISTORY_MARKER)
    if index < 0:
        return []
    lines = (line.strip() for line in split_lines(content[index + len(HISTORY_MARKER) :]))
    return [line for line in lines if line.startswith("- ")]


def render_project_info(info: ProjectInfo, history: list[str]) -> str:
    now = _utcnow_iso()
    commands = [
        f"- {line.strip()}" for line in split_lines(_non_empty(info.key_commands)) if line.strip()
    ]
    rendered_history = "\n".join(history) if history else f"- {now} Project context initialized"
    return "\n".join(
        [
            "# Project Context",
            "",
            f"- Type: {'Legacy Project' if info.project_type == 'legacy' else 'New Project'}",
            f"- Updated At: {now}",
            "",
            "## Domain",
            _non_empty(info.domain),
            "",
            "## Architecture",
            _non_empty(info.architecture),
            "",
            "## Constraints",
            _non_empty(info.constraints),
            "",
            "## Key Commands",
            "\n".join(commands) if commands else "- N/A",
            "",
            "## Owners",
            _non_empty(info.owners),
            "",
            HISTORY_MARKER,
            rendered_history,
            "",
        ]
    )


def parse_project_info(content: str) -> ProjectInfo | None:
    if not content.strip():
        return None
    type_match = _TYPE_LINE.search(content)
    project_type: ProjectType = (
        "new" if type_match and "new" in type_match.group(1).lower() else "legacy"
    )
    commands = [
        re.sub(r"^-+\s*", "", line.strip())
        for line in split_lines(parse_section(content, "Key Commands"))
        if line.strip()
    ]
    return ProjectInfo(
        project_type=project_type,
        domain=_section_value(parse_section(content, "Domain")),
        architecture=_section_value(parse_section(content, "Architecture")),
        constraints=_section_value(parse_section(content, "Constraints")),
        key_commands="\n".join(command for command in commands if command != "N/A"),
        owners=_section_value(parse_section(content, "Owners")),
    )


async def save_project_info(ctx: WorkspaceContext, info: ProjectInfo) -> str:
    """Write the project context document and return the recorded history entry."""
    previous = await ctx.read_optional(PROJECT_INFO_PATH)
    history = parse_history(previous.content) if previous.exists else []
    entry = f"- {_utcnow_iso()} {_non_empty(info.summary or 'Project context updated')}"
    markdown = render_project_info(info, [entry, *history][:MAX_HISTORY_ENTRIES])
    await ctx.write(PROJECT_INFO_PATH, markdown)
    return entry


async def load_project_info(ctx: WorkspaceContext) -> ProjectInfo | None:
    response = await ctx.read_optional(PROJECT_INFO_PATH)
    if not response.exists:
        return None
    return parse_project_info(response.content)


def bootstrap_args(project_type: ProjectType) -> list[str]:
    args = ["openspec", "init", "--tools", "none"]
    if project_type == "legacy":
        args.append("--force")
    return args


async def initialize_workspace(
    ctx: WorkspaceContext,
    info: ProjectInfo,
    *,
    timeout_seconds: float = DEFAULT_ACTION_TIMEOUT_SECONDS,
) -> TimelineEvent:
    """Run ``openspec init`` and seed the project context document."""
    args = bootstrap_args(info.project_type)
    command = shlex.join(args)
    result = await ctx.run(args, timeout_seconds=timeout_seconds)
    output_parts = [part for part in (result.stdout, result.stderr) if part]
    success = result.success

    if success:
        summary = info.summary.strip() or "Bootstrap initialized"
        try:
            await save_project_info(ctx, replace(info, summary=summary))
            output_parts.append(f"Project context saved: {PROJECT_INFO_PATH}")
        except WorkspaceIOError as exc:
            logger.warning("Project context save failed: %s", exc)
            output_parts.append(f"Project context save failed: {exc}")
            success = False

    return new_timeline_event(
        kind="action",
        action="bootstrap",
        command=command,
        success=success,
        output="\n".join(output_parts).strip(),
    )
