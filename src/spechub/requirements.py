"""Archive preflight: cross-check delta requirement operations against target specs."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Iterable

from spechub.checklist import split_lines
from spechub.models import PreflightResult
from spechub.paths import has_prefix
from spechub.workspace.context import WorkspaceContext

CHANGES_ROOT = "openspec/changes"
SPECS_ROOT = "openspec/specs"

DELTA_OPERATIONS = ("ADDED", "MODIFIED", "REMOVED", "RENAMED")
REQUIRE_EXISTING_TARGET = frozenset({"MODIFIED", "REMOVED", "RENAMED"})

_OPERATION_HEADING = re.compile(
    r"^##\s+(ADDED|MODIFIED|REMOVED|RENAMED)\s+Requirements\b", re.IGNORECASE | re.MULTILINE
)
_OPERATION_SECTION = re.compile(
    r"^##\s+(ADDED|MODIFIED|REMOVED|RENAMED)\s+Requirements\s*$", re.IGNORECASE
)
_REQUIREMENT_TITLE = re.compile(r"^###\s+Requirement:\s*(.+?)\s*$", re.IGNORECASE)
_REQUIREMENT_TITLE_ML = re.compile(r"^###\s+Requirement:\s*(.+?)\s*$", re.IGNORECASE | re.MULTILINE)
_REQUIRES_EXISTING = re.compile(r"delta\s+[A-Z/]+\s+requires existing", re.IGNORECASE)
_REQUIREMENT_MISSING = re.compile(r"delta\s+[A-Z]+\s+requirement missing in", re.IGNORECASE)
_AFFECTED_SPEC = re.compile(r"(openspec[\\/]+specs[\\/]+.+?\.md)\b", re.IGNORECASE)

HINT_CREATE_TARGET = (
    "Create the missing target spec under openspec/specs or switch delta operation to ADDED."
)
HINT_ALIGN_TITLE = (
    "Align MODIFIED/REMOVED/RENAMED requirement title with target spec header exactly."
)
HINT_USE_ADDED = "If target requirement does not exist, change operation to ADDED."


def change_base_path(change_id: str, *, archived: bool = False) -> str:
    if archived:
        return f"{CHANGES_ROOT}/archive/{change_id}"
    return f"{CHANGES_ROOT}/{change_id}"


def normalize_requirement_title(value: str) -> str:
    return " ".join(value.split())


def parse_delta_operations(content: str) -> list[str]:
    """Return the operations present in a delta document, in document order."""
    found = (matched.group(1).upper() for matched in _OPERATION_HEADING.finditer(content))
    return list(dict.fromkeys(found))


def parse_requirement_titles(content: str) -> set[str]:
    titles: set[str] = set()
    for matched in _REQUIREMENT_TITLE_ML.finditer(content):
        title = normalize_requirement_title(matched.group(1))
        if title:
            titles.add(title)
    return titles


def parse_delta_titles_by_operation(content: str) -> dict[str, list[str]]:
    grouped: dict[str, list[str]] = {}
    active: str | None = None
    for raw_line in split_lines(content):
        line = raw_line.strip()
        section = _OPERATION_SECTION.match(line)
        if section is not None:
            active = section.group(1).upper()
            continue
        if active is None:
            continue
        requirement = _REQUIREMENT_TITLE.match(line)
        if requirement is None:
            continue
        title = normalize_requirement_title(requirement.group(1))
        if title:
            grouped.setdefault(active, []).append(title)
    return grouped


def target_spec_path(base: str, delta_spec_path: str) -> str | None:
    prefix = f"{base}/specs/"
    if not delta_spec_path.startswith(prefix):
        return None
    suffix = delta_spec_path[len(prefix) :].strip()
    if not suffix:
        return None
    return f"{SPECS_ROOT}/{suffix}"


def requires_existing_blocker(operations: Iterable[str], target: str) -> str:
    return (
        f"Archive preflight failed: delta {'/'.join(operations)} requires existing {target}"
    )


def match_delta_against_target(
    delta_content: str, target_content: str | None, target: str
) -> list[str]:
    """Compare one delta document against its target spec.

    ``target_content`` is ``None`` when the target does not exist. Only
    MODIFIED/REMOVED/RENAMED sections are checked; ADDED never needs a target.
    """
    operations = [
        op for op in parse_delta_operations(delta_content) if op in REQUIRE_EXISTING_TARGET
    ]
    if not operations:
        return []
    if target_content is None:
        return [requires_existing_blocker(operations, target)]

    target_titles = parse_requirement_titles(target_content)
    titles_by_operation = parse_delta_titles_by_operation(delta_content)
    blockers: list[str] = []
    for operation in operations:
        for title in titles_by_operation.get(operation, []):
            if title not in target_titles:
                blockers.append(
                    f"Archive preflight failed: delta {operation} requirement missing in "
                    f"{target} -> {title}"
                )
    return blockers


async def collect_archive_preflight_blockers(
    ctx: WorkspaceContext,
    base: str,
    spec_paths: Iterable[str],
    files: set[str],
) -> list[str]:
    async def _check(delta_path: str) -> list[str]:
        target = target_spec_path(base, delta_path)
        if target is None:
            return []
        delta = await ctx.read_optional(delta_path)
        if not delta.exists:
            return []
        if target not in files:
            return match_delta_against_target(delta.content, None, target)
        target_response = await ctx.read_optional(target)
        target_content = target_response.content if target_response.exists else None
        return match_delta_against_target(delta.content, target_content, target)

    results = await asyncio.gather(*(_check(path) for path in spec_paths))
    return sorted({blocker for blockers in results for blocker in blockers})


def derive_preflight_hints(blockers: Iterable[str]) -> list[str]:
    hints: dict[str, None] = {}
    for blocker in blockers:
        if _REQUIRES_EXISTING.search(blocker):
            hints[HINT_CREATE_TARGET] = None
        elif _REQUIREMENT_MISSING.search(blocker):
            hints[HINT_ALIGN_TITLE] = None
            hints[HINT_USE_ADDED] = None
    return list(hints)


def derive_affected_specs(blockers: Iterable[str]) -> list[str]:
    specs: set[str] = set()
    for blocker in blockers:
        matched = _AFFECTED_SPEC.search(blocker)
        if matched is not None:
            specs.add(matched.group(1).replace("\\", "/"))
    return sorted(specs)


def delta_spec_paths(files: Iterable[str], base: str) -> list[str]:
    return sorted(
        path for path in files if has_prefix(path, f"{base}/specs") and path.endswith(".md")
    )


async def evaluate_change_preflight(
    ctx: WorkspaceContext, change_id: str, files: Iterable[str]
) -> PreflightResult:
    """Run the archive preflight for one change against a fresh file listing."""
    file_list = [path for path in files if path]
    base = change_base_path(change_id)
    blockers = await collect_archive_preflight_blockers(
        ctx, base, delta_spec_paths(file_list, base), set(file_list)
    )
    return PreflightResult(
        blockers=blockers,
        hints=derive_preflight_hints(blockers),
        affected_specs=derive_affected_specs(blockers),
    )
