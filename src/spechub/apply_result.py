"""Prompt construction and result parsing for agent-executed apply runs."""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from spechub.checklist import split_lines, task_ref_from_text
from spechub.models import ContinueBrief, TaskChecklistItem

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_NO_CHANGES = re.compile(r"no\s+changes?", re.IGNORECASE)
_DIGITS = re.compile(r"^\d+$")

# Ordered candidate keys per field; the first key holding a usable value wins.
CHANGED_FILES_KEYS = ("changed_files", "changedFiles", "modified_files", "files")
TASK_INDEX_KEYS = ("completed_task_indices", "completedTaskIndices", "completed_tasks")
TASK_REF_KEYS = ("completed_task_refs", "completedTaskRefs")
SUMMARY_KEYS = ("summary", "result", "message")
NEXT_STEP_KEYS = ("next_steps", "nextSteps", "hints")
TEST_KEYS = ("tests", "test_results", "testResults")
CHECK_KEYS = ("checks", "check_results", "checkResults")
NO_CHANGES_KEYS = ("no_changes", "noChange")


@dataclass(slots=True)
class ParsedApplyResult:
    summary: str = ""
    changed_files: list[str] = field(default_factory=list)
    tests: list[str] = field(default_factory=list)
    checks: list[str] = field(default_factory=list)
    completed_task_indices: list[int] = field(default_factory=list)
    reported_task_indices: list[int] = field(default_factory=list)
    unmapped_task_indices: list[int] = field(default_factory=list)
    reported_task_refs: list[str] = field(default_factory=list)
    unmapped_task_refs: list[str] = field(default_factory=list)
    no_changes: bool = False
    next_steps: list[str] = field(default_factory=list)
    raw_output: str = ""


def _load_object(candidate: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_json_object(raw: str) -> dict[str, Any] | None:
    """Find a JSON object in agent output: whole text, fenced block, then outer braces."""
    direct = raw.strip()
    if not direct:
        return None
    parsed = _load_object(direct)
    if parsed is not None:
        return parsed

    fenced = _FENCED_JSON.search(raw)
    if fenced and fenced.group(1).strip():
        parsed = _load_object(fenced.group(1).strip())
        if parsed is not None:
            return parsed

    first, last = raw.find("{"), raw.rfind("}")
    if first >= 0 and last > first:
        return _load_object(raw[first : last + 1].strip())
    return None


def _layers(payload: dict[str, Any]) -> list[dict[str, Any]]:
    nested = payload.get("result")
    return [payload, nested] if isinstance(nested, dict) else [payload]


def _first_list(layers: Sequence[dict[str, Any]], keys: Iterable[str]) -> list[Any]:
    for layer in layers:
        for key in keys:
            value = layer.get(key)
            if isinstance(value, list):
                return value
    return []


def _first_str(layers: Sequence[dict[str, Any]], keys: Iterable[str]) -> str | None:
    for layer in layers:
        for key in keys:
            value = layer.get(key)
            if isinstance(value, str):
                return value.strip()
    return None


def _first_bool(layers: Sequence[dict[str, Any]], keys: Iterable[str]) -> bool | None:
    for layer in layers:
        for key in keys:
            value = layer.get(key)
            if isinstance(value, bool):
                return value
    return None


def to_string_list(values: Iterable[Any]) -> list[str]:
    return [value.strip() for value in values if isinstance(value, str) and value.strip()]


def parse_integer_indices(values: Iterable[Any]) -> list[int]:
    indices: list[int] = []
    for value in values:
        if isinstance(value, bool):
            continue
        if isinstance(value, int) and value >= 0:
            indices.append(value)
        elif isinstance(value, float) and value.is_integer() and value >= 0:
            indices.append(int(value))
        elif isinstance(value, str) and _DIGITS.match(value.strip()):
            indices.append(int(value.strip()))
    return indices


def reconcile_task_indices(
    reported: Iterable[int], checklist: Sequence[TaskChecklistItem]
) -> tuple[list[int], list[int]]:
    """Map agent-reported indices onto checklist indices.

    Each value is tried as an exact index, then as a 1-based line number,
    then as a one-based ordinal. Returns ``(mapped, unmapped)``.
    """
    known = {item.index for item in checklist}
    by_line: dict[int, int] = {}
    for item in checklist:
        by_line.setdefault(item.line_number, item.index)

    mapped: list[int] = []
    unmapped: list[int] = []
    for value in reported:
        if value in known:
            mapped.append(value)
        elif value in by_line:
            mapped.append(by_line[value])
        elif value > 0 and value - 1 in known:
            mapped.append(value - 1)
        else:
            unmapped.append(value)
    return mapped, unmapped


def map_task_refs(refs: Iterable[str], checklist: Sequence[TaskChecklistItem]) -> list[int]:
    ref_to_index: dict[str, int] = {}
    for item in checklist:
        ref = task_ref_from_text(item.text)
        if ref:
            ref_to_index[ref] = item.index
    return [ref_to_index[ref.strip()] for ref in refs if ref.strip() in ref_to_index]


def parse_apply_execution_result(
    raw: str, checklist: Sequence[TaskChecklistItem]
) -> ParsedApplyResult:
    payload = extract_json_object(raw)
    if payload is None:
        summary = next((line.strip() for line in split_lines(raw.strip()) if line.strip()), "")
        return ParsedApplyResult(
            summary=summary,
            no_changes=bool(_NO_CHANGES.search(raw)),
            raw_output=raw,
        )

    layers = _layers(payload)
    changed_files = to_string_list(_first_list(layers, CHANGED_FILES_KEYS))
    reported_indices = parse_integer_indices(_first_list(layers, TASK_INDEX_KEYS))
    mapped, unmapped = reconcile_task_indices(reported_indices, checklist)
    reported_refs = to_string_list(_first_list(layers, TASK_REF_KEYS))
    known_refs = {ref for ref in (task_ref_from_text(item.text) for item in checklist) if ref}

    no_changes = _first_bool(layers, NO_CHANGES_KEYS)
    if no_changes is None:
        no_changes = not changed_files and bool(_NO_CHANGES.search(raw))

    return ParsedApplyResult(
        summary=_first_str(layers, SUMMARY_KEYS) or "",
        changed_files=changed_files,
        tests=to_string_list(_first_list(layers, TEST_KEYS)),
        checks=to_string_list(_first_list(layers, CHECK_KEYS)),
        completed_task_indices=sorted(set(mapped) | set(map_task_refs(reported_refs, checklist))),
        reported_task_indices=reported_indices,
        unmapped_task_indices=unmapped,
        reported_task_refs=reported_refs,
        unmapped_task_refs=[ref for ref in reported_refs if ref not in known_refs],
        no_changes=no_changes,
        next_steps=to_string_list(_first_list(layers, NEXT_STEP_KEYS)),
        raw_output=raw,
    )


def _joined(values: Sequence[str], separator: str = " | ") -> str:
    return separator.join(values) if values else "(none)"


def _continue_brief_lines(brief: ContinueBrief | None) -> str:
    if brief is None:
        return "- not provided"
    return "\n".join(
        [
            f"- summary: {brief.summary.strip() or '(empty)'}",
            f"- recommended_next_action: {brief.recommended_next_action.strip() or '(none)'}",
            f"- suggested_scope: {_joined(brief.suggested_scope)}",
            f"- risks: {_joined(brief.risks)}",
            f"- verification_plan: {_joined(brief.verification_plan)}",
            f"- execution_sequence: {_joined(brief.execution_sequence, ' -> ')}",
        ]
    )


def build_apply_prompt(
    change_id: str,
    instructions: str,
    checklist: Sequence[TaskChecklistItem],
    continue_brief: ContinueBrief | None = None,
) -> str:
    allowed_indices = ", ".join(str(item.index) for item in checklist)
    refs = (task_ref_from_text(item.text) for item in checklist)
    allowed_refs = ", ".join(dict.fromkeys(ref for ref in refs if ref))
    if checklist:
        preview = "\n".join(
            f"- [{'x' if item.checked else ' '}] #{item.index}: {item.text}" for item in checklist
        )
    else:
        preview = "- (no checklist detected)"

    return "\n".join(
        [
            "You are executing an OpenSpec apply workflow in the current workspace.",
            f"Target change: {change_id}",
            "Use full-access coding operations to implement pending tasks and run the minimum "
            "validation needed.",
            "CRITICAL: if specs delta is missing, you MUST create the missing specs/**/*.md first "
            "before any task-only polish.",
            "Prioritize required tasks (p0/p1) before p2 tasks.",
            "",
            "OpenSpec apply instructions:",
            instructions or "(empty)",
            "",
            "Latest Continue AI brief (read-only planning context):",
            _continue_brief_lines(continue_brief),
            "",
            "Current tasks checklist (index + text):",
            preview,
            "",
            "Completed-task output rules (strict):",
            f"- completed_task_indices must be a subset of: [{allowed_indices}]",
            f"- completed_task_refs must be a subset of: [{allowed_refs}]",
            "- Never invent task ids from other changes (for example: 10.1 when not listed).",
            "",
            "Return JSON only. No markdown fence. Schema:",
            "{",
            '  "summary": "one-line execution summary",',
            '  "changed_files": ["relative/path.ts"],',
            '  "completed_task_indices": [0, 1],',
            '  "completed_task_refs": ["4.1"],',
            '  "no_changes": false,',
            '  "next_steps": ["run verify"]',
            "}",
        ]
    )
