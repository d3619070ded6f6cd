from __future__ import annotations

import re

from spechub.errors import ChecklistUpdateError
from spechub.models import TaskChecklistItem, TaskPriority, TaskProgress

_LINE_SPLIT = re.compile(r"\r?\n")
_CHECKLIST_LINE = re.compile(r"^(\s*)[-*+]\s*\[([xX ])\]\s*(.*)$")
_CHECKBOX_MARK = re.compile(r"^(\s*[-*+]\s*\[)([xX ])(\].*)$")
_PRIORITY_TAG = re.compile(r"\[(P[0-2])\]", re.IGNORECASE)
_TASK_REF = re.compile(r"^(\d+(?:\.\d+)+)\b")


def split_lines(text: str) -> list[str]:
    return _LINE_SPLIT.split(text)


def detect_task_priority(text: str) -> TaskPriority | None:
    matched = _PRIORITY_TAG.search(text)
    if matched is None:
        return None
    return matched.group(1).lower()  # type: ignore[return-value]


def parse_task_checklist(text: str) -> list[TaskChecklistItem]:
    checklist: list[TaskChecklistItem] = []
    for line_number, line in enumerate(split_lines(text), start=1):
        matched = _CHECKLIST_LINE.match(line)
        if matched is None:
            continue
        item_text = matched.group(3).strip()
        checklist.append(
            TaskChecklistItem(
                index=len(checklist),
                line_number=line_number,
                indent=len(matched.group(1).replace("\t", "  ")),
                checked=matched.group(2).lower() == "x",
                text=item_text,
                priority=detect_task_priority(item_text),
            )
        )
    return checklist


def summarize_task_progress(checklist: list[TaskChecklistItem]) -> TaskProgress:
    """Count all items, and separately the required (non-p2) ones."""
    required = [item for item in checklist if item.priority != "p2"]
    return TaskProgress(
        total=len(checklist),
        checked=sum(1 for item in checklist if item.checked),
        required_total=len(required),
        required_checked=sum(1 for item in required if item.checked),
    )


def parse_task_progress(text: str) -> tuple[list[TaskChecklistItem], TaskProgress]:
    checklist = parse_task_checklist(text)
    return checklist, summarize_task_progress(checklist)


def set_checklist_item(text: str, index: int, checked: bool) -> str:
    """Return ``text`` with the ``index``-th checkbox set to ``checked``.

    The document's newline convention is preserved. Items other than the
    addressed one are left byte-for-byte untouched.
    """
    newline = "\r\n" if "\r\n" in text else "\n"
    lines = split_lines(text)
    checklist_index = 0
    for line_index, line in enumerate(lines):
        matched = _CHECKBOX_MARK.match(line)
        if matched is None:
            continue
        if checklist_index == index:
            current = matched.group(2).lower() == "x"
            if current != checked:
                mark = "x" if checked else " "
                lines[line_index] = f"{matched.group(1)}{mark}{matched.group(3)}"
            return newline.join(lines)
        checklist_index += 1
    raise ChecklistUpdateError("Task checkbox not found")


def task_ref_from_text(text: str) -> str | None:
    matched = _TASK_REF.match(text)
    if matched is None:
        return None
    return matched.group(1).strip()
