from __future__ import annotations

import time
import uuid
from collections import deque
from collections.abc import Callable, Iterator

from spechub.models import TimelineAction, TimelineEvent, TimelineKind, ValidationIssue

DEFAULT_TIMELINE_LIMIT = 80


def new_event_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def new_timeline_event(
    *,
    kind: TimelineKind,
    action: TimelineAction,
    command: str,
    success: bool,
    output: str,
    validation_issues: list[ValidationIssue] | None = None,
    git_refs: list[str] | None = None,
) -> TimelineEvent:
    return TimelineEvent(
        id=new_event_id(),
        at=time.time(),
        kind=kind,
        action=action,
        command=command,
        success=success,
        output=output,
        validation_issues=list(validation_issues or []),
        git_refs=list(git_refs or []),
    )


class Timeline:
    """Bounded audit trail of hub events, newest first."""

    def __init__(self, limit: int = DEFAULT_TIMELINE_LIMIT) -> None:
        self._events: deque[TimelineEvent] = deque(maxlen=limit)

    def record(self, *events: TimelineEvent) -> None:
        """Prepend ``events`` keeping their given order at the head."""
        for event in reversed(events):
            self._events.appendleft(event)

    def first(self, predicate: Callable[[TimelineEvent], bool]) -> TimelineEvent | None:
        return next((event for event in self._events if predicate(event)), None)

    def __iter__(self) -> Iterator[TimelineEvent]:
        return iter(self._events)

    def __len__(self) -> int:
        return len(self._events)
