from __future__ import annotations


class SpecHubError(RuntimeError):
    """Base class for errors raised by the spec hub engine."""


class ChecklistUpdateError(SpecHubError):
    """Raised when a task checklist item cannot be rewritten."""


class ApplyExecutionError(SpecHubError):
    """Raised when an apply run cannot complete."""

    def __init__(self, message: str, *, phase: str | None = None) -> None:
        super().__init__(message)
        self.phase = phase


class ApplyInstructionsError(ApplyExecutionError):
    """Raised when the instruction-generation command fails."""


class TaskWritebackError(ApplyExecutionError):
    """Raised after a partial task write-back has been rolled back."""
