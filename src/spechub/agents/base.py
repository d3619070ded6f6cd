from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Literal

from spechub.errors import SpecHubError

AgentEngine = Literal["codex", "claude", "opencode"]
AccessMode = Literal["read-only", "current", "full-access"]


class AgentDispatchError(SpecHubError):
    """Raised when an agent turn cannot be started or fails."""

    def __init__(
        self,
        message: str,
        *,
        engine: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.engine = engine
        self.exit_code = exit_code


class AgentTimeoutError(AgentDispatchError):
    """Raised when an agent turn exceeds its deadline."""


@dataclass(slots=True)
class AgentRequest:
    text: str
    engine: AgentEngine
    access_mode: AccessMode = "full-access"
    continue_session: bool = False
    custom_spec_root: str | None = None
    images: list[str] | None = None


class AgentDispatcher(ABC):
    """Starts agent turns whose progress is published on an event bus."""

    @abstractmethod
    async def start_thread(self, workspace_id: str) -> dict[str, Any]:
        """Allocate a codex thread and return the raw acknowledgement."""

    @abstractmethod
    async def send_user_message(
        self,
        workspace_id: str,
        thread_id: str,
        text: str,
        *,
        access_mode: AccessMode = "full-access",
        custom_spec_root: str | None = None,
    ) -> dict[str, Any]:
        """Start a codex turn on an existing thread."""

    @abstractmethod
    async def send_message(self, workspace_id: str, request: AgentRequest) -> dict[str, Any]:
        """Start a claude/opencode turn; the acknowledgement may carry a thread id."""

    @abstractmethod
    async def send_message_sync(self, workspace_id: str, request: AgentRequest) -> dict[str, Any]:
        """Run a turn to completion and return ``{"text": ..., "engine": ...}``."""


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _nested_id(container: Any, key: str) -> str | None:
    if not isinstance(container, dict):
        return None
    child = container.get(key)
    return _as_str(child.get("id")) if isinstance(child, dict) else None


def extract_thread_id(response: Any) -> str | None:
    """Pull a thread or turn id out of the acknowledgement shapes dispatchers return."""
    if not isinstance(response, dict):
        return None
    result = response.get("result")
    result = result if isinstance(result, dict) else {}
    candidates = (
        _as_str(result.get("threadId")),
        _as_str(result.get("thread_id")),
        _nested_id(result, "thread") or _nested_id(response, "thread"),
        _as_str(result.get("turnId")),
        _as_str(result.get("turn_id")),
        _nested_id(result, "turn") or _nested_id(response, "turn"),
        _as_str(response.get("threadId")),
        _as_str(response.get("thread_id")),
        _as_str(response.get("turnId")),
        _as_str(response.get("turn_id")),
    )
    return next((candidate for candidate in candidates if candidate), None)
