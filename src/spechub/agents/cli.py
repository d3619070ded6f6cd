from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from spechub.agents.base import (
    AccessMode,
    AgentDispatchError,
    AgentDispatcher,
    AgentEngine,
    AgentRequest,
)
from spechub.agents.events import EventBus
from spechub.paths import is_absolute_spec_root_input, normalize_spec_root_input

logger = logging.getLogger(__name__)

DEFAULT_BINARIES: dict[str, str] = {"codex": "codex", "claude": "claude", "opencode": "opencode"}
PENDING_SESSION = "pending"
# Agent CLIs emit whole tool results as single JSON lines.
STREAM_LIMIT_BYTES = 16 * 1024 * 1024
SESSION_KEYS = ("session_id", "sessionId", "sessionID")

_CODEX_SANDBOX: dict[str, str] = {
    "read-only": "read-only",
    "current": "workspace-write",
    "full-access": "danger-full-access",
}
_TOOL_ITEM_TYPES = frozenset({"command_execution", "mcp_tool_call", "file_change", "web_search"})


def with_external_spec_hint(text: str, custom_spec_root: str | None) -> str:
    root = normalize_spec_root_input(custom_spec_root)
    if not root or not is_absolute_spec_root_input(root):
        return text
    return (
        "[External OpenSpec Root]\n"
        f"- Path: {root}\n"
        "- Treat this as the active spec root when checking or reading project specs.\n"
        "[/External OpenSpec Root]\n\n"
        f"{text}"
    )


def find_session_id(node: Any) -> str | None:
    """Depth-first search for a durable session id in a streamed event."""
    if isinstance(node, dict):
        for key in SESSION_KEYS:
            value = node.get(key)
            if isinstance(value, str) and value and value != PENDING_SESSION:
                return value
        children = node.values()
    elif isinstance(node, list):
        children = node
    else:
        return None
    for child in children:
        found = find_session_id(child)
        if found:
            return found
    return None


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and item.get("type", "text") == "text":
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    return ""


def extract_content(event: dict[str, Any]) -> str:
    content = _text_of(event.get("content"))
    if content:
        return content
    delta = event.get("delta")
    if isinstance(delta, str):
        return delta
    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return _text_of(message.get("content"))
    item = event.get("item")
    if isinstance(item, dict) and item.get("type") == "agent_message":
        return _text_of(item.get("text"))
    part = event.get("part")
    if isinstance(part, dict) and part.get("type", "text") == "text":
        return _text_of(part.get("text"))
    return ""


def extract_tool_event(event: dict[str, Any]) -> tuple[str, str] | None:
    """Return ``(method, tool_name)`` for tool lifecycle events."""
    event_type = event.get("type")
    item = event.get("item")
    if isinstance(item, dict) and item.get("type") in _TOOL_ITEM_TYPES:
        name = item.get("command") or item.get("tool") or item["type"]
        if event_type == "item.started":
            return "item/started", str(name)
        if event_type == "item.completed":
            return "item/completed", str(name)
    if event_type == "tool_use":
        part = event.get("part")
        if isinstance(part, dict):
            state = part.get("state")
            status = state.get("status") if isinstance(state, dict) else None
            method = "item/completed" if status == "completed" else "item/started"
            return method, str(part.get("tool") or "tool")
        return "item/started", str(event.get("name") or "tool")
    if event_type == "tool_result":
        return "item/completed", str(event.get("name") or "tool")
    message = event.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), list):
        for block in message["content"]:
            if isinstance(block, dict) and block.get("type") == "tool_use":
                return "item/started", str(block.get("name") or "tool")
            if isinstance(block, dict) and block.get("type") == "tool_result":
                return "item/completed", str(block.get("name") or "tool")
    return None


def _appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


def decode_stream_line(buffer: str, line: str) -> tuple[dict[str, Any] | None, str | None, str]:
    """Decode one stdout line; returns ``(event, plain_text, next_buffer)``."""
    candidate = f"{buffer}{line}" if buffer else line
    try:
        event = json.loads(candidate)
    except json.JSONDecodeError:
        if _appears_partial_json(candidate):
            return None, None, candidate
        return None, line, ""
    return (event if isinstance(event, dict) else None), None, ""


class CliAgentDispatcher(AgentDispatcher):
    """Runs agent CLIs as subprocesses and streams their output onto an event bus."""

    def __init__(
        self,
        bus: EventBus,
        workspaces: Mapping[str, Path],
        *,
        binaries: Mapping[str, str] | None = None,
        model: str | None = None,
        heartbeat_seconds: float = 1.0,
    ) -> None:
        self.bus = bus
        self.workspaces = dict(workspaces)
        self.binaries = {**DEFAULT_BINARIES, **(binaries or {})}
        self.model = model
        self.heartbeat_seconds = heartbeat_seconds
        self._sessions: dict[tuple[str, str], str] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def session_for(self, workspace_id: str, engine: AgentEngine) -> str | None:
        return self._sessions.get((workspace_id, engine))

    def build_command(
        self,
        engine: AgentEngine,
        text: str,
        *,
        access_mode: AccessMode = "full-access",
        continue_session: bool = False,
        session_id: str | None = None,
    ) -> list[str]:
        binary = self.binaries[engine]
        if engine == "codex":
            command = [binary, "exec", "--json"]
            if self.model:
                command.extend(["-m", self.model])
            command.extend(["--sandbox", _CODEX_SANDBOX[access_mode], text])
            return command

        if engine == "claude":
            command = [binary, "-p", text, "--output-format", "stream-json", "--verbose"]
            if access_mode == "full-access":
                command.append("--dangerously-skip-permissions")
            elif access_mode == "read-only":
                command.extend(["--permission-mode", "plan"])
            else:
                command.extend(["--permission-mode", "acceptEdits"])
            if self.model:
                command.extend(["--model", self.model])
            if continue_session:
                command.extend(["--resume", session_id] if session_id else ["--continue"])
            return command

        command = [binary, "run", "--format", "json"]
        if self.model:
            command.extend(["--model", self.model])
        if continue_session:
            command.extend(["--session", session_id] if session_id else ["--continue"])
        # opencode parses a leading dash in the message as an option.
        command.append(f" {text}" if text.startswith("-") else text)
        return command

    async def start_thread(self, workspace_id: str) -> dict[str, Any]:
        return {"result": {"thread": {"id": f"codex-{uuid.uuid4().hex}"}}}

    async def send_user_message(
        self,
        workspace_id: str,
        thread_id: str,
        text: str,
        *,
        access_mode: AccessMode = "full-access",
        custom_spec_root: str | None = None,
    ) -> dict[str, Any]:
        command = self.build_command(
            "codex", with_external_spec_hint(text, custom_spec_root), access_mode=access_mode
        )
        self._schedule(workspace_id, thread_id, "codex", command)
        return {"result": {"threadId": thread_id}}

    async def send_message(self, workspace_id: str, request: AgentRequest) -> dict[str, Any]:
        if request.engine == "codex":
            started = await self.start_thread(workspace_id)
            thread_id = started["result"]["thread"]["id"]
            return await self.send_user_message(
                workspace_id,
                thread_id,
                request.text,
                access_mode=request.access_mode,
                custom_spec_root=request.custom_spec_root,
            )
        thread_id = f"{request.engine}-{PENDING_SESSION}-{uuid.uuid4().hex[:12]}"
        command = self._command_for(workspace_id, request)
        self._schedule(workspace_id, thread_id, request.engine, command)
        return {"threadId": thread_id}

    async def send_message_sync(self, workspace_id: str, request: AgentRequest) -> dict[str, Any]:
        engine = request.engine
        process = await self._spawn(workspace_id, engine, self._command_for(workspace_id, request))
        chunks: list[str] = []
        buffer = ""
        while True:
            try:
                raw_line = await self._read_line(process, engine)
            except AgentDispatchError:
                self._stop(process)
                raise
            if not raw_line:
                break
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            event, plain, buffer = decode_stream_line(buffer, line)
            if plain is not None:
                chunks.append(plain)
            elif event is not None:
                self._remember_session(workspace_id, engine, event)
                content = extract_content(event)
                if content:
                    chunks.append(content)
        if buffer:
            chunks.append(buffer)

        return_code = await process.wait()
        stderr_output = await self._read_stderr(process)
        if return_code != 0:
            raise AgentDispatchError(
                f"{engine} exited with code {return_code}: {stderr_output}".strip(),
                engine=engine,
                exit_code=return_code,
            )
        return {"text": "".join(chunks).strip(), "engine": engine}

    async def wait_idle(self) -> None:
        """Wait for every scheduled turn to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _command_for(self, workspace_id: str, request: AgentRequest) -> list[str]:
        return self.build_command(
            request.engine,
            with_external_spec_hint(request.text, request.custom_spec_root),
            access_mode=request.access_mode,
            continue_session=request.continue_session,
            session_id=self.session_for(workspace_id, request.engine),
        )

    def _remember_session(
        self, workspace_id: str, engine: AgentEngine, event: dict[str, Any]
    ) -> str | None:
        if engine == "codex" or (workspace_id, engine) in self._sessions:
            return None
        session_id = find_session_id(event)
        if session_id:
            self._sessions[(workspace_id, engine)] = session_id
        return session_id

    def _schedule(
        self, workspace_id: str, thread_id: str, engine: AgentEngine, command: list[str]
    ) -> None:
        task = asyncio.create_task(self._run_turn(workspace_id, thread_id, engine, command))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _spawn(
        self, workspace_id: str, engine: AgentEngine, command: list[str]
    ) -> asyncio.subprocess.Process:
        cwd = self.workspaces.get(workspace_id)
        logger.debug("Starting %s turn in %s", engine, cwd)
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        except FileNotFoundError as exc:
            raise AgentDispatchError(
                f"{engine} binary not found: {command[0]}", engine=engine
            ) from exc
        except OSError as exc:
            raise AgentDispatchError(f"Unable to start {engine}: {exc}", engine=engine) from exc

    @staticmethod
    async def _read_line(process: asyncio.subprocess.Process, engine: AgentEngine) -> bytes:
        assert process.stdout is not None
        try:
            return await process.stdout.readline()
        except (ValueError, OSError) as exc:
            raise AgentDispatchError(
                f"Unable to read {engine} output: {exc}", engine=engine
            ) from exc

    @staticmethod
    def _stop(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass

    @staticmethod
    async def _read_stderr(process: asyncio.subprocess.Process) -> str:
        if process.stderr is None:
            return ""
        return (await process.stderr.read()).decode("utf-8", errors="replace").strip()

    async def _run_turn(
        self, workspace_id: str, thread_id: str, engine: AgentEngine, command: list[str]
    ) -> None:
        def emit(method: str, params: dict[str, Any]) -> None:
            self.bus.emit(workspace_id, method, params)

        try:
            process = await self._spawn(workspace_id, engine, command)
        except AgentDispatchError as exc:
            emit("error", {"threadId": thread_id, "error": {"message": str(exc)}})
            return

        active_thread = thread_id
        try:
            text_parts: list[str] = []
            buffer = ""
            pulses = 0
            saw_output = False
            while True:
                try:
                    raw_line = await asyncio.wait_for(
                        self._read_line(process, engine), timeout=self.heartbeat_seconds
                    )
                except TimeoutError:
                    if not saw_output:
                        pulses += 1
                        emit("processing/heartbeat", {"threadId": active_thread, "pulse": pulses})
                    continue
                if not raw_line:
                    break
                saw_output = True
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue

                event, plain, buffer = decode_stream_line(buffer, line)
                if plain is not None:
                    text_parts.append(plain)
                    emit("item/agentMessage/delta", {"threadId": active_thread, "delta": plain})
                    continue
                if event is None:
                    continue

                session_id = self._remember_session(workspace_id, engine, event)
                if session_id:
                    emit(
                        "thread/started",
                        {"threadId": thread_id, "sessionId": session_id, "engine": engine},
                    )
                    active_thread = f"{engine}:{session_id}"

                tool = extract_tool_event(event)
                if tool is not None:
                    method, name = tool
                    emit(method, {"threadId": active_thread, "item": {"tool": name}})
                content = extract_content(event)
                if content:
                    text_parts.append(content)
                    emit(
                        "item/agentMessage/delta", {"threadId": active_thread, "delta": content}
                    )

            if buffer:
                text_parts.append(buffer)
            return_code = await process.wait()
            stderr_output = await self._read_stderr(process)
        except Exception as exc:
            # Every turn ends with exactly one terminal event.
            logger.warning("Agent turn %s aborted: %s", active_thread, exc)
            self._stop(process)
            emit("error", {"threadId": active_thread, "error": {"message": str(exc)}})
            return
        if return_code != 0:
            message = f"{engine} exited with code {return_code}: {stderr_output}".strip()
            logger.warning("Agent turn %s failed: %s", active_thread, message)
            emit("error", {"threadId": active_thread, "error": {"message": message}})
            return
        emit("turn/completed", {"threadId": active_thread, "result": {"text": "".join(text_parts)}})
