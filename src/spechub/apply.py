"""Agent-executed apply workflow.

A run moves through ``preflight -> instructions -> execution ->
task-writeback -> finalize`` and always ends ``success`` or ``failed``.
The orchestrator owns one :class:`ApplyExecutionState` per run; callers pass
in the callbacks that touch the session (instructions, checklist writes,
refresh, timeline).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from spechub.agents.base import (
    AgentDispatchError,
    AgentDispatcher,
    AgentRequest,
    AgentTimeoutError,
    extract_thread_id,
)
from spechub.agents.events import EventBus
from spechub.apply_result import build_apply_prompt, parse_apply_execution_result
from spechub.errors import ApplyInstructionsError, SpecHubError, TaskWritebackError
from spechub.models import (
    ApplyExecutionState,
    ApplyExecutor,
    ApplyMode,
    ApplyPhase,
    ChangeSummary,
    ContinueBrief,
    TaskChecklistItem,
    TaskChecklistUpdate,
    TimelineEvent,
)
from spechub.timeline import new_timeline_event

logger = logging.getLogger(__name__)

DEFAULT_TURN_TIMEOUT_SECONDS = 15 * 60
TIMEOUT_MESSAGE = "Timed out waiting for apply execution."
EXECUTION_FAILED_MESSAGE = "Apply execution failed."
PROMOTABLE_ENGINES = frozenset({"claude", "opencode"})

InstructionsRunner = Callable[[], Awaitable[TimelineEvent]]
ChecklistUpdater = Callable[[int, bool], Awaitable[TaskChecklistUpdate]]
RefreshCallback = Callable[..., Awaitable[None]]
EventRecorder = Callable[[TimelineEvent], None]
LogCallback = Callable[[str], None]


def _turn_thread_id(params: dict[str, Any]) -> str:
    turn = params.get("turn") if isinstance(params.get("turn"), dict) else {}
    for value in (
        params.get("threadId"),
        params.get("thread_id"),
        turn.get("threadId"),
        turn.get("thread_id"),
    ):
        if value:
            return str(value)
    return ""


def _completed_text(params: dict[str, Any]) -> str:
    result = params.get("result") if isinstance(params.get("result"), dict) else {}
    for value in (
        params.get("text"),
        result.get("text"),
        result.get("output_text"),
        result.get("outputText"),
        result.get("content"),
    ):
        if isinstance(value, str) and value.strip():
            return value
    return ""


def _error_text(params: dict[str, Any]) -> str:
    error = params.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or "")
    return str(error or "")


class TurnWaiter:
    """Collects the bus events of one agent turn until it completes or fails.

    The subscription is taken on construction so events published while the
    turn is being sent are not lost; leaving the ``with`` block unsubscribes.
    """

    def __init__(
        self,
        bus: EventBus,
        workspace_id: str,
        thread_id: str,
        *,
        log: LogCallback,
        on_delta: Callable[[str], None],
    ) -> None:
        self.workspace_id = workspace_id
        self.tracked_ids = {thread_id}
        self.heartbeats = 0
        self._buffer: list[str] = []
        self._log = log
        self._on_delta = on_delta
        self._future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._unsubscribe = bus.subscribe(self._handle)

    def __enter__(self) -> TurnWaiter:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._unsubscribe()

    async def wait(self, timeout_seconds: float) -> str:
        try:
            return await asyncio.wait_for(self._future, timeout_seconds)
        except TimeoutError as exc:
            raise AgentTimeoutError(TIMEOUT_MESSAGE) from exc
        finally:
            self.close()

    def _finish(self, *, result: str | None = None, error: str | None = None) -> None:
        if self._future.done():
            return
        self.close()
        if error is not None:
            self._future.set_exception(AgentDispatchError(error))
        else:
            self._future.set_result(result or "")

    def _handle(self, payload: dict[str, Any]) -> None:
        if payload.get("workspace_id") != self.workspace_id:
            return
        message = payload.get("message") or {}
        method = str(message.get("method") or "")
        params = message.get("params") or {}
        thread_id = _turn_thread_id(params)

        if method == "thread/started" and thread_id in self.tracked_ids:
            session_id = str(params.get("sessionId") or params.get("session_id") or "")
            engine = str(params.get("engine") or "").lower()
            if session_id and session_id != "pending" and engine in PROMOTABLE_ENGINES:
                promoted = f"{engine}:{session_id}"
                if promoted not in self.tracked_ids:
                    self.tracked_ids.add(promoted)
                    self._log(f"Bound promoted thread {promoted}.")
            return

        if not thread_id or thread_id not in self.tracked_ids:
            return

        if method == "item/agentMessage/delta":
            delta = str(params.get("delta") or "")
            if delta:
                self._buffer.append(delta)
                self._on_delta(delta)
        elif method in ("item/started", "item/completed"):
            item = params.get("item") or {}
            tool = str(item.get("tool") or item.get("id") or "").strip()
            if tool:
                verb = "started" if method == "item/started" else "completed"
                self._log(f"Tool {verb}: {tool}")
        elif method == "processing/heartbeat":
            self.heartbeats += 1
            if self.heartbeats == 1 or self.heartbeats % 6 == 0:
                self._log(f"Execution heartbeat {self.heartbeats}s.")
        elif method in ("turn/error", "error"):
            self._finish(error=_error_text(params).strip() or EXECUTION_FAILED_MESSAGE)
        elif method == "turn/completed":
            streamed = "".join(self._buffer).strip()
            self._finish(result=streamed or _completed_text(params).strip())


class ApplyOrchestrator:
    def __init__(
        self,
        workspace_id: str,
        *,
        dispatcher: AgentDispatcher,
        event_bus: EventBus,
        run_instructions: InstructionsRunner,
        update_checklist: ChecklistUpdater,
        refresh: RefreshCallback,
        record_event: EventRecorder,
        timeout_seconds: float = DEFAULT_TURN_TIMEOUT_SECONDS,
        heartbeat_seconds: float = 1.0,
        custom_spec_root: str | None = None,
        on_start: Callable[[ApplyExecutionState], None] | None = None,
    ) -> None:
        self.workspace_id = workspace_id
        self.dispatcher = dispatcher
        self.event_bus = event_bus
        self.timeout_seconds = timeout_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self.custom_spec_root = custom_spec_root
        self._run_instructions = run_instructions
        self._update_checklist = update_checklist
        self._refresh = refresh
        self._record_event = record_event
        self._on_start = on_start
        self.state = ApplyExecutionState()

    def log(self, phase: ApplyPhase, message: str) -> None:
        self.state.logs.append(f"[{time.strftime('%H:%M:%S')}] [{phase}] {message}")
        logger.info("[%s] %s", phase, message)

    async def run(
        self,
        change: ChangeSummary,
        checklist: Sequence[TaskChecklistItem],
        *,
        executor: ApplyExecutor = "codex",
        mode: ApplyMode = "execute",
        continue_brief: ContinueBrief | None = None,
    ) -> ApplyExecutionState:
        self.state = ApplyExecutionState(
            status="running", phase="preflight", executor=executor, started_at=time.time()
        )
        if self._on_start is not None:
            self._on_start(self.state)
        self.log("preflight", f"apply {mode} started with {executor}")
        try:
            await self._run(change, list(checklist), executor, mode, continue_brief)
        except SpecHubError as exc:
            self._fail(str(exc))
            logger.warning("Apply for %s failed in %s: %s", change.id, self.state.phase, exc)
        except Exception as exc:
            self._fail(str(exc) or type(exc).__name__)
            logger.exception("Apply for %s crashed in %s", change.id, self.state.phase)
        return self.state

    def _fail(self, message: str) -> None:
        state = self.state
        if state.phase == "idle":
            state.phase = "preflight"
        state.status = "failed"
        state.finished_at = time.time()
        state.error = message
        self.log(state.phase, message)

    async def _run(
        self,
        change: ChangeSummary,
        checklist: list[TaskChecklistItem],
        executor: ApplyExecutor,
        mode: ApplyMode,
        continue_brief: ContinueBrief | None,
    ) -> None:
        state = self.state
        event = await self._run_instructions()
        state.phase = "instructions"
        state.instructions_output = event.output
        self.log("instructions", "OpenSpec instructions captured.")

        if mode == "guidance":
            await self._refresh()
            state.status = "success" if event.success else "failed"
            state.phase = "finalize"
            state.finished_at = time.time()
            state.summary = "Guidance generated successfully." if event.success else ""
            state.no_changes = True
            state.error = None if event.success else event.output or "Failed to generate guidance."
            return

        if not event.success:
            raise ApplyInstructionsError(
                event.output or "Failed to generate apply instructions.", phase="instructions"
            )

        prompt = build_apply_prompt(change.id, event.output, checklist, continue_brief)
        if continue_brief is not None:
            self.log("instructions", "Continue brief attached to apply execution prompt.")

        state.phase = "execution"
        state.execution_output = ""
        self.log("execution", f"Dispatching execution to {executor}.")
        generated = await self._execute(executor, prompt)

        parsed = parse_apply_execution_result(generated, checklist)
        known = {item.index for item in checklist}
        completed = [index for index in parsed.completed_task_indices if index in known]
        state.execution_output = parsed.raw_output
        state.summary = parsed.summary
        state.changed_files = parsed.changed_files
        state.tests = parsed.tests
        state.checks = parsed.checks
        state.completed_task_indices = completed
        state.no_changes = parsed.no_changes
        self.log("execution", "Agent execution finished.")
        if parsed.unmapped_task_indices or parsed.unmapped_task_refs:
            refs = ""
            if parsed.unmapped_task_refs:
                refs = f" invalid refs: {', '.join(parsed.unmapped_task_refs)}."
            self.log(
                "task-writeback",
                "Skipped unmatched task ids from execution output "
                f"(invalid indices: {len(parsed.unmapped_task_indices)}).{refs}",
            )

        by_index = {item.index: item for item in checklist}
        targets = [index for index in completed if not by_index[index].checked]
        if targets:
            await self._write_back(change.id, targets)

        state.phase = "finalize"
        self.log("finalize", "Refreshing runtime state.")
        await self._refresh(force=True, rescan=True)
        state.status = "success"
        state.finished_at = time.time()
        if not state.summary:
            state.summary = (
                "Execution finished with no code changes."
                if parsed.no_changes
                else f"Execution finished with {len(parsed.changed_files)} changed file(s)."
            )
        state.error = None
        if parsed.next_steps:
            self.log("finalize", f"Next: {' | '.join(parsed.next_steps)}")

    def _request(self, executor: ApplyExecutor, prompt: str) -> AgentRequest:
        return AgentRequest(
            text=prompt,
            engine=executor,
            access_mode="full-access",
            continue_session=False,
            custom_spec_root=self.custom_spec_root,
        )

    def _waiter(self, thread_id: str) -> TurnWaiter:
        def append_delta(delta: str) -> None:
            self.state.execution_output += delta

        return TurnWaiter(
            self.event_bus,
            self.workspace_id,
            thread_id,
            log=lambda message: self.log("execution", message),
            on_delta=append_delta,
        )

    async def _execute(self, executor: ApplyExecutor, prompt: str) -> str:
        request = self._request(executor, prompt)
        if executor == "codex":
            thread_id = extract_thread_id(await self.dispatcher.start_thread(self.workspace_id))
            if thread_id:
                self.log("execution", f"Execution thread created: {thread_id}")
                with self._waiter(thread_id) as waiter:
                    await self.dispatcher.send_user_message(
                        self.workspace_id,
                        thread_id,
                        prompt,
                        access_mode="full-access",
                        custom_spec_root=self.custom_spec_root,
                    )
                    return await waiter.wait(self.timeout_seconds)
        else:
            thread_id = extract_thread_id(
                await self.dispatcher.send_message(self.workspace_id, request)
            )
            if thread_id:
                self.log("execution", f"Execution thread created: {thread_id}")
                with self._waiter(thread_id) as waiter:
                    return await waiter.wait(self.timeout_seconds)

        self.log("execution", "No thread id returned, fallback to sync execution.")
        return await self._execute_sync(request)

    async def _execute_sync(self, request: AgentRequest) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        task = asyncio.create_task(self.dispatcher.send_message_sync(self.workspace_id, request))
        beats = 0
        try:
            while not task.done():
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise AgentTimeoutError(TIMEOUT_MESSAGE)
                await asyncio.wait({task}, timeout=min(self.heartbeat_seconds, remaining))
                if not task.done():
                    beats += 1
                    if beats == 1 or beats % 5 == 0:
                        self.log("execution", f"Execution running... {beats}s")
        finally:
            if not task.done():
                task.cancel()
        response = task.result()
        return str(response.get("text") or "")

    async def _write_back(self, change_id: str, targets: list[int]) -> None:
        self.state.phase = "task-writeback"
        self.log("task-writeback", f"Writing {len(targets)} completed task(s) to tasks.md.")
        toggled: list[int] = []
        try:
            for index in targets:
                await self._update_checklist(index, True)
                toggled.append(index)
        except Exception as exc:
            for index in reversed(toggled):
                try:
                    await self._update_checklist(index, False)
                except Exception as rollback_exc:
                    logger.warning("Rollback of task %s failed: %s", index, rollback_exc)
            raise TaskWritebackError(
                f"Task write-back failed: {exc}", phase="task-writeback"
            ) from exc

        self._record_event(
            new_timeline_event(
                kind="task-update",
                action="apply",
                command=f"auto-check {change_id} ({len(targets)})",
                success=True,
                output=f"Auto-marked {len(targets)} task(s) as completed.",
            )
        )
