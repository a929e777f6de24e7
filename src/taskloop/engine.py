"""Task loop engine.

``TaskLoopEngine.run(task, initial_input)`` alternates model requests with
tool dispatch until the task completes, is aborted, or exhausts its mistake
budget.  Pending work is an explicit LIFO stack of (task, ``WorkItem``)
frames; every turn pops one frame, runs one request/stream/dispatch cycle,
and pushes the frame that continues it.  A subtask is spawned by pushing
the parent's continuation and then the child's first frame, so the child
runs to termination before its parent resumes, without recursion.

A turn only suspends at three points: awaiting the next stream fragment,
awaiting an approval decision, and awaiting resume while paused.  ``abort``
is observed at each of them and at every loop boundary.
"""

import contextlib
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .approval import ASK_API_FAILED, ASK_COMPLETION, ASK_MISTAKE_LIMIT, ApprovalGate
from .checkpoints import CheckpointManager
from .config import EngineConfig
from .console import TaskPresenter
from .context import EnvironmentContextProvider
from .dispatch import ToolDispatcher
from .errors import StreamError
from .logger import get_logger, log_exception, truncate
from .models import (
    ApiMessage, ContentBlock, EntryKind, InputEntry, Task, TerminationReason,
    TextContent, ToolInvocationRequest, ToolUse,
)
from .modes import ModeRegistry
from .parser import AssistantMessageParser
from .prompts import get_system_prompt
from .tool_registry import ToolMetrics, ToolRegistry

log = get_logger("engine")

NO_TOOLS_USED = (
    "[ERROR] You did not use a tool in your previous response! Please retry with a tool use.\n\n"
    "Tool uses are formatted with XML-style tags, for example:\n"
    "<read_file>\n<path>src/main.py</path>\n</read_file>\n\n"
    "If you have completed the task, use the attempt_completion tool. "
    "If you need more information from the user, use the ask_followup_question tool. "
    "Otherwise proceed with the next step of the task. "
    "(This is an automated message, so do not respond to it conversationally.)"
)

RESUMPTION_NOTICE = (
    "[TASK RESUMPTION] This task was interrupted and has now been resumed. "
    "The state of the working directory may have changed since then. "
    "Reassess the task context and continue from where you left off."
)

STREAM_INTERRUPTED_NOTICE = (
    "[Your previous response was interrupted by an API error. "
    "Continue from where you left off; do not repeat tool uses that already have results.]"
)


@dataclass
class WorkItem:
    """One pending request on the engine's stack."""
    include_file_details: bool = False
    is_continuation: bool = False  # resumed sub-iteration: no fresh environment context
    # Set on a parent's frame while its subtask runs; the turn's remaining
    # boundary effects are applied once the child has terminated.
    subtask: Optional[Task] = None
    subtask_reason: Optional[TerminationReason] = None


@dataclass
class TurnResult:
    next_item: Optional[WorkItem] = None
    termination: Optional[TerminationReason] = None
    spawned: Optional[Task] = None


def render_input(entries: Sequence[InputEntry]) -> str:
    return "\n\n".join(e.text for e in entries if e.text)


def render_blocks(blocks: Sequence[ContentBlock]) -> str:
    """Re-serialise finalized blocks into the markup the model produced."""
    parts = []
    for block in blocks:
        if isinstance(block, TextContent):
            parts.append(block.content)
        elif isinstance(block, ToolUse):
            params = "\n".join(f"<{k}>{v}</{k}>" for k, v in block.params.items())
            parts.append(f"<{block.name}>\n{params}\n</{block.name}>")
        else:
            raise AssertionError(f"unhandled block type: {block!r}")
    return "\n".join(p for p in parts if p)


class TaskLoopEngine:
    """Top-level controller: owns the turn cycle for one or more tasks."""

    def __init__(
        self,
        api,
        registry: ToolRegistry,
        gate: ApprovalGate,
        *,
        modes: Optional[ModeRegistry] = None,
        context_provider: Optional[EnvironmentContextProvider] = None,
        checkpoints: Optional[CheckpointManager] = None,
        presenter: Optional[TaskPresenter] = None,
        config: Optional[EngineConfig] = None,
        workspace_path: Optional[Path] = None,
        metrics: Optional[ToolMetrics] = None,
    ):
        self.config = config or EngineConfig()
        self.workspace_path = Path(workspace_path or self.config.workspace_path)
        self.api = api
        self.registry = registry
        self.gate = gate
        self.modes = modes or ModeRegistry()
        self.context_provider = context_provider or EnvironmentContextProvider(self.workspace_path)
        self.checkpoints = checkpoints or CheckpointManager()
        self.presenter = presenter or TaskPresenter()
        self.metrics = metrics or ToolMetrics()
        self.dispatcher = ToolDispatcher(registry, self.modes, gate, self.workspace_path, self.metrics)
        self._active: List[Task] = []

    # ── task lifecycle ──

    def new_task(self, mode: Optional[str] = None, parent: Optional[Task] = None) -> Task:
        slug = mode or self.config.default_mode
        self.modes.get(slug)
        return Task(
            mode=slug,
            consecutive_mistake_limit=self.config.consecutive_mistake_limit,
            repetition_limit=self.config.repetition_limit,
            parent_id=parent.task_id if parent else None,
        )

    def restore(self, checkpoint_id: str) -> Task:
        return self.checkpoints.restore(checkpoint_id)

    @property
    def active_task(self) -> Optional[Task]:
        """The innermost task currently running (a subtask while one is active)."""
        return self._active[-1] if self._active else None

    def abort_all(self, reason: str = "user") -> None:
        for task in self._active:
            task.abort_task(reason)

    def toggle_pause(self) -> Optional[bool]:
        """Pause or resume the active task.  Returns the new paused state."""
        task = self.active_task
        if task is None:
            return None
        if task.is_paused:
            task.resume()
            log.info("Task %s resumed by user", task.task_id)
        else:
            task.pause()
            log.info("Task %s paused by user", task.task_id)
        return task.is_paused

    async def run(self, task: Task, initial_input: Optional[str] = None) -> TerminationReason:
        """Drive the task and any subtasks it spawns; return why the task stopped."""
        self._start(task, initial_input)
        started = [task]
        stack: List[Tuple[Task, WorkItem]] = [(task, WorkItem(include_file_details=True))]
        reason: Optional[TerminationReason] = None
        try:
            while stack:
                current, item = stack.pop()
                if item.subtask is not None:
                    result = await self._resume_after_subtask(current, item)
                else:
                    termination = await self._check_boundary(current)
                    if termination is not None:
                        result = TurnResult(termination=termination)
                    else:
                        result = await self.run_turn(current, item)

                if result.spawned is not None:
                    started.append(result.spawned)
                    stack.append((current, WorkItem(subtask=result.spawned)))
                    stack.append((result.spawned, WorkItem(include_file_details=True)))
                elif result.termination is not None:
                    self._finish(current, result.termination)
                    if current is task:
                        reason = result.termination
                        break
                    # The frame underneath is the parent waiting for this child.
                    stack[-1][1].subtask_reason = result.termination
                elif result.next_item is not None:
                    stack.append((current, result.next_item))
        finally:
            for waiting, item in stack:
                if item.subtask is not None:
                    waiting.resume()
            for t in started:
                if t in self._active:
                    self._active.remove(t)

        if reason is None:
            reason = TerminationReason.ABORTED
            self._finish(task, reason)
        return reason

    def _start(self, task: Task, initial_input: Optional[str]) -> None:
        log.info("Task %s START mode=%s parent=%s history=%d input=%s",
                 task.task_id, task.mode, task.parent_id, len(task.history),
                 truncate(initial_input or "", 150))
        if initial_input:
            task.push_input(EntryKind.USER, f"<task>\n{initial_input}\n</task>")
        elif task.history:
            task.push_input(EntryKind.NOTICE, RESUMPTION_NOTICE)
        self._active.append(task)

    def _finish(self, task: Task, reason: TerminationReason) -> None:
        if task in self._active:
            self._active.remove(task)
        log.info("Task %s DONE reason=%s turns=%d tokens_in=%d tokens_out=%d",
                 task.task_id, reason.value, task.turn_count,
                 task.usage.input_tokens, task.usage.output_tokens)
        self.presenter.on_termination(task, reason)

    async def _check_boundary(self, task: Task) -> Optional[TerminationReason]:
        if task.abort:
            log.info("Task %s aborted before turn %d: %s",
                     task.task_id, task.turn_count + 1, task.abort_reason)
            return TerminationReason.ABORTED
        if task.is_paused:
            log.info("Task %s paused at loop boundary", task.task_id)
            self.presenter.on_notice(task, "Paused. Waiting for resume...")
            await task.wait_if_paused()
            if task.abort:
                return TerminationReason.ABORTED
        if task.mistake_limit_reached:
            reason = await self._escalate(task)
            if reason is not None:
                return reason
            if task.abort:
                return TerminationReason.ABORTED
        if task.turn_count >= self.config.max_turns:
            log.warning("Task %s reached max turns (%d)", task.task_id, self.config.max_turns)
            return TerminationReason.MAX_TURNS
        return None

    async def _escalate(self, task: Task) -> Optional[TerminationReason]:
        """Ask the user for guidance once the mistake budget is spent."""
        log.warning("Task %s mistake limit reached (%d/%d), escalating",
                    task.task_id, task.consecutive_mistake_count, task.consecutive_mistake_limit)
        message = (
            f"The model has made {task.consecutive_mistake_count} consecutive mistakes "
            f"(no tool used, or invalid tool use). Provide guidance to help it recover, "
            f"continue without guidance, or abort the task."
        )
        decision = await self.gate.ask(ASK_MISTAKE_LIMIT, message)
        if not decision.approved:
            log.info("Task %s terminated after mistake escalation", task.task_id)
            return TerminationReason.MISTAKE_LIMIT
        if decision.feedback.strip():
            task.push_input(
                EntryKind.USER,
                "You seem to be having trouble proceeding. The user has provided the "
                f"following feedback to help guide you:\n<feedback>\n{decision.feedback}\n</feedback>",
            )
            task.reset_mistakes()
            log.info("Task %s mistake count reset by corrective feedback", task.task_id)
        return None

    # ── one turn ──

    async def run_turn(self, task: Task, item: WorkItem) -> TurnResult:
        task.begin_turn()
        self.checkpoints.begin_turn(task)
        if not item.is_continuation:
            context = self.context_provider.collect(task, item.include_file_details)
            task.push_input(EntryKind.ENVIRONMENT, context)

        entries = task.take_pending_input()
        task.history.append(ApiMessage("user", render_input(entries)))

        mode = self.modes.get(task.mode)
        tools = self.modes.tools_for(task.mode, self.registry.list_tools())
        system_prompt = get_system_prompt(str(self.workspace_path), mode, tools, self.modes.list_modes())
        parser = AssistantMessageParser(
            self.registry.names(), self.registry.param_names(),
            greedy_params=self.registry.complex_content_params(),
        )
        log.info("Turn %d START task=%s mode=%s msgs=%d entries=%d continuation=%s",
                 task.turn_count, task.task_id, task.mode, len(task.history),
                 len(entries), item.is_continuation)

        try:
            async with contextlib.aclosing(self.api.stream(system_prompt, task.history)) as stream:
                async for chunk in stream:
                    if chunk.type == "usage":
                        task.usage.add(chunk.usage)
                    elif chunk.type == "reasoning":
                        self.presenter.on_reasoning(task, chunk.text)
                    elif chunk.type == "text":
                        task.assistant_content = parser.process_fragment(chunk.text)
                        task.user_message_content_ready = False
                        await self._present(task)
                    if task.is_paused and not task.abort:
                        log.info("Task %s paused mid-stream", task.task_id)
                        await task.wait_if_paused()
                        log.info("Task %s resumed mid-stream", task.task_id)
                    if task.abort:
                        break
        except StreamError as e:
            return await self._recover_from_stream_error(task, entries, e)

        if task.abort:
            return self._interrupted_turn(task, parser)

        task.assistant_content = parser.finish()
        task.did_complete_reading_stream = True
        await self._present(task)
        if task.abort:
            return self._interrupted_turn(task, parser)

        task.history.append(ApiMessage("assistant", parser.text or "(empty response)"))
        log.info("Turn %d DONE task=%s blocks=%d tools=%d executed=%d",
                 task.turn_count, task.task_id, len(task.assistant_content),
                 task.tool_invocations_this_turn, task.executed_invocations_this_turn)

        if task.tool_invocations_this_turn == 0:
            count = task.record_mistake()
            log.info("Task %s no tool used (mistakes=%d/%d)",
                     task.task_id, count, task.consecutive_mistake_limit)
            task.push_input(EntryKind.NOTICE, NO_TOOLS_USED)
            self.presenter.on_notice(task, "No tool was used; asking the model to retry.")
        elif task.executed_invocations_this_turn > 0:
            task.reset_mistakes()

        if task.pending_subtask is not None:
            return TurnResult(spawned=self._spawn_subtask(task))
        return await self._finish_turn(task)

    async def _finish_turn(self, task: Task) -> TurnResult:
        """Boundary effects that close a turn: mode switch, completion, checkpoint."""
        self._apply_pending_mode(task)
        result = TurnResult(next_item=WorkItem())
        if task.completion_result is not None:
            result = await self._confirm_completion(task)
        # The snapshot includes any completion feedback queued above.
        self.checkpoints.save_if_needed(task)
        return result

    async def _present(self, task: Task) -> None:
        """Present blocks from the streaming index forward, dispatching finalized tools.

        Stops at the first partial block; it is presented again once more of
        it has arrived.
        """
        while task.current_streaming_content_index < len(task.assistant_content):
            if task.abort:
                return
            index = task.current_streaming_content_index
            block = task.assistant_content[index]
            if isinstance(block, TextContent):
                self.presenter.on_text(task, index, block)
            elif isinstance(block, ToolUse):
                if block.partial:
                    self.presenter.on_partial_tool(task, index, block)
                else:
                    self.presenter.on_tool(task, index, block)
                    request = ToolInvocationRequest.from_block(block, task)
                    outcome = await self.dispatcher.dispatch(task, request)
                    self.presenter.on_outcome(task, outcome)
            else:
                raise AssertionError(f"unhandled block type: {block!r}")
            if block.partial:
                return
            task.current_streaming_content_index += 1
        if task.did_complete_reading_stream:
            task.user_message_content_ready = True

    def _interrupted_turn(self, task: Task, parser: AssistantMessageParser) -> TurnResult:
        """Record what streamed before an abort; partial blocks are dropped."""
        task.assistant_content = [b for b in task.assistant_content if not b.partial]
        marker = ("[Response interrupted by user]" if task.abort_reason == "user"
                  else f"[Response interrupted: {task.abort_reason}]")
        text = parser.text.strip()
        task.history.append(ApiMessage("assistant", f"{text}\n\n{marker}" if text else marker))
        log.info("Turn %d ABORTED task=%s reason=%s tools=%d",
                 task.turn_count, task.task_id, task.abort_reason, task.tool_invocations_this_turn)
        return TurnResult(termination=TerminationReason.ABORTED)

    async def _recover_from_stream_error(self, task: Task, entries: List[InputEntry],
                                         error: StreamError) -> TurnResult:
        log_exception(log, f"Stream failed on turn {task.turn_count} of task {task.task_id} "
                           f"(received_content={error.received_content})", error)
        self.presenter.on_error(task, str(error))

        presented = task.assistant_content[: task.current_streaming_content_index]
        task.assistant_content = list(presented)
        if presented:
            task.history.append(ApiMessage(
                "assistant", render_blocks(presented) + "\n\n[Response interrupted by API error]"))
            task.push_input(EntryKind.NOTICE, STREAM_INTERRUPTED_NOTICE)
        else:
            # Nothing reached the user: take the request back as if it was never sent.
            task.history.pop()
            task.user_message_content = list(entries) + task.user_message_content

        decision = await self.gate.ask(ASK_API_FAILED, f"{error}\n\nRetry the request?")
        if not decision.approved or task.abort:
            log.info("Task %s not retried after stream failure", task.task_id)
            return TurnResult(termination=TerminationReason.ABORTED)
        log.info("Task %s retrying after stream failure (presented=%d)", task.task_id, len(presented))
        return TurnResult(next_item=WorkItem(is_continuation=True))

    # ── turn-boundary effects ──

    def _apply_pending_mode(self, task: Task) -> None:
        if task.pending_mode is None:
            return
        old, task.mode = task.mode, task.pending_mode
        task.pending_mode = None
        log.info("Task %s mode switched: %s -> %s", task.task_id, old, task.mode)
        self.presenter.on_notice(task, f"Mode switched from {old} to {task.mode}")

    def _spawn_subtask(self, task: Task) -> Task:
        """Create the requested child and pause the parent until it terminates."""
        request = task.pending_subtask
        task.pending_subtask = None
        child = self.new_task(request.mode, parent=task)
        log.info("Task %s spawning subtask %s mode=%s", task.task_id, child.task_id, request.mode)
        self.presenter.on_notice(task, f"Starting subtask {child.task_id} in {request.mode} mode")
        task.pause()
        self._start(child, request.message)
        return child

    async def _resume_after_subtask(self, task: Task, item: WorkItem) -> TurnResult:
        """Hand a terminated child's result to its parent and close the parent's turn."""
        child = item.subtask
        reason = item.subtask_reason or TerminationReason.ABORTED
        task.resume()
        result = child.completion_result or "(the subtask produced no result)"
        task.push_input(
            EntryKind.NOTICE,
            f"[new_task completed] Subtask {child.task_id} finished ({reason.value}). "
            f"Result:\n{result}",
        )
        log.info("Task %s received subtask %s result (%s)", task.task_id, child.task_id, reason.value)
        if task.abort:
            return TurnResult(termination=TerminationReason.ABORTED)
        return await self._finish_turn(task)

    async def _confirm_completion(self, task: Task) -> TurnResult:
        if task.parent_id is not None or not self.config.confirm_completion:
            return TurnResult(termination=TerminationReason.COMPLETED)
        decision = await self.gate.ask(ASK_COMPLETION, task.completion_result)
        if decision.approved:
            return TurnResult(termination=TerminationReason.COMPLETED)
        if not decision.feedback.strip():
            task.abort_task("user declined the completion result")
            return TurnResult(termination=TerminationReason.ABORTED)
        task.completion_result = None
        task.push_input(
            EntryKind.USER,
            "The user has provided feedback on the results. Consider their input to continue "
            f"the task, and then attempt completion again.\n<feedback>\n{decision.feedback}\n</feedback>",
        )
        log.info("Task %s completion rejected with feedback", task.task_id)
        return TurnResult(next_item=WorkItem())
