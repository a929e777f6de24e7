"""Tool dispatch pipeline.

One finalized tool_use block goes through, in order:

1. mode / parameter validation   → Rejected (counts as a mistake)
2. repetition check              → Blocked (not a mistake)
3. approval                      → Rejected with user feedback, or edited params
                                   (edited params are validated and repetition-checked again)
4. execution                     → Succeeded / Failed (FatalToolError aborts)
5. result injection              → exactly one entry in the pending input

Any step may short-circuit the ones after it, but step 5 always runs.
"""

import time
from pathlib import Path
from typing import Dict, List, Optional

from .approval import ApprovalGate, DecisionKind
from .errors import FatalToolError
from .logger import get_logger, log_exception, truncate
from .models import EntryKind, OutcomeKind, Task, ToolInvocationRequest, ToolOutcome
from .modes import ModeRegistry
from .repetition import describe_parameters
from .tool_registry import ToolContext, ToolDef, ToolMetrics, ToolRegistry

log = get_logger("dispatch")


def missing_params_error(tool_name: str, missing: List[str]) -> str:
    names = ", ".join(f"'{p}'" for p in missing)
    return (
        f"Missing value for required parameter {names} of tool '{tool_name}'. "
        f"Please retry with a complete response."
    )


def format_tool_result(outcome: ToolOutcome) -> str:
    """Render an outcome as the text the model sees in its next input."""
    label = f"[{outcome.tool_name}"
    key = outcome.parameters.get("path") or outcome.parameters.get("command")
    if key:
        label += f" for '{key}'"
    label += "]"

    kind = outcome.kind
    if kind is OutcomeKind.SUCCEEDED:
        return f"{label} Result:\n{outcome.content}"
    if kind is OutcomeKind.FAILED:
        return f"{label} Error:\n{outcome.content}"
    if kind is OutcomeKind.REJECTED:
        if outcome.mistake:
            return f"{label} Invalid tool use:\n{outcome.content}"
        text = f"{label} The user denied this operation."
        if outcome.content:
            text += f"\nThe user provided the following feedback:\n<feedback>\n{outcome.content}\n</feedback>"
        return text
    if kind is OutcomeKind.BLOCKED:
        return f"{label} Warning:\n{outcome.content}"
    if kind is OutcomeKind.SKIPPED:
        return f"{label} {outcome.content}"
    raise AssertionError(f"unhandled outcome kind: {kind}")


class ToolDispatcher:
    """Runs one invocation at a time through validation, approval and execution."""

    def __init__(self, registry: ToolRegistry, modes: ModeRegistry, gate: ApprovalGate,
                 workspace_path: Path, metrics: Optional[ToolMetrics] = None):
        self.registry = registry
        self.modes = modes
        self.gate = gate
        self.workspace_path = Path(workspace_path)
        self.metrics = metrics or ToolMetrics()

    async def dispatch(self, task: Task, request: ToolInvocationRequest) -> ToolOutcome:
        task.tool_invocations_this_turn += 1
        outcome = await self._run_pipeline(task, request)
        if outcome.mistake:
            count = task.record_mistake()
            log.info("Mistake recorded for %s (count=%d/%d)",
                     request.name, count, task.consecutive_mistake_limit)
        if outcome.executed:
            task.executed_invocations_this_turn += 1
        if outcome.fatal:
            task.abort_task(f"fatal error in {request.name}: {outcome.content}")
        task.push_input(EntryKind.TOOL_RESULT, format_tool_result(outcome), request.name)
        log.info("Dispatched %s -> %s (%s)", request.name, outcome.kind.value,
                 truncate(outcome.content, 120))
        return outcome

    async def _run_pipeline(self, task: Task, request: ToolInvocationRequest) -> ToolOutcome:
        params = dict(request.parameters)
        if task.did_reject_tool:
            return ToolOutcome.skipped(request.name, params)

        tool = self.registry.get(request.name)
        if tool is None:
            return ToolOutcome.invalid(
                request.name,
                f"Unknown tool '{request.name}'. Available tools: {', '.join(self.registry.names())}",
                params,
            )
        reason = self._validate(task, tool, params)
        if reason:
            return ToolOutcome.invalid(request.name, reason, params)

        verdict = task.repetition.check(request)
        if not verdict.allowed:
            return ToolOutcome.blocked(request.name, verdict.reason, params)

        if tool.requires_approval:
            decision = await self.gate.request_tool_approval(request)
            if decision.kind is DecisionKind.REJECT:
                task.did_reject_tool = True
                return ToolOutcome.denied(request.name, decision.feedback, params)
            if decision.kind is DecisionKind.APPROVE_WITH_EDIT and decision.parameters is not None:
                log.info("Parameters edited by user for %s: %s", request.name,
                         describe_parameters(decision.parameters))
                params = dict(decision.parameters)
                reason = self._validate(task, tool, params)
                if reason:
                    return ToolOutcome.invalid(request.name, reason, params)
                edited = ToolInvocationRequest(request.name, params, request.task_id)
                verdict = task.repetition.check(edited)
                if not verdict.allowed:
                    return ToolOutcome.blocked(request.name, verdict.reason, params)

        return await self._execute(task, tool, params)

    def _validate(self, task: Task, tool: ToolDef, params: Dict[str, str]) -> Optional[str]:
        reason = self.modes.check_tool(task.mode, tool, params)
        if reason:
            return reason
        missing = [p for p in tool.required_params if not params.get(p, "").strip()]
        if missing:
            return missing_params_error(tool.name, missing)
        return None

    async def _execute(self, task: Task, tool: ToolDef, params: Dict[str, str]) -> ToolOutcome:
        ctx = ToolContext(task=task, workspace_path=self.workspace_path,
                          gate=self.gate, modes=self.modes)
        executed = ToolInvocationRequest(tool.name, params, task.task_id)
        t0 = time.time()
        log.info("Tool exec START: %s %s", tool.name, describe_parameters(params))
        try:
            content = await self.registry.execute(tool.name, ctx, params)
        except FatalToolError as e:
            log_exception(log, f"Fatal tool error: {tool.name}", e)
            outcome = ToolOutcome.failed(tool.name, str(e), params, fatal=True)
        except Exception as e:
            log_exception(log, f"Tool execution failed: {tool.name}", e)
            outcome = ToolOutcome.failed(tool.name, f"{type(e).__name__}: {e}", params)
        else:
            outcome = ToolOutcome.succeeded(tool.name, content, params)
        task.repetition.record(executed)
        elapsed_ms = (time.time() - t0) * 1000
        self.metrics.record(
            tool.name, elapsed_ms, outcome.kind.value,
            error=outcome.content if outcome.kind is OutcomeKind.FAILED else None,
            result_size=len(outcome.content),
        )
        return outcome
