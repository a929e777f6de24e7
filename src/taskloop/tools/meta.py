"""Tools that steer the loop itself rather than the workspace."""

from typing import Dict

from ..approval import ASK_FOLLOWUP
from ..models import SubtaskRequest
from ..tool_registry import ToolContext, ToolDef, ToolParam


async def attempt_completion(ctx: ToolContext, params: Dict[str, str]) -> str:
    ctx.task.completion_result = params["result"]
    return "Completion result recorded. Awaiting the user's confirmation."


async def ask_followup_question(ctx: ToolContext, params: Dict[str, str]) -> str:
    decision = await ctx.gate.ask(ASK_FOLLOWUP, params["question"])
    if not decision.approved:
        return "The user declined to answer."
    return f"<answer>\n{decision.feedback}\n</answer>"


async def switch_mode(ctx: ToolContext, params: Dict[str, str]) -> str:
    slug = params["mode_slug"].strip()
    mode = ctx.modes.get(slug)  # UnknownModeError becomes a failed outcome
    if slug == ctx.task.mode:
        return f"Already in {mode.name} mode."
    ctx.task.pending_mode = slug
    reason = params.get("reason", "").strip()
    suffix = f" because: {reason}" if reason else ""
    return f"Switching from {ctx.task.mode} to {mode.name} mode{suffix}."


async def new_task(ctx: ToolContext, params: Dict[str, str]) -> str:
    slug = params["mode"].strip()
    mode = ctx.modes.get(slug)
    if ctx.task.pending_subtask is not None:
        raise RuntimeError("A subtask is already pending for this turn.")
    ctx.task.pending_subtask = SubtaskRequest(mode=slug, message=params["message"])
    return (
        f"Subtask created in {mode.name} mode. It will run after this turn; "
        f"its result will be delivered to you when it completes."
    )


META_TOOLS = [
    ToolDef(
        "attempt_completion", attempt_completion, group="meta",
        params=[ToolParam("result", required=True,
                          description="Final result of the task, phrased as a conclusion.")],
        description="Present the result of your work once the task is complete.",
    ),
    ToolDef(
        "ask_followup_question", ask_followup_question, group="meta",
        params=[ToolParam("question", required=True, description="The question to ask the user.")],
        description="Ask the user for information needed to proceed.",
    ),
    ToolDef(
        "switch_mode", switch_mode, group="meta", requires_approval=True,
        params=[ToolParam("mode_slug", required=True, description="Slug of the mode to switch to."),
                ToolParam("reason", description="Why the switch is needed.")],
        description="Request to switch to a different mode before the next step.",
    ),
    ToolDef(
        "new_task", new_task, group="meta", requires_approval=True,
        params=[ToolParam("mode", required=True, description="Slug of the mode the subtask runs in."),
                ToolParam("message", required=True, description="Instructions for the subtask.")],
        description="Spawn a subtask that runs to completion before this task continues.",
    ),
]
