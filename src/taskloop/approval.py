"""User consent for side-effecting actions.

The engine never talks to a user directly.  It asks an ``ApprovalChannel``
(``request(kind, message) -> ApprovalDecision``) through an ``ApprovalGate``
that serialises requests so only one is ever outstanding.
"""

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from rich.console import Console
from rich.panel import Panel
from rich.markup import escape as rich_escape
from rich.prompt import Prompt

from .logger import get_logger

log = get_logger("approval")


class DecisionKind(Enum):
    APPROVE = "approve"
    APPROVE_WITH_EDIT = "approve_with_edit"
    REJECT = "reject"


@dataclass
class ApprovalDecision:
    kind: DecisionKind
    feedback: str = ""
    parameters: Optional[Dict[str, str]] = None

    @classmethod
    def approve(cls, feedback: str = "") -> "ApprovalDecision":
        return cls(DecisionKind.APPROVE, feedback)

    @classmethod
    def approve_with_edit(cls, parameters: Dict[str, str], feedback: str = "") -> "ApprovalDecision":
        return cls(DecisionKind.APPROVE_WITH_EDIT, feedback, dict(parameters))

    @classmethod
    def reject(cls, feedback: str = "") -> "ApprovalDecision":
        return cls(DecisionKind.REJECT, feedback)

    @property
    def approved(self) -> bool:
        return self.kind in (DecisionKind.APPROVE, DecisionKind.APPROVE_WITH_EDIT)


# Ask kinds the engine and tools use
ASK_TOOL = "tool"
ASK_COMMAND = "command"
ASK_FOLLOWUP = "followup"
ASK_COMPLETION = "completion_result"
ASK_MISTAKE_LIMIT = "mistake_limit_reached"
ASK_API_FAILED = "api_req_failed"


class ApprovalChannel:
    """Pluggable prompt/response channel.  Subclasses implement ``request``."""

    async def request(self, kind: str, message: str) -> ApprovalDecision:
        raise NotImplementedError


class AutoApproveChannel(ApprovalChannel):
    """Approves everything.  Follow-up questions get a fixed answer."""

    def __init__(self, followup_answer: str = "Use your best judgement and proceed."):
        self.followup_answer = followup_answer

    async def request(self, kind: str, message: str) -> ApprovalDecision:
        if kind == ASK_FOLLOWUP:
            return ApprovalDecision.approve(self.followup_answer)
        if kind == ASK_API_FAILED:
            return ApprovalDecision.reject()
        return ApprovalDecision.approve()


class ScriptedApprovalChannel(ApprovalChannel):
    """Replays a fixed list of decisions; records every request it sees.

    Useful for headless runs and tests.  When the script runs out the
    ``default`` decision is returned.
    """

    def __init__(self, decisions: Iterable[ApprovalDecision] = (),
                 default: Optional[ApprovalDecision] = None):
        self._decisions: List[ApprovalDecision] = list(decisions)
        self.default = default or ApprovalDecision.approve()
        self.requests: List[Tuple[str, str]] = []

    async def request(self, kind: str, message: str) -> ApprovalDecision:
        self.requests.append((kind, message))
        if self._decisions:
            return self._decisions.pop(0)
        return self.default


class ConsoleApprovalChannel(ApprovalChannel):
    """Interactive approval on the terminal via rich prompts.

    Answers: ``y`` approve, ``n`` reject (optionally followed by feedback),
    ``e`` edit parameters as JSON before approving.
    """

    def __init__(self, console: Optional[Console] = None, monitor=None):
        self.console = console or Console()
        self.monitor = monitor  # KeyboardMonitor; released while a prompt owns stdin

    async def request(self, kind: str, message: str) -> ApprovalDecision:
        resume_monitor = self.monitor is not None and self.monitor.running
        if resume_monitor:
            self.monitor.stop()
        try:
            return await asyncio.to_thread(self._prompt, kind, message)
        finally:
            if resume_monitor:
                self.monitor.start()

    def _prompt(self, kind: str, message: str) -> ApprovalDecision:
        title = kind.replace("_", " ")
        self.console.print(Panel(rich_escape(message), title=f"[bold]{title}[/bold]", border_style="yellow"))

        if kind == ASK_FOLLOWUP:
            answer = Prompt.ask("[cyan]Your answer[/cyan]", console=self.console)
            return ApprovalDecision.approve(answer)

        if kind in (ASK_COMPLETION, ASK_MISTAKE_LIMIT):
            feedback = Prompt.ask(
                "[cyan]Press Enter to accept, type feedback to continue, or 'abort'[/cyan]",
                console=self.console, default="",
            )
            if feedback.strip().lower() == "abort":
                return ApprovalDecision.reject()
            if feedback.strip():
                return ApprovalDecision.reject(feedback) if kind == ASK_COMPLETION \
                    else ApprovalDecision.approve(feedback)
            return ApprovalDecision.approve()

        choice = Prompt.ask("[cyan]Approve?[/cyan]", choices=["y", "n", "e"], default="y",
                            console=self.console)
        if choice == "y":
            return ApprovalDecision.approve()
        if choice == "e":
            raw = Prompt.ask("[cyan]Edited parameters (JSON)[/cyan]", console=self.console)
            try:
                params = json.loads(raw)
            except json.JSONDecodeError as e:
                self.console.print(f"[red]Invalid JSON ({rich_escape(str(e))}); rejecting.[/red]")
                return ApprovalDecision.reject(f"User attempted an edit that could not be parsed: {e}")
            if not isinstance(params, dict):
                return ApprovalDecision.reject("User edit was not a parameter mapping.")
            return ApprovalDecision.approve_with_edit({str(k): str(v) for k, v in params.items()})
        feedback = Prompt.ask("[cyan]Feedback (optional)[/cyan]", console=self.console, default="")
        return ApprovalDecision.reject(feedback)


@dataclass
class ApprovalGate:
    """Mediates consent, enforcing a single outstanding request at a time."""
    channel: ApprovalChannel
    auto_approve: Iterable[str] = field(default_factory=tuple)

    def __post_init__(self):
        self.auto_approve = frozenset(self.auto_approve)
        self._lock = asyncio.Lock()

    async def ask(self, kind: str, message: str) -> ApprovalDecision:
        """Suspension point (b): wait for the user's decision."""
        async with self._lock:
            log.info("Approval requested: kind=%s", kind)
            decision = await self.channel.request(kind, message)
            log.info("Approval decided: kind=%s decision=%s feedback=%s",
                     kind, decision.kind.value, bool(decision.feedback))
            return decision

    async def request_tool_approval(self, request) -> ApprovalDecision:
        if request.name in self.auto_approve:
            log.debug("Auto-approved tool %s", request.name)
            return ApprovalDecision.approve()
        kind = ASK_COMMAND if request.name == "execute_command" else ASK_TOOL
        message = json.dumps({"tool": request.name, **request.parameters}, indent=2)
        return await self.ask(kind, message)
