"""Presentation of streamed content blocks and tool outcomes."""

import re
from typing import Dict, Optional, Tuple

from rich.console import Console
from rich.markup import escape as rich_escape

from .models import OutcomeKind, Task, TerminationReason, TextContent, ToolOutcome, ToolUse
from .repetition import describe_parameters


def strip_thinking_blocks(content: str) -> str:
    """Remove <thinking> blocks from text meant for display."""
    return re.sub(r"<thinking>.*?(</thinking>\s*|$)", "", content, flags=re.DOTALL)


class TaskPresenter:
    """Receives presentation events from the engine.  The base class is silent."""

    def on_text(self, task: Task, index: int, block: TextContent) -> None:
        pass

    def on_partial_tool(self, task: Task, index: int, block: ToolUse) -> None:
        pass

    def on_tool(self, task: Task, index: int, block: ToolUse) -> None:
        pass

    def on_outcome(self, task: Task, outcome: ToolOutcome) -> None:
        pass

    def on_reasoning(self, task: Task, text: str) -> None:
        pass

    def on_notice(self, task: Task, message: str) -> None:
        pass

    def on_error(self, task: Task, message: str) -> None:
        pass

    def on_termination(self, task: Task, reason: TerminationReason) -> None:
        pass


_OUTCOME_STYLE = {
    OutcomeKind.SUCCEEDED: ("green", "ok"),
    OutcomeKind.FAILED: ("red", "failed"),
    OutcomeKind.REJECTED: ("yellow", "rejected"),
    OutcomeKind.BLOCKED: ("magenta", "blocked"),
    OutcomeKind.SKIPPED: ("dim", "skipped"),
}


class ConsolePresenter(TaskPresenter):
    """Streams text to the terminal as it arrives and summarises tool activity."""

    def __init__(self, console: Optional[Console] = None, show_reasoning: bool = True):
        self.console = console or Console()
        self.show_reasoning = show_reasoning
        self._printed: Dict[Tuple[str, int, int], int] = {}
        self._in_reasoning = False

    def _end_reasoning(self) -> None:
        if self._in_reasoning:
            self.console.print()
            self._in_reasoning = False

    def on_text(self, task: Task, index: int, block: TextContent) -> None:
        self._end_reasoning()
        key = (task.task_id, task.turn_count, index)
        text = strip_thinking_blocks(block.content)
        done = self._printed.get(key, 0)
        if len(text) > done:
            self.console.print(text[done:], end="", markup=False, highlight=False)
            self._printed[key] = len(text)
        if not block.partial:
            self.console.print()

    def on_tool(self, task: Task, index: int, block: ToolUse) -> None:
        self._end_reasoning()
        params = describe_parameters(block.params)
        self.console.print(f"  [dim]•[/dim] [cyan]{rich_escape(block.name)}[/cyan] "
                           f"[dim]{rich_escape(params)}[/dim]")

    def on_outcome(self, task: Task, outcome: ToolOutcome) -> None:
        color, label = _OUTCOME_STYLE[outcome.kind]
        first_line = outcome.content.strip().splitlines()[0] if outcome.content.strip() else ""
        if len(first_line) > 100:
            first_line = first_line[:100] + "..."
        self.console.print(f"    [{color}]{label}[/{color}] [dim]{rich_escape(first_line)}[/dim]")

    def on_reasoning(self, task: Task, text: str) -> None:
        if not self.show_reasoning or not text:
            return
        if not self._in_reasoning:
            if not text.strip():
                return
            self.console.print("[dim italic]Thinking:[/dim italic]")
            self._in_reasoning = True
        self.console.print(text, end="", style="dim", markup=False, highlight=False)

    def on_notice(self, task: Task, message: str) -> None:
        self._end_reasoning()
        self.console.print(f"[dim][!] {rich_escape(message)}[/dim]")

    def on_error(self, task: Task, message: str) -> None:
        self._end_reasoning()
        self.console.print(f"[red][X] {rich_escape(message)}[/red]")

    def on_termination(self, task: Task, reason: TerminationReason) -> None:
        self._end_reasoning()
        color = "green" if reason is TerminationReason.COMPLETED else "yellow"
        self.console.print(f"\n[{color}]Task {task.task_id} finished: {reason.value}[/{color}]")
        if task.completion_result and reason is TerminationReason.COMPLETED:
            self.console.print(rich_escape(task.completion_result))
