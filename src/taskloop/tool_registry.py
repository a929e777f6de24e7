"""Single source of truth for tool definitions.

Every tool the engine can dispatch is registered here once.  The parser,
the system prompt, mode validation and the dispatch pipeline all derive
their view of the tools from a ``ToolRegistry`` instance.
"""

import asyncio
import json
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TYPE_CHECKING

from .logger import get_logger

if TYPE_CHECKING:
    from .approval import ApprovalGate
    from .models import Task
    from .modes import ModeRegistry

log = get_logger("registry")


# ── Tool Definition ──────────────────────────────────────────────

@dataclass
class ToolParam:
    """Metadata for a single tool parameter."""
    name: str
    required: bool = False
    description: str = ""


@dataclass
class ToolContext:
    """What a tool implementation may see while it runs."""
    task: "Task"
    workspace_path: Path
    gate: "ApprovalGate"
    modes: "ModeRegistry"


ToolHandler = Callable[[ToolContext, Dict[str, str]], Awaitable[str]]


@dataclass
class ToolDef:
    """Canonical definition of a tool.

    ``group`` decides which modes may use the tool; ``complex_content``
    marks tools whose parameter bodies may legitimately contain XML and
    therefore need greedy matching of the closing tag.
    """
    name: str
    handler: Optional[ToolHandler] = None
    group: str = "read"               # read, edit, command, mode, meta
    requires_approval: bool = False
    complex_content: bool = False
    params: List[ToolParam] = field(default_factory=list)
    description: str = ""

    @property
    def param_names(self) -> List[str]:
        return [p.name for p in self.params]

    @property
    def required_params(self) -> List[str]:
        return [p.name for p in self.params if p.required]


class ToolRegistry:
    """Registry of the tools available to a task loop."""

    def __init__(self, tools: Iterable[ToolDef] = ()):
        self._tools: Dict[str, ToolDef] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: ToolDef) -> None:
        if tool.name in self._tools:
            log.warning("Tool %s re-registered; replacing previous definition", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[ToolDef]:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> List[ToolDef]:
        return list(self._tools.values())

    def names(self) -> List[str]:
        return list(self._tools)

    def param_names(self) -> set:
        """All parameter names across all tools."""
        names = set()
        for tool in self._tools.values():
            names.update(tool.param_names)
        return names

    def complex_content_params(self) -> set:
        """Parameter names whose closing tag is matched greedily."""
        names = set()
        for tool in self._tools.values():
            if tool.complex_content:
                names.update(p.name for p in tool.params if p.name in ("content", "diff"))
        return names

    async def execute(self, name: str, ctx: ToolContext, params: Dict[str, str]) -> str:
        """Run a tool's implementation.  Exceptions propagate to the caller."""
        tool = self._tools.get(name)
        if tool is None or tool.handler is None:
            raise KeyError(f"Tool '{name}' has no implementation")
        result = tool.handler(ctx, params)
        if asyncio.iscoroutine(result):
            result = await result
        if result is None:
            return ""
        return result if isinstance(result, str) else json.dumps(result, indent=2, default=str)


# ── Observability: ToolMetrics ───────────────────────────────────

@dataclass
class ToolCallRecord:
    """A single tool invocation record."""
    tool_name: str
    started_at: float
    elapsed_ms: float
    outcome: str
    error: Optional[str] = None
    result_size: int = 0


class ToolMetrics:
    """Thread-safe observability for tool execution.

    Tracks per-tool: call count, total time, error count, last N calls.
    """

    def __init__(self, history_size: int = 200):
        self._lock = threading.Lock()
        self._history_size = history_size
        self._calls: List[ToolCallRecord] = []
        self._per_tool: Dict[str, dict] = {}  # name -> {count, total_ms, errors}
        self._start_time = time.time()

    def record(self, tool_name: str, elapsed_ms: float, outcome: str,
               error: Optional[str] = None, result_size: int = 0) -> None:
        rec = ToolCallRecord(
            tool_name=tool_name,
            started_at=time.time(),
            elapsed_ms=elapsed_ms,
            outcome=outcome,
            error=error,
            result_size=result_size,
        )
        with self._lock:
            self._calls.append(rec)
            if len(self._calls) > self._history_size:
                self._calls = self._calls[-self._history_size:]

            entry = self._per_tool.setdefault(tool_name, {
                "count": 0, "total_ms": 0.0, "errors": 0,
                "min_ms": float("inf"), "max_ms": 0.0,
            })
            entry["count"] += 1
            entry["total_ms"] += elapsed_ms
            entry["min_ms"] = min(entry["min_ms"], elapsed_ms)
            entry["max_ms"] = max(entry["max_ms"], elapsed_ms)
            if error is not None:
                entry["errors"] += 1

        log.debug("tool_metric: %s elapsed=%.1fms outcome=%s result_size=%d",
                  tool_name, elapsed_ms, outcome, result_size)

    def summary(self) -> Dict[str, Any]:
        """Return a summary dict suitable for logging or display."""
        with self._lock:
            total_calls = sum(e["count"] for e in self._per_tool.values())
            total_errors = sum(e["errors"] for e in self._per_tool.values())

            per_tool = {}
            for name, e in self._per_tool.items():
                avg_ms = e["total_ms"] / e["count"] if e["count"] else 0
                per_tool[name] = {
                    "count": e["count"],
                    "avg_ms": round(avg_ms, 1),
                    "min_ms": round(e["min_ms"], 1) if e["min_ms"] != float("inf") else 0,
                    "max_ms": round(e["max_ms"], 1),
                    "errors": e["errors"],
                }

            return {
                "uptime_s": round(time.time() - self._start_time, 1),
                "total_calls": total_calls,
                "total_errors": total_errors,
                "error_rate_pct": round(total_errors / total_calls * 100, 1) if total_calls else 0,
                "per_tool": per_tool,
            }

    def recent(self, n: int = 20) -> List[dict]:
        """Return last N call records as dicts."""
        with self._lock:
            return [
                {
                    "tool": r.tool_name,
                    "elapsed_ms": round(r.elapsed_ms, 1),
                    "outcome": r.outcome,
                    "error": r.error,
                    "result_size": r.result_size,
                }
                for r in self._calls[-n:]
            ]
