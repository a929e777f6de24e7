"""Core data model: tasks, content blocks, invocation requests and outcomes."""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .repetition import ToolRepetitionDetector


# ── Conversation ─────────────────────────────────────────────

@dataclass
class ApiMessage:
    """One turn of conversation history sent to the model."""
    role: str  # 'user' | 'assistant'
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}


# ── Content blocks ───────────────────────────────────────────
# Frozen: the parser replaces a partial block with a new instance as more
# bytes arrive, so a finalized block can never change underneath a caller.

@dataclass(frozen=True)
class TextContent:
    """Free text emitted by the model."""
    content: str
    partial: bool = False
    type: str = field(default="text", init=False)


@dataclass(frozen=True)
class ToolUse:
    """A tool invocation emitted by the model."""
    name: str
    params: Dict[str, str] = field(default_factory=dict)
    partial: bool = False
    type: str = field(default="tool_use", init=False)


ContentBlock = Union[TextContent, ToolUse]


@dataclass
class ToolInvocationRequest:
    """A finalized tool_use block bound to the task that emitted it."""
    name: str
    parameters: Dict[str, str]
    task_id: str

    @classmethod
    def from_block(cls, block: ToolUse, task: "Task") -> "ToolInvocationRequest":
        if block.partial:
            raise ValueError(f"cannot dispatch partial tool block '{block.name}'")
        return cls(name=block.name, parameters=dict(block.params), task_id=task.task_id)


# ── Outcomes ─────────────────────────────────────────────────

class OutcomeKind(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REJECTED = "rejected"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


@dataclass
class ToolOutcome:
    """Result of pushing one invocation through the dispatch pipeline."""
    kind: OutcomeKind
    tool_name: str
    content: str = ""
    parameters: Dict[str, str] = field(default_factory=dict)
    fatal: bool = False
    mistake: bool = False  # validation rejections count against the mistake budget

    @classmethod
    def succeeded(cls, tool_name: str, content: str, parameters: Dict[str, str]) -> "ToolOutcome":
        return cls(OutcomeKind.SUCCEEDED, tool_name, content, parameters)

    @classmethod
    def failed(cls, tool_name: str, detail: str, parameters: Dict[str, str],
               fatal: bool = False) -> "ToolOutcome":
        return cls(OutcomeKind.FAILED, tool_name, detail, parameters, fatal=fatal)

    @classmethod
    def invalid(cls, tool_name: str, reason: str, parameters: Dict[str, str]) -> "ToolOutcome":
        return cls(OutcomeKind.REJECTED, tool_name, reason, parameters, mistake=True)

    @classmethod
    def denied(cls, tool_name: str, feedback: str, parameters: Dict[str, str]) -> "ToolOutcome":
        return cls(OutcomeKind.REJECTED, tool_name, feedback, parameters)

    @classmethod
    def blocked(cls, tool_name: str, reason: str, parameters: Dict[str, str]) -> "ToolOutcome":
        return cls(OutcomeKind.BLOCKED, tool_name, reason, parameters)

    @classmethod
    def skipped(cls, tool_name: str, parameters: Dict[str, str]) -> "ToolOutcome":
        return cls(
            OutcomeKind.SKIPPED, tool_name,
            f"Skipping tool {tool_name} due to user rejecting a previous tool.",
            parameters,
        )

    @property
    def executed(self) -> bool:
        """True when the tool implementation actually ran."""
        return self.kind in (OutcomeKind.SUCCEEDED, OutcomeKind.FAILED)


class TerminationReason(Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    MISTAKE_LIMIT = "mistake_limit"
    MAX_TURNS = "max_turns"


# ── Pending input ────────────────────────────────────────────

class EntryKind(Enum):
    USER = "user"
    TOOL_RESULT = "tool_result"
    NOTICE = "notice"
    ENVIRONMENT = "environment"


@dataclass
class InputEntry:
    """One piece of input queued for the next model request."""
    kind: EntryKind
    text: str
    tool_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "text": self.text, "tool_name": self.tool_name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InputEntry":
        return cls(EntryKind(data["kind"]), data["text"], data.get("tool_name"))


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0

    def add(self, usage: Dict[str, int]) -> None:
        self.input_tokens += int(usage.get("prompt_tokens", 0) or 0)
        self.output_tokens += int(usage.get("completion_tokens", 0) or 0)
        self.cache_read_tokens += int(usage.get("prompt_cached_tokens", 0) or 0)


@dataclass
class SubtaskRequest:
    mode: str
    message: str


# ── Task ─────────────────────────────────────────────────────

def _new_task_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class Task:
    """One run of the agent loop and all of its mutable control state.

    Owned by a single engine coroutine; the parser and dispatcher only ever
    touch it synchronously from inside that coroutine's turn.
    """
    mode: str = "code"
    consecutive_mistake_limit: int = 3
    repetition_limit: int = 1
    task_id: str = field(default_factory=_new_task_id)
    parent_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    history: List[ApiMessage] = field(default_factory=list)
    abort: bool = False
    abort_reason: str = ""
    is_paused: bool = False
    consecutive_mistake_count: int = 0

    # Per-turn streaming state
    assistant_content: List[ContentBlock] = field(default_factory=list)
    current_streaming_content_index: int = 0
    user_message_content: List[InputEntry] = field(default_factory=list)
    user_message_content_ready: bool = False
    did_complete_reading_stream: bool = False
    did_reject_tool: bool = False
    tool_invocations_this_turn: int = 0
    executed_invocations_this_turn: int = 0
    checkpointed_this_turn: bool = False
    turn_count: int = 0

    # Requests raised by tools, applied by the engine at the turn boundary
    pending_mode: Optional[str] = None
    pending_subtask: Optional[SubtaskRequest] = None
    completion_result: Optional[str] = None

    usage: TokenUsage = field(default_factory=TokenUsage)
    repetition: ToolRepetitionDetector = field(default=None)  # type: ignore[assignment]
    _resume_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def __post_init__(self):
        if self.repetition is None:
            self.repetition = ToolRepetitionDetector(limit=self.repetition_limit)
        if not self.is_paused:
            self._resume_event.set()

    # ── control flags ──

    def abort_task(self, reason: str = "user") -> None:
        self.abort = True
        self.abort_reason = reason
        # Wake a paused loop so it can observe the abort.
        self._resume_event.set()

    def pause(self) -> None:
        self.is_paused = True
        self._resume_event.clear()

    def resume(self) -> None:
        self.is_paused = False
        self._resume_event.set()

    async def wait_if_paused(self) -> None:
        """Suspension point (c): block while paused, return on resume or abort."""
        if self.is_paused and not self.abort:
            await self._resume_event.wait()

    # ── mistake accounting ──

    def record_mistake(self) -> int:
        self.consecutive_mistake_count += 1
        return self.consecutive_mistake_count

    def reset_mistakes(self) -> None:
        self.consecutive_mistake_count = 0

    @property
    def mistake_limit_reached(self) -> bool:
        return self.consecutive_mistake_count >= self.consecutive_mistake_limit

    # ── pending input ──

    def push_input(self, kind: EntryKind, text: str, tool_name: Optional[str] = None) -> None:
        self.user_message_content.append(InputEntry(kind, text, tool_name))

    def take_pending_input(self) -> List[InputEntry]:
        """Flush the pending-input buffer, returning what it held."""
        entries = self.user_message_content
        self.user_message_content = []
        return entries

    def begin_turn(self) -> None:
        """Reset per-turn streaming state before a new model request."""
        self.assistant_content = []
        self.current_streaming_content_index = 0
        self.user_message_content_ready = False
        self.did_complete_reading_stream = False
        self.did_reject_tool = False
        self.tool_invocations_this_turn = 0
        self.executed_invocations_this_turn = 0
        self.checkpointed_this_turn = False
        # Requests registered by tools only take effect at the end of the turn
        # that made them; a failed turn leaves nothing behind for the next one.
        self.completion_result = None
        self.pending_mode = None
        self.pending_subtask = None
        self.turn_count += 1
