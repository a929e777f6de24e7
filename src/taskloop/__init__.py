"""taskloop - the control loop of an interactive AI coding agent."""

from .approval import (
    ApprovalChannel, ApprovalDecision, ApprovalGate, AutoApproveChannel,
    ConsoleApprovalChannel, ScriptedApprovalChannel,
)
from .checkpoints import CheckpointManager, CheckpointStore, JsonCheckpointStore
from .config import EngineConfig
from .dispatch import ToolDispatcher
from .engine import TaskLoopEngine, WorkItem
from .errors import (
    CheckpointError, ConfigError, FatalToolError, StreamError, TaskLoopError, UnknownModeError,
)
from .models import (
    OutcomeKind, Task, TerminationReason, TextContent, ToolInvocationRequest, ToolOutcome, ToolUse,
)
from .modes import Mode, ModeRegistry
from .parser import AssistantMessageParser
from .repetition import ToolRepetitionDetector
from .tool_registry import ToolDef, ToolParam, ToolRegistry

__version__ = "0.1.0"
__all__ = [
    "TaskLoopEngine",
    "WorkItem",
    "Task",
    "TerminationReason",
    "TextContent",
    "ToolUse",
    "ToolInvocationRequest",
    "ToolOutcome",
    "OutcomeKind",
    "AssistantMessageParser",
    "ToolDispatcher",
    "ToolRepetitionDetector",
    "ToolDef",
    "ToolParam",
    "ToolRegistry",
    "Mode",
    "ModeRegistry",
    "ApprovalChannel",
    "ApprovalDecision",
    "ApprovalGate",
    "AutoApproveChannel",
    "ConsoleApprovalChannel",
    "ScriptedApprovalChannel",
    "CheckpointManager",
    "CheckpointStore",
    "JsonCheckpointStore",
    "EngineConfig",
    "TaskLoopError",
    "ConfigError",
    "StreamError",
    "FatalToolError",
    "CheckpointError",
    "UnknownModeError",
]
