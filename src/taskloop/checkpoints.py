"""Checkpointing of task state at turn boundaries.

``CheckpointManager.save_if_needed`` writes at most one snapshot per turn;
``restore`` rebuilds a ``Task`` from one.  Persistence itself sits behind
``CheckpointStore`` (``save(task) -> id``, ``load(id) -> task``); the
default store writes one JSON document per checkpoint.
"""

import re
import time
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from .errors import CheckpointError
from .logger import get_logger, log_exception
from .models import ApiMessage, InputEntry, Task, TokenUsage

log = get_logger("checkpoints")

CHECKPOINT_ID_RE = re.compile(r"^(?P<task>.+)-(?P<turn>\d{4,})-(?P<suffix>[0-9a-f]{6})$")


def parse_checkpoint_id(checkpoint_id: str) -> Optional[Tuple[str, int]]:
    """Split an id into (task_id, turn), or None if it is not one of ours."""
    match = CHECKPOINT_ID_RE.match(checkpoint_id)
    if match is None:
        return None
    return match.group("task"), int(match.group("turn"))


class TaskSnapshot(BaseModel):
    """Serializable view of everything needed to resume a task's loop."""
    checkpoint_id: str
    task_id: str
    parent_id: Optional[str] = None
    created_at: float
    saved_at: float
    turn_count: int = 0
    mode: str
    consecutive_mistake_count: int = 0
    consecutive_mistake_limit: int = 3
    repetition_limit: int = 1
    repetition_history: List[str] = Field(default_factory=list)
    history: List[Dict[str, str]] = Field(default_factory=list)
    pending_input: List[Dict[str, Optional[str]]] = Field(default_factory=list)
    usage: Dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_task(cls, task: Task, checkpoint_id: str) -> "TaskSnapshot":
        return cls(
            checkpoint_id=checkpoint_id,
            task_id=task.task_id,
            parent_id=task.parent_id,
            created_at=task.created_at,
            saved_at=time.time(),
            turn_count=task.turn_count,
            mode=task.mode,
            consecutive_mistake_count=task.consecutive_mistake_count,
            consecutive_mistake_limit=task.consecutive_mistake_limit,
            repetition_limit=task.repetition_limit,
            repetition_history=task.repetition.to_list(),
            history=[m.to_dict() for m in task.history],
            pending_input=[e.to_dict() for e in task.user_message_content],
            usage={
                "input_tokens": task.usage.input_tokens,
                "output_tokens": task.usage.output_tokens,
                "cache_read_tokens": task.usage.cache_read_tokens,
            },
        )

    def to_task(self) -> Task:
        """Rebuild a task.  Control flags come back cleared: nothing is aborted or paused."""
        task = Task(
            mode=self.mode,
            consecutive_mistake_limit=self.consecutive_mistake_limit,
            repetition_limit=self.repetition_limit,
            task_id=self.task_id,
            parent_id=self.parent_id,
            created_at=self.created_at,
            history=[ApiMessage(m["role"], m["content"]) for m in self.history],
            consecutive_mistake_count=self.consecutive_mistake_count,
            user_message_content=[InputEntry.from_dict(e) for e in self.pending_input],
            turn_count=self.turn_count,
            usage=TokenUsage(**self.usage),
        )
        task.repetition.load_list(self.repetition_history)
        return task


class CheckpointStore:
    """Persistence boundary.  Subclasses implement ``save`` and ``load``."""

    def save(self, task: Task) -> str:
        raise NotImplementedError

    def load(self, checkpoint_id: str) -> Task:
        raise NotImplementedError


class JsonCheckpointStore(CheckpointStore):
    """One JSON file per checkpoint under ``directory``."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, checkpoint_id: str) -> Path:
        if not checkpoint_id or "/" in checkpoint_id or "\\" in checkpoint_id or ".." in checkpoint_id:
            raise CheckpointError(f"Invalid checkpoint id: {checkpoint_id!r}")
        return self.directory / f"{checkpoint_id}.json"

    def save(self, task: Task) -> str:
        checkpoint_id = f"{task.task_id}-{task.turn_count:04d}-{uuid.uuid4().hex[:6]}"
        snapshot = TaskSnapshot.from_task(task, checkpoint_id)
        path = self._path(checkpoint_id)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            raise CheckpointError(f"Failed to write checkpoint {checkpoint_id}: {e}") from e
        return checkpoint_id

    def load(self, checkpoint_id: str) -> Task:
        path = self._path(checkpoint_id)
        if not path.exists():
            raise CheckpointError(f"Checkpoint not found: {checkpoint_id}")
        try:
            snapshot = TaskSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError) as e:
            raise CheckpointError(f"Corrupt checkpoint {checkpoint_id}: {e}") from e
        return snapshot.to_task()

    def list_ids(self, task_id: Optional[str] = None) -> List[str]:
        """Checkpoint ids, oldest first, optionally filtered to one task."""
        if not self.directory.exists():
            return []
        paths = sorted(self.directory.glob("*.json"), key=lambda p: p.stat().st_mtime)
        ids = []
        for path in paths:
            parsed = parse_checkpoint_id(path.stem)
            if parsed is None:
                log.debug("Ignoring %s: not a checkpoint file", path.name)
                continue
            if task_id and parsed[0] != task_id:
                continue
            ids.append(path.stem)
        return ids


class CheckpointManager:
    """Guards checkpoint writes so each turn produces at most one."""

    def __init__(self, store: Optional[CheckpointStore] = None):
        self.store = store
        self.saved: List[str] = []

    def begin_turn(self, task: Task) -> None:
        task.checkpointed_this_turn = False

    def save_if_needed(self, task: Task) -> Optional[str]:
        if self.store is None or task.checkpointed_this_turn:
            return None
        try:
            checkpoint_id = self.store.save(task)
        except CheckpointError as e:
            # A failed write leaves the flag clear so a later boundary can retry.
            log_exception(log, f"Checkpoint failed for task {task.task_id}", e)
            return None
        task.checkpointed_this_turn = True
        self.saved.append(checkpoint_id)
        log.info("Checkpoint saved: task=%s turn=%d id=%s",
                 task.task_id, task.turn_count, checkpoint_id)
        return checkpoint_id

    def restore(self, checkpoint_id: str) -> Task:
        if self.store is None:
            raise CheckpointError("No checkpoint store configured")
        task = self.store.load(checkpoint_id)
        log.info("Checkpoint restored: task=%s id=%s history=%d",
                 task.task_id, checkpoint_id, len(task.history))
        return task

