"""Detection of back-to-back identical tool invocations.

A model that loses track of its progress tends to issue the exact same
call again (re-reading the same file, re-running the same command).  The
detector remembers the signatures of the most recently *executed*
invocations and blocks a candidate that would extend a run of identical
calls past the configured limit.

Canonical signature: the tool name plus the parameter mapping sorted by
key, with each value's line endings normalised to ``\\n`` and surrounding
whitespace stripped.  Whitespace inside a value is significant, so two
commands that differ only in inner spacing are treated as distinct.
"""

import hashlib
import json
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Mapping, Optional

from .logger import get_logger

log = get_logger("repetition")


def _normalize_value(value: object) -> str:
    text = value if isinstance(value, str) else str(value)
    return text.replace("\r\n", "\n").replace("\r", "\n").strip()


def canonical_signature(name: str, parameters: Mapping[str, object]) -> str:
    """Return an order-independent signature for (name, parameters)."""
    normalized = {key: _normalize_value(parameters[key]) for key in sorted(parameters)}
    payload = json.dumps([name, normalized], sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


@dataclass
class RepetitionVerdict:
    allowed: bool
    reason: str = ""


class ToolRepetitionDetector:
    """Tracks the trailing window of executed invocation signatures.

    ``limit`` is how many identical consecutive executions are tolerated;
    with the default of 1 the second identical call in a row is blocked.
    """

    def __init__(self, limit: int = 1, window: Optional[int] = None):
        if limit < 1:
            raise ValueError("repetition limit must be >= 1")
        self.limit = limit
        self._history: Deque[str] = deque(maxlen=max(window or limit, limit))

    def check(self, candidate) -> RepetitionVerdict:
        """Check a candidate with ``.name`` and ``.parameters`` attributes."""
        signature = canonical_signature(candidate.name, candidate.parameters)
        run = 0
        for previous in reversed(self._history):
            if previous != signature:
                break
            run += 1
        if run >= self.limit:
            log.info("Repetition blocked: %s signature=%s run=%d",
                     candidate.name, signature, run)
            return RepetitionVerdict(
                allowed=False,
                reason=(
                    f"Tool call '{candidate.name}' repeats the previous call with identical "
                    f"parameters. It was not executed. Try a different approach or "
                    f"different parameters."
                ),
            )
        return RepetitionVerdict(allowed=True)

    def record(self, candidate) -> None:
        """Remember a candidate that actually executed."""
        self._history.append(canonical_signature(candidate.name, candidate.parameters))

    def reset(self) -> None:
        self._history.clear()

    # Persistence helpers for checkpoints

    def to_list(self) -> List[str]:
        return list(self._history)

    def load_list(self, signatures: List[str]) -> None:
        self._history.clear()
        self._history.extend(signatures)

    @property
    def last_signature(self) -> Optional[str]:
        return self._history[-1] if self._history else None

    def __len__(self) -> int:
        return len(self._history)


def describe_parameters(parameters: Dict[str, str], max_len: int = 60) -> str:
    """Short human-readable rendering of a parameter mapping."""
    if not parameters:
        return ""
    parts = []
    for key in sorted(parameters):
        value = _normalize_value(parameters[key]).replace("\n", " ")
        if len(value) > max_len:
            value = value[:max_len] + "..."
        parts.append(f"{key}={value!r}")
    return ", ".join(parts)
