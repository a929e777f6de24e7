"""Incremental parser turning streamed model output into content blocks.

Model output uses XML-style tool markup:

    Let me look at the config first.
    <read_file>
    <path>src/config.py</path>
    </read_file>

Each call to ``process_fragment`` appends raw text and re-derives only the
region after the last finalized block.  Finalized blocks are never
rebuilt, so callers observe an append-only sequence whose last element
may be a partial block that is replaced on the next call.  A delimiter
split across fragments (``<read_fi`` + ``le>``) is held back until it
can be recognised.
"""

import re
from typing import Iterable, List, Optional

from .models import ContentBlock, TextContent, ToolUse


def _partial_prefix_len(text: str, candidates: Iterable[str]) -> int:
    """Length of the longest suffix of text that is a proper prefix of a candidate tag."""
    idx = text.rfind("<")
    if idx == -1:
        return 0
    tail = text[idx:]
    if ">" in tail:
        return 0
    for candidate in candidates:
        if len(tail) < len(candidate) and candidate.startswith(tail):
            return len(tail)
    return 0


class AssistantMessageParser:
    """Stateful parser for one assistant turn."""

    def __init__(self, tool_names: Iterable[str], param_names: Iterable[str],
                 greedy_params: Iterable[str] = ("content", "diff")):
        self.tool_names = sorted(set(tool_names), key=len, reverse=True)
        self.param_names = sorted(set(param_names), key=len, reverse=True)
        self.greedy_params = set(greedy_params)
        self._openers = [f"<{name}>" for name in self.tool_names]
        self._tool_re = (
            re.compile("<(" + "|".join(re.escape(n) for n in self.tool_names) + ")>")
            if self.tool_names else None
        )
        self._param_re = (
            re.compile("<(" + "|".join(re.escape(p) for p in self.param_names) + ")>")
            if self.param_names else None
        )
        self.reset()

    def reset(self) -> None:
        self._buffer = ""
        self._offset = 0
        self._finalized: List[ContentBlock] = []
        self._partial: Optional[ContentBlock] = None
        self._done = False

    @property
    def text(self) -> str:
        """Everything received so far, verbatim."""
        return self._buffer

    @property
    def blocks(self) -> List[ContentBlock]:
        if self._partial is None:
            return list(self._finalized)
        return self._finalized + [self._partial]

    @property
    def finalized_count(self) -> int:
        return len(self._finalized)

    def process_fragment(self, raw: str) -> List[ContentBlock]:
        """Feed one fragment; return the current block sequence."""
        if self._done:
            raise RuntimeError("parser already finished; call reset() for a new turn")
        if raw:
            self._buffer += raw
            self._scan(final=False)
        return self.blocks

    def finish(self) -> List[ContentBlock]:
        """End of stream: force any partial block to finalize."""
        if not self._done:
            self._scan(final=True)
            self._done = True
        return self.blocks

    # ── internals ──

    def _scan(self, final: bool) -> None:
        buf = self._buffer
        while True:
            pos = self._offset
            match = self._tool_re.search(buf, pos) if self._tool_re else None
            if match is None:
                tail = buf[pos:]
                if not final:
                    cut = _partial_prefix_len(tail, self._openers)
                    if cut:
                        tail = tail[:-cut]
                text = tail.strip()
                if final:
                    if text:
                        self._finalized.append(TextContent(text, partial=False))
                    self._partial = None
                    self._offset = len(buf)
                else:
                    self._partial = TextContent(text, partial=True) if text else None
                return

            text = buf[pos:match.start()].strip()
            if text:
                self._finalized.append(TextContent(text, partial=False))
            self._offset = match.start()

            name = match.group(1)
            body_start = match.end()
            end = self._find_close(buf, name, body_start)
            if end == -1:
                params = self._parse_params(buf[body_start:], complete=False)
                if final:
                    self._finalized.append(ToolUse(name, params, partial=False))
                    self._partial = None
                    self._offset = len(buf)
                else:
                    self._partial = ToolUse(name, params, partial=True)
                return

            params = self._parse_params(buf[body_start:end], complete=True)
            self._finalized.append(ToolUse(name, params, partial=False))
            self._partial = None
            self._offset = end + len(f"</{name}>")

    def _find_close(self, buf: str, name: str, body_start: int) -> int:
        """Index of the tool's closing tag, skipping ones inside an open greedy param."""
        close = f"</{name}>"
        search_from = body_start
        while True:
            end = buf.find(close, search_from)
            if end == -1:
                return -1
            body = buf[body_start:end]
            inside_greedy = any(
                f"<{p}>" in body and f"</{p}>" not in body[body.find(f"<{p}>"):]
                for p in self.greedy_params
            )
            if not inside_greedy:
                return end
            search_from = end + len(close)

    def _parse_params(self, body: str, complete: bool) -> dict:
        params = {}
        if self._param_re is None:
            return params
        pos = 0
        while True:
            match = self._param_re.search(body, pos)
            if match is None:
                break
            name = match.group(1)
            close = f"</{name}>"
            start = match.end()
            if name in self.greedy_params and complete:
                end = body.rfind(close, start)
            else:
                end = body.find(close, start)
            if end == -1:
                value = body[start:]
                if not complete:
                    cut = _partial_prefix_len(value, [close])
                    if cut:
                        value = value[:-cut]
                params[name] = self._clean(name, value)
                break
            params[name] = self._clean(name, body[start:end])
            pos = end + len(close)
        return params

    def _clean(self, name: str, value: str) -> str:
        if name in self.greedy_params:
            if value.startswith("\n"):
                value = value[1:]
            if value.endswith("\n"):
                value = value[:-1]
            return value
        return value.strip()
