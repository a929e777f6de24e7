"""Modes: named capability sets that decide which tools a task may use."""

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import UnknownModeError
from .tool_registry import ToolDef

# Tools in this group are available in every mode.
ALWAYS_AVAILABLE_GROUP = "meta"


@dataclass(frozen=True)
class Mode:
    """A mode's identity, persona and permitted tool groups.

    ``file_patterns`` restricts a group to paths matching a regex, e.g. an
    architect that may only edit Markdown.
    """
    slug: str
    name: str
    role_definition: str
    groups: Tuple[str, ...]
    file_patterns: Dict[str, str] = field(default_factory=dict)

    def allows_group(self, group: str) -> bool:
        return group == ALWAYS_AVAILABLE_GROUP or group in self.groups


DEFAULT_MODES: List[Mode] = [
    Mode(
        slug="code",
        name="Code",
        role_definition=(
            "You are a highly skilled software engineer with extensive knowledge in many "
            "programming languages, frameworks, design patterns, and best practices."
        ),
        groups=("read", "edit", "command"),
    ),
    Mode(
        slug="architect",
        name="Architect",
        role_definition=(
            "You are an experienced technical lead who plans before building. You gather "
            "context, ask clarifying questions and write plans, but you do not change code."
        ),
        groups=("read", "edit"),
        file_patterns={"edit": r"\.md$"},
    ),
    Mode(
        slug="ask",
        name="Ask",
        role_definition=(
            "You are a knowledgeable technical assistant focused on answering questions "
            "about software development, technology and related topics."
        ),
        groups=("read",),
    ),
]


class ModeRegistry:
    """Lookup and permission checks over the known modes."""

    def __init__(self, modes: Iterable[Mode] = DEFAULT_MODES):
        self._modes: Dict[str, Mode] = {m.slug: m for m in modes}

    def get(self, slug: str) -> Mode:
        mode = self._modes.get(slug)
        if mode is None:
            raise UnknownModeError(
                f"Unknown mode '{slug}'. Available modes: {', '.join(self.slugs())}"
            )
        return mode

    def __contains__(self, slug: str) -> bool:
        return slug in self._modes

    def slugs(self) -> List[str]:
        return list(self._modes)

    def list_modes(self) -> List[Mode]:
        return list(self._modes.values())

    def check_tool(self, slug: str, tool: ToolDef,
                   params: Optional[Dict[str, str]] = None) -> Optional[str]:
        """Return a rejection reason, or None when the tool is permitted."""
        mode = self.get(slug)
        if not mode.allows_group(tool.group):
            return f"Tool '{tool.name}' is not allowed in {mode.name} mode."
        pattern = mode.file_patterns.get(tool.group)
        if pattern and params is not None:
            path = params.get("path", "")
            if path and not re.search(pattern, path):
                return (
                    f"{mode.name} mode can only use '{tool.name}' on files matching "
                    f"{pattern}; got '{path}'."
                )
        return None

    def tools_for(self, slug: str, tools: Iterable[ToolDef]) -> List[ToolDef]:
        mode = self.get(slug)
        return [t for t in tools if mode.allows_group(t.group)]
