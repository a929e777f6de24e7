"""Built-in tool definitions."""

from typing import List

from ..tool_registry import ToolDef, ToolRegistry
from .file_tools import FILE_TOOLS
from .meta import META_TOOLS
from .shell_tools import SHELL_TOOLS


def builtin_tools() -> List[ToolDef]:
    return list(FILE_TOOLS) + list(SHELL_TOOLS) + list(META_TOOLS)


def default_registry() -> ToolRegistry:
    return ToolRegistry(builtin_tools())


__all__ = ["builtin_tools", "default_registry", "FILE_TOOLS", "META_TOOLS", "SHELL_TOOLS"]
