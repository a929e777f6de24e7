"""File operation tools."""

import os
from pathlib import Path
from typing import Dict, List

import aiofiles

from ..tool_registry import ToolContext, ToolDef, ToolParam

MAX_LIST_ENTRIES = 500


def resolve_in_workspace(workspace: Path, rel_path: str) -> Path:
    """Resolve rel_path against the workspace, refusing paths that escape it."""
    root = Path(workspace).resolve()
    path = (root / rel_path).resolve()
    if path != root and root not in path.parents:
        raise PermissionError(f"Path is outside the workspace: {rel_path}")
    return path


async def read_file(ctx: ToolContext, params: Dict[str, str]) -> str:
    """Read a file, optionally limited to a 1-based inclusive line range."""
    path = resolve_in_workspace(ctx.workspace_path, params["path"])
    if not path.is_file():
        raise FileNotFoundError(f"File not found: {params['path']}")

    async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
        content = await f.read()

    start_line = params.get("start_line", "").strip()
    end_line = params.get("end_line", "").strip()
    if start_line or end_line:
        lines = content.splitlines(keepends=True)
        start_idx = int(start_line) - 1 if start_line else 0
        end_idx = int(end_line) if end_line else len(lines)
        content = "".join(lines[max(start_idx, 0):end_idx])
    return content


async def write_to_file(ctx: ToolContext, params: Dict[str, str]) -> str:
    path = resolve_in_workspace(ctx.workspace_path, params["path"])
    path.parent.mkdir(parents=True, exist_ok=True)
    content = params.get("content", "")
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(content)
    return f"Successfully wrote {len(content)} characters to {params['path']}"


async def list_files(ctx: ToolContext, params: Dict[str, str]) -> str:
    root = resolve_in_workspace(ctx.workspace_path, params.get("path", ".") or ".")
    if not root.is_dir():
        raise NotADirectoryError(f"Not a directory: {params.get('path')}")
    recursive = params.get("recursive", "").strip().lower() == "true"

    entries: List[str] = []
    if recursive:
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for name in sorted(filenames):
                entries.append(Path(dirpath, name).relative_to(root).as_posix())
                if len(entries) >= MAX_LIST_ENTRIES:
                    break
            if len(entries) >= MAX_LIST_ENTRIES:
                break
    else:
        for child in sorted(root.iterdir()):
            entries.append(child.name + ("/" if child.is_dir() else ""))

    if not entries:
        return "No files found."
    listing = "\n".join(entries[:MAX_LIST_ENTRIES])
    if len(entries) >= MAX_LIST_ENTRIES:
        listing += f"\n(Listing truncated at {MAX_LIST_ENTRIES} entries)"
    return listing


FILE_TOOLS = [
    ToolDef(
        "read_file", read_file, group="read",
        params=[ToolParam("path", required=True, description="File path relative to {workspace}"),
                ToolParam("start_line", description="1-based start line"),
                ToolParam("end_line", description="1-based end line (inclusive)")],
        description="Read the contents of a file.",
    ),
    ToolDef(
        "list_files", list_files, group="read",
        params=[ToolParam("path", required=True, description="Directory relative to {workspace}"),
                ToolParam("recursive", description="'true' to list recursively")],
        description="List files in a directory.",
    ),
    ToolDef(
        "write_to_file", write_to_file, group="edit", requires_approval=True, complex_content=True,
        params=[ToolParam("path", required=True, description="File path relative to {workspace}"),
                ToolParam("content", required=True, description="Complete new file content")],
        description="Create or overwrite a file with the given content.",
    ),
]
