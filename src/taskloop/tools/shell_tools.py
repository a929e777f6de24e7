"""Shell command execution tool."""

import asyncio
from dataclasses import dataclass
from typing import Dict

from ..errors import FatalToolError
from ..tool_registry import ToolContext, ToolDef, ToolParam

DEFAULT_TIMEOUT = 120.0
MAX_OUTPUT_CHARS = 30_000


@dataclass
class ShellResult:
    """Result of a shell command execution."""
    stdout: str
    stderr: str
    return_code: int
    timed_out: bool = False

    def render(self) -> str:
        parts = []
        if self.stdout:
            parts.append(self.stdout.rstrip())
        if self.stderr:
            parts.append(f"[stderr]\n{self.stderr.rstrip()}")
        if self.timed_out:
            parts.append("[command timed out]")
        parts.append(f"[exit code: {self.return_code}]")
        text = "\n".join(parts)
        if len(text) > MAX_OUTPUT_CHARS:
            half = MAX_OUTPUT_CHARS // 2
            text = text[:half] + f"\n\n... ({len(text) - MAX_OUTPUT_CHARS} chars truncated) ...\n\n" + text[-half:]
        return text


async def run_shell_command(command: str, cwd: str, timeout: float = DEFAULT_TIMEOUT) -> ShellResult:
    process = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return ShellResult(stdout="", stderr=f"Command timed out after {timeout} seconds",
                           return_code=-1, timed_out=True)
    return ShellResult(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        return_code=process.returncode or 0,
    )


async def execute_command(ctx: ToolContext, params: Dict[str, str]) -> str:
    if not ctx.workspace_path.is_dir():
        raise FatalToolError(f"Workspace directory is missing: {ctx.workspace_path}")
    timeout = float(params.get("timeout", "").strip() or DEFAULT_TIMEOUT)
    result = await run_shell_command(params["command"], cwd=str(ctx.workspace_path), timeout=timeout)
    return result.render()


SHELL_TOOLS = [
    ToolDef(
        "execute_command", execute_command, group="command", requires_approval=True,
        params=[ToolParam("command", required=True, description="Shell command to run in {workspace}"),
                ToolParam("timeout", description="Seconds before the command is killed")],
        description="Execute a shell command in the working directory.",
    ),
]
