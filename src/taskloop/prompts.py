"""System prompt generator - XML tool format, filtered by the active mode."""

import os
import platform
from pathlib import Path
from typing import List

from .logger import get_logger
from .modes import Mode
from .tool_registry import ToolDef

_log = get_logger("prompts")


def load_agent_rules(workspace_path: str) -> str:
    """Load the agent.md file from the workspace root, if it exists."""
    agent_md = Path(workspace_path) / "agent.md"
    if agent_md.exists():
        try:
            content = agent_md.read_text(encoding="utf-8").strip()
            if content:
                _log.debug("Loaded agent.md (%d chars) from %s", len(content), workspace_path)
                return content
        except OSError as e:
            _log.warning("Failed to read agent.md: %s", e)
    return ""


def format_tool(tool: ToolDef, workspace_path: str) -> str:
    lines = [f"## {tool.name}", tool.description or "(no description)"]
    if tool.params:
        lines.append("Parameters:")
        for p in tool.params:
            flag = "required" if p.required else "optional"
            desc = p.description.replace("{workspace}", workspace_path)
            lines.append(f"- {p.name}: ({flag}) {desc}".rstrip())
    lines.append("Usage:")
    lines.append(f"<{tool.name}>")
    for p in tool.params:
        lines.append(f"<{p.name}>{p.name} here</{p.name}>")
    lines.append(f"</{tool.name}>")
    return "\n".join(lines)


def get_system_prompt(workspace_path: str, mode: Mode, tools: List[ToolDef],
                      modes: List[Mode]) -> str:
    """Build the system prompt for one mode.

    Only tools the mode permits are described, so the model is never
    invited to call something validation would reject.
    """
    os_name = platform.system()
    if os_name == "Windows":
        shell = "PowerShell"
    else:
        shell = os.path.basename(os.environ.get("SHELL", "bash"))

    tool_docs = "\n\n".join(format_tool(t, workspace_path) for t in tools)
    mode_list = "\n".join(f"- {m.slug}: {m.name}" for m in modes)
    agent_rules = load_agent_rules(workspace_path)

    prompt = f'''{mode.role_definition}

====

TOOL USE

You have access to tools that are executed upon the user's approval. Tools use XML tags.
You receive each tool's result in the next message. Use tools step by step, each informed by
the result of the previous one.

<tool_name>
<parameter_name>value</parameter_name>
</tool_name>

# Tools

{tool_docs}

====

RULES

- Every response MUST contain at least one tool use. If you have nothing left to do, use attempt_completion.
- Never repeat the exact same tool call twice in a row; it will be blocked.
- Wait for the result of a tool before assuming it succeeded.
- Paths are relative to the working directory: {workspace_path}
- When the task is complete, use attempt_completion with a final result. Do not end with a question.

====

MODES

Current mode: {mode.slug} ({mode.name})
Available modes (switch with switch_mode):
{mode_list}

====

SYSTEM INFORMATION

Operating System: {os_name} {platform.release()}
Default Shell: {shell}
Current Working Directory: {workspace_path}
'''
    if agent_rules:
        prompt += f"\n====\n\nPROJECT RULES (agent.md)\n\n{agent_rules}\n"
    return prompt
