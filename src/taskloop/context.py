"""Environment details merged into outbound model input.

``collect(task, include_file_details)`` returns a read-only snapshot: the
current time, active mode, and (on a task's first request only) a listing
of workspace files so the model knows what exists without exploring.
"""

import os
import subprocess
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .logger import get_logger
from .models import Task

log = get_logger("context")

SKIP_DIRS = frozenset({
    '.git', '.hg', '.svn', 'node_modules', '__pycache__', '.venv', 'venv',
    'env', 'dist', 'build', 'target', 'vendor', '.tox', '.mypy_cache',
    '.pytest_cache', '.ruff_cache', '.idea', '.vscode', '.taskloop',
    '.taskloop_output',
})

MAX_LISTED_FILES = 200


class EnvironmentContextProvider:
    """Collects workspace context for a task's outbound request."""

    def __init__(self, workspace_path: Path, max_files: int = MAX_LISTED_FILES):
        self.workspace_path = Path(workspace_path)
        self.max_files = max_files

    def collect(self, task: Task, include_file_details: bool) -> str:
        parts = [
            "<environment_details>",
            "# Current Time",
            datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S %Z"),
            "",
            "# Current Mode",
            task.mode,
        ]
        if include_file_details:
            files = self.list_files()
            parts += ["", f"# Current Working Directory ({self.workspace_path}) Files"]
            if files:
                parts.extend(files[: self.max_files])
                if len(files) > self.max_files:
                    parts.append(f"(File list truncated: {len(files) - self.max_files} more files)")
            else:
                parts.append("(No files found)")
        parts.append("</environment_details>")
        return "\n".join(parts)

    def list_files(self) -> List[str]:
        files = self._git_ls_files()
        if files is None:
            files = self._walk_filesystem()
        return sorted(files)

    def _git_ls_files(self) -> Optional[List[str]]:
        """Use git to list tracked + untracked-but-not-ignored files."""
        if not (self.workspace_path / ".git").exists():
            return None
        try:
            result = subprocess.run(
                ["git", "ls-files", "--cached", "--others", "--exclude-standard"],
                cwd=str(self.workspace_path), capture_output=True, text=True, timeout=10,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            log.debug("git ls-files unavailable: %s", e)
            return None
        if result.returncode != 0:
            return None
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def _walk_filesystem(self) -> List[str]:
        out: List[str] = []
        for root, dirs, filenames in os.walk(self.workspace_path):
            dirs[:] = [d for d in dirs if d not in SKIP_DIRS and not d.startswith(".")]
            for name in filenames:
                rel = Path(root, name).relative_to(self.workspace_path)
                out.append(rel.as_posix())
                if len(out) > self.max_files * 5:
                    return out
        return out
