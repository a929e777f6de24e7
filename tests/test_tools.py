"""Tests for the built-in tools."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from taskloop.approval import ASK_FOLLOWUP, ApprovalDecision, ApprovalGate, ScriptedApprovalChannel
from taskloop.errors import FatalToolError, UnknownModeError
from taskloop.models import SubtaskRequest, Task
from taskloop.modes import ModeRegistry
from taskloop.tool_registry import ToolContext, ToolDef, ToolMetrics, ToolRegistry
from taskloop.tools import default_registry
from taskloop.tools.file_tools import list_files, read_file, resolve_in_workspace, write_to_file
from taskloop.tools.meta import ask_followup_question, attempt_completion, new_task, switch_mode
from taskloop.tools.shell_tools import ShellResult, execute_command


def make_ctx(tmp_path, decisions=(), task=None):
    channel = ScriptedApprovalChannel(decisions)
    ctx = ToolContext(task=task or Task(), workspace_path=tmp_path,
                      gate=ApprovalGate(channel), modes=ModeRegistry())
    return ctx, channel


class TestFileTools:

    def test_read_file(self, tmp_path):
        (tmp_path / "a.txt").write_text("one\ntwo\nthree\n")
        ctx, _ = make_ctx(tmp_path)
        assert asyncio.run(read_file(ctx, {"path": "a.txt"})) == "one\ntwo\nthree\n"

    def test_read_file_line_range(self, tmp_path):
        (tmp_path / "a.txt").write_text("one\ntwo\nthree\n")
        ctx, _ = make_ctx(tmp_path)
        result = asyncio.run(read_file(ctx, {"path": "a.txt", "start_line": "2", "end_line": "2"}))
        assert result == "two\n"

    def test_read_missing_file(self, tmp_path):
        ctx, _ = make_ctx(tmp_path)
        with pytest.raises(FileNotFoundError):
            asyncio.run(read_file(ctx, {"path": "nope.txt"}))

    def test_paths_cannot_escape_workspace(self, tmp_path):
        with pytest.raises(PermissionError):
            resolve_in_workspace(tmp_path, "../outside.txt")
        assert resolve_in_workspace(tmp_path, "sub/../a.txt") == (tmp_path / "a.txt").resolve()

    def test_write_creates_directories(self, tmp_path):
        ctx, _ = make_ctx(tmp_path)
        result = asyncio.run(write_to_file(ctx, {"path": "docs/plan.md", "content": "# Plan\n"}))
        assert "docs/plan.md" in result
        assert (tmp_path / "docs" / "plan.md").read_text() == "# Plan\n"

    def test_list_files(self, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "main.py").write_text("")
        (tmp_path / "README.md").write_text("")
        ctx, _ = make_ctx(tmp_path)
        assert asyncio.run(list_files(ctx, {"path": "."})) == "README.md\nsrc/"
        recursive = asyncio.run(list_files(ctx, {"path": ".", "recursive": "true"}))
        assert recursive.splitlines() == ["README.md", "src/main.py"]


class TestShellTool:

    def test_execute_command(self, tmp_path):
        ctx, _ = make_ctx(tmp_path)
        result = asyncio.run(execute_command(ctx, {"command": "echo hello"}))
        assert "hello" in result
        assert "[exit code: 0]" in result

    def test_missing_workspace_is_fatal(self, tmp_path):
        ctx, _ = make_ctx(tmp_path / "gone")
        with pytest.raises(FatalToolError):
            asyncio.run(execute_command(ctx, {"command": "ls"}))

    def test_render_includes_stderr_and_code(self):
        text = ShellResult(stdout="out\n", stderr="warn\n", return_code=2).render()
        assert text == "out\n[stderr]\nwarn\n[exit code: 2]"


class TestMetaTools:

    def test_attempt_completion_records_result(self, tmp_path):
        ctx, _ = make_ctx(tmp_path)
        asyncio.run(attempt_completion(ctx, {"result": "Implemented the parser."}))
        assert ctx.task.completion_result == "Implemented the parser."

    def test_followup_question_returns_answer(self, tmp_path):
        ctx, channel = make_ctx(tmp_path, decisions=[ApprovalDecision.approve("Use PostgreSQL")])
        result = asyncio.run(ask_followup_question(ctx, {"question": "Which database?"}))
        assert result == "<answer>\nUse PostgreSQL\n</answer>"
        assert channel.requests == [(ASK_FOLLOWUP, "Which database?")]

    def test_switch_mode_is_deferred(self, tmp_path):
        ctx, _ = make_ctx(tmp_path, task=Task(mode="code"))
        asyncio.run(switch_mode(ctx, {"mode_slug": "ask", "reason": "just questions"}))
        assert ctx.task.mode == "code"
        assert ctx.task.pending_mode == "ask"

    def test_switch_to_unknown_mode(self, tmp_path):
        ctx, _ = make_ctx(tmp_path)
        with pytest.raises(UnknownModeError):
            asyncio.run(switch_mode(ctx, {"mode_slug": "wizard"}))
        assert ctx.task.pending_mode is None

    def test_new_task_registers_one_subtask(self, tmp_path):
        ctx, _ = make_ctx(tmp_path)
        asyncio.run(new_task(ctx, {"mode": "ask", "message": "Explain the build"}))
        assert ctx.task.pending_subtask == SubtaskRequest(mode="ask", message="Explain the build")
        with pytest.raises(RuntimeError):
            asyncio.run(new_task(ctx, {"mode": "code", "message": "another"}))


class TestRegistry:

    def test_default_registry_contents(self):
        registry = default_registry()
        assert {"read_file", "write_to_file", "list_files", "execute_command",
                "attempt_completion", "ask_followup_question", "switch_mode",
                "new_task"} <= set(registry.names())
        assert registry.complex_content_params() == {"content"}
        assert "command" in registry.param_names()

    def test_mode_filtering(self):
        modes = ModeRegistry()
        names = [t.name for t in modes.tools_for("ask", default_registry().list_tools())]
        assert "read_file" in names
        assert "attempt_completion" in names
        assert "write_to_file" not in names
        assert "execute_command" not in names

    def test_architect_edits_only_markdown(self):
        modes = ModeRegistry()
        write = default_registry().get("write_to_file")
        assert modes.check_tool("architect", write, {"path": "plan.md"}) is None
        assert "plan.py" in modes.check_tool("architect", write, {"path": "plan.py"})

    def test_sync_handlers_and_structured_results(self, tmp_path):
        registry = ToolRegistry([ToolDef("stats", lambda ctx, params: {"files": 3})])
        ctx, _ = make_ctx(tmp_path)
        assert asyncio.run(registry.execute("stats", ctx, {})) == '{\n  "files": 3\n}'


class TestToolMetrics:

    def test_summary_and_recent(self):
        metrics = ToolMetrics()
        metrics.record("read_file", 12.0, "succeeded", result_size=5)
        metrics.record("read_file", 8.0, "failed", error="missing")
        metrics.record("list_files", 3.0, "succeeded")

        summary = metrics.summary()
        assert summary["total_calls"] == 3
        assert summary["total_errors"] == 1
        assert summary["per_tool"]["read_file"] == {
            "count": 2, "avg_ms": 10.0, "min_ms": 8.0, "max_ms": 12.0, "errors": 1,
        }
        recent = metrics.recent(2)
        assert [r["tool"] for r in recent] == ["read_file", "list_files"]
        assert recent[0]["error"] == "missing"

    def test_history_is_bounded(self):
        metrics = ToolMetrics(history_size=2)
        for i in range(5):
            metrics.record(f"t{i}", 1.0, "succeeded")
        assert [r["tool"] for r in metrics.recent()] == ["t3", "t4"]
        assert metrics.summary()["total_calls"] == 5
