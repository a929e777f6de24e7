"""Command-line entry point."""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

from .api import ModelClient
from .approval import ApprovalGate, AutoApproveChannel, ConsoleApprovalChannel
from .checkpoints import CheckpointManager, JsonCheckpointStore, parse_checkpoint_id
from .config import EngineConfig
from .console import ConsolePresenter
from .engine import TaskLoopEngine
from .errors import CheckpointError, ConfigError, UnknownModeError
from .interrupt import KeyboardMonitor
from .logger import get_logger, init_logging
from .models import TerminationReason
from .modes import ModeRegistry
from .tools import default_registry

log = get_logger("cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="taskloop",
        description="Run an AI coding agent task loop in a workspace.",
    )
    parser.add_argument("task", nargs="?", help="Task description (read from stdin when piped)")
    parser.add_argument("--mode", "-m", help="Mode to run in (code, architect, ask)")
    parser.add_argument("--workspace", "-w", default=".", help="Workspace directory")
    parser.add_argument("--auto-approve", nargs="*", default=[], metavar="TOOL",
                        help="Tools that run without asking for approval")
    parser.add_argument("--yes", "-y", action="store_true",
                        help="Approve every request without prompting")
    parser.add_argument("--resume", metavar="CHECKPOINT_ID", help="Resume a task from a checkpoint")
    parser.add_argument("--list-checkpoints", action="store_true", help="List saved checkpoints and exit")
    parser.add_argument("--no-confirm-completion", action="store_true",
                        help="Finish as soon as the model signals completion")
    parser.add_argument("--max-turns", type=int, help="Stop after this many turns")
    return parser


def load_config(args: argparse.Namespace, workspace: Path) -> EngineConfig:
    config = EngineConfig.from_env(workspace=workspace)
    config.auto_approve = list(dict.fromkeys(config.auto_approve + list(args.auto_approve)))
    if args.no_confirm_completion:
        config.confirm_completion = False
    if args.max_turns is not None:
        config.max_turns = args.max_turns
    if args.mode:
        config.default_mode = args.mode
    config.validate()
    return config


def list_checkpoints(config: EngineConfig, console: Console) -> None:
    store = JsonCheckpointStore(config.checkpoint_dir)
    ids = store.list_ids()
    if not ids:
        console.print("No checkpoints found.")
        return
    table = Table(title=f"Checkpoints in {config.checkpoint_dir}")
    table.add_column("Checkpoint")
    table.add_column("Task")
    table.add_column("Turn", justify="right")
    for checkpoint_id in ids:
        task_id, turn = parse_checkpoint_id(checkpoint_id)
        table.add_row(checkpoint_id, task_id, str(turn))
    console.print(table)


def read_task_text(args: argparse.Namespace) -> Optional[str]:
    if args.task:
        return args.task
    if args.resume:
        return None
    if not sys.stdin.isatty():
        return sys.stdin.read().strip() or None
    return Prompt.ask("[bold blue]Task[/bold blue]").strip() or None


async def run_cli(args: argparse.Namespace, config: EngineConfig, console: Console,
                  task_text: Optional[str]) -> TerminationReason:
    loop = asyncio.get_running_loop()
    engine: Optional[TaskLoopEngine] = None

    def on_abort(reason: str) -> None:
        if engine is not None:
            loop.call_soon_threadsafe(engine.abort_all, reason)

    def on_pause_toggle() -> None:
        if engine is not None:
            loop.call_soon_threadsafe(engine.toggle_pause)

    monitor = KeyboardMonitor(on_abort, on_pause_toggle)
    channel = AutoApproveChannel() if args.yes else ConsoleApprovalChannel(console, monitor=monitor)
    gate = ApprovalGate(channel, auto_approve=config.auto_approve)

    async with ModelClient(
        api_key=config.api_key,
        base_url=config.api_url,
        model=config.model,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
    ) as api:
        engine = TaskLoopEngine(
            api, default_registry(), gate,
            modes=ModeRegistry(),
            checkpoints=CheckpointManager(JsonCheckpointStore(config.checkpoint_dir)),
            presenter=ConsolePresenter(console),
            config=config,
        )
        if args.resume:
            task = engine.restore(args.resume)
            if args.mode:
                engine.modes.get(args.mode)
                task.mode = args.mode
            console.print(f"[dim]Resumed task {task.task_id} ({len(task.history)} messages)[/dim]")
        else:
            task = engine.new_task(config.default_mode)
        init_logging(str(config.workspace_path), session_id=task.task_id)

        console.print(f"[bold blue]taskloop[/bold blue] [dim]mode={task.mode} | "
                      f"Esc abort | Ctrl+P pause/resume | workspace: {config.workspace_path}[/dim]\n")
        monitor.start()
        try:
            reason = await engine.run(task, task_text)
        finally:
            monitor.stop()

    summary = engine.metrics.summary()
    log.info("tool metrics: %s", summary)
    log.debug("recent tool calls: %s", engine.metrics.recent())
    console.print(f"[dim]Tokens: in={task.usage.input_tokens} out={task.usage.output_tokens} | "
                  f"tool calls: {summary['total_calls']}[/dim]")
    if engine.checkpoints.saved:
        console.print(f"[dim]Last checkpoint: {engine.checkpoints.saved[-1]}[/dim]")
    return reason


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    console = Console()
    workspace = Path(args.workspace).resolve()
    if not workspace.is_dir():
        console.print(f"[red]Workspace does not exist: {workspace}[/red]")
        return 2

    init_logging(str(workspace))
    try:
        config = load_config(args, workspace)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        return 2

    if args.list_checkpoints:
        list_checkpoints(config, console)
        return 0

    task_text = read_task_text(args)
    if not task_text and not args.resume:
        console.print("[red]No task provided.[/red]")
        return 1

    try:
        reason = asyncio.run(run_cli(args, config, console, task_text))
    except (CheckpointError, UnknownModeError) as e:
        console.print(f"[red]{e}[/red]")
        return 2
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        return 130
    log.info("CLI finished: %s", reason.value)
    return 0 if reason is TerminationReason.COMPLETED else 1


if __name__ == "__main__":
    sys.exit(main())
