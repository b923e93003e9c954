"""
main.py — Compliance Scheduler Entry Point

Usage:
    compliance-scheduler run config/tasks.example.yaml            # run until Ctrl+C
    compliance-scheduler run tasks.yaml --duration 60             # run for 60 s
    compliance-scheduler future-runs "06:00:00Z/PT12H" --start 2018-11-14T00:00:00Z
    compliance-scheduler modules                                  # module load status
    compliance-scheduler --log-level DEBUG --config path/to/config.yaml run tasks.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.table import Table

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2


def _find_env_file() -> Path | None:
    """Nearest .env in the working directory or one of its parents."""
    cwd = Path.cwd()
    for d in [cwd, *cwd.parents]:
        candidate = d / ".env"
        if candidate.is_file():
            return candidate
    return None


# ══════════════════════════════════════════════════════════════════════════════
# BOOTSTRAP
# ══════════════════════════════════════════════════════════════════════════════

def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns settings ready for use, or None after printing the problem.
    """
    from pydantic import ValidationError

    from compliance_scheduler.config.settings import ConfigError, load_settings
    from compliance_scheduler.observability.logger import setup_logging

    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in e['loc']) or '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\nConfig validation failed:\n\n{problems}\n\n"
            f"    Correct the values above and run the command again.\n",
            file=sys.stderr,
        )
        return None
    except (OSError, yaml.YAMLError) as exc:
        print(f"\nFailed to load config: {type(exc).__name__}: {exc}\n", file=sys.stderr)
        return None

    if args.command in ("run", "modules"):
        try:
            settings.validate_all()
        except ConfigError as exc:
            print(str(exc), file=sys.stderr)
            return None

    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
        source_id=settings.engine.source_id,
    )
    return settings


# ══════════════════════════════════════════════════════════════════════════════
# TASK FILES
# ══════════════════════════════════════════════════════════════════════════════

def load_tasks_file(path: str | Path):
    """
    Read a YAML task set: either a list of tasks or a mapping with a
    `tasks` list. Raises ValueError on malformed entries.
    """
    from compliance_scheduler.scheduler import TaskDefinition

    with Path(path).open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or []
    if isinstance(raw, dict):
        raw = raw.get("tasks") or []
    if not isinstance(raw, list):
        raise ValueError(f"{path}: expected a list of tasks")

    tasks = []
    for i, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ValueError(f"{path}: task #{i + 1} is not a mapping")
        try:
            tasks.append(TaskDefinition.from_dict(entry))
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"{path}: task #{i + 1} is invalid: {e}") from e
    return tasks


# ══════════════════════════════════════════════════════════════════════════════
# COMMANDS
# ══════════════════════════════════════════════════════════════════════════════

def cmd_run(args, settings) -> int:
    """Start a task set and stream its outputs."""
    console = Console(no_color=args.no_color)
    try:
        tasks = load_tasks_file(args.tasks)
    except (OSError, yaml.YAMLError, ValueError) as e:
        console.print(f"[red]Could not load tasks:[/red] {escape(str(e))}")
        return EXIT_ERROR
    try:
        return asyncio.run(_run(args, settings, tasks, console))
    except KeyboardInterrupt:
        return EXIT_OK


async def _run(args, settings, tasks, console: Console) -> int:
    from compliance_scheduler.manager import ComplianceModuleManager

    manager = ComplianceModuleManager.from_settings(settings)
    manager.load()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + args.duration if args.duration else None

    generation = await manager.start(tasks)
    if not args.json_output:
        console.print(f"[bold]Started generation {generation}[/bold] with {len(tasks)} task(s)")

    try:
        while True:
            timeout = None
            if deadline is not None:
                timeout = deadline - loop.time()
                if timeout <= 0:
                    break
            try:
                out = await manager.sink.next_output(timeout=timeout)
            except asyncio.TimeoutError:
                break
            _print_output(console, out, args.json_output)
    finally:
        await manager.close()
    return EXIT_OK


def _print_output(console: Console, out: Any, json_output: bool) -> None:
    from compliance_scheduler.scheduler import RunEvent, RunResult, ScheduleError

    if json_output:
        kind = {RunResult: "result", RunEvent: "event", ScheduleError: "error"}[type(out)]
        print(json.dumps({"type": kind, **out.to_dict()}), flush=True)
        return
    if isinstance(out, ScheduleError):
        console.print(f"[red]error[/red]  {out.task_name}: {escape(out.message)}")
    elif isinstance(out, RunResult) and out.success:
        console.print(f"[green]result[/green] {out.task_name}: {escape(json.dumps(out.ext_result))}")
    elif isinstance(out, RunResult):
        console.print(f"[yellow]result[/yellow] {out.task_name} failed: {escape(out.failure_details)}")
    else:
        console.print(f"[cyan]event[/cyan]  {out.task_name}: {escape(out.output)}")


def cmd_future_runs(args, settings) -> int:
    """Print the next firing instants of a schedule."""
    from compliance_scheduler.exceptions import ScheduleParseError
    from compliance_scheduler.manager import ComplianceModuleManager
    from compliance_scheduler.scheduler import TaskDefinition

    console = Console(no_color=args.no_color)
    manager = ComplianceModuleManager.from_settings(settings)
    task = TaskDefinition(id=0, name="future-runs", module="", schedule=args.schedule)
    try:
        runs = manager.get_future_runs(task, args.start, args.count)
    except ScheduleParseError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        return EXIT_ERROR
    except ValueError as e:
        console.print(f"[red]Invalid --start value:[/red] {e}")
        return EXIT_USAGE

    if args.json_output:
        print(json.dumps(runs))
    else:
        for instant in runs:
            console.print(instant)
    return EXIT_OK


def cmd_modules(args, settings) -> int:
    """List discovered check modules and their load status."""
    from compliance_scheduler.manager import ComplianceModuleManager

    console = Console(no_color=args.no_color)
    statuses = ComplianceModuleManager.from_settings(settings).load()

    if args.json_output:
        print(json.dumps([
            {"name": s.name, "running": s.running, "errstr": s.errstr} for s in statuses
        ], indent=2))
        return EXIT_OK

    table = Table(title=f"Check modules ({settings.engine.modules_dir})", show_lines=True)
    table.add_column("Module", style="bold")
    table.add_column("Status")
    table.add_column("Error")
    for s in statuses:
        status = "[green]✓ loaded[/green]" if s.running else "[red]✗ not loaded[/red]"
        table.add_row(s.name, status, escape(s.errstr or ""))
    console.print(table)
    console.print(f"\n{len(statuses)} module(s)  ({sum(s.running for s in statuses)} loaded)")
    return EXIT_OK if all(s.running for s in statuses) else EXIT_ERROR


# ══════════════════════════════════════════════════════════════════════════════
# ARGUMENT PARSER
# ══════════════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="compliance-scheduler",
        description="Compliance scheduler — run check modules on ISO-8601 schedules.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $COMPLIANCE_SCHEDULER_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument("--no-color", action="store_true", help="Disable colored output")
    parser.add_argument("--json", dest="json_output", action="store_true",
                        help="Machine-readable JSON output")

    sub = parser.add_subparsers(dest="command", help="Available commands")

    # run
    p = sub.add_parser("run", help="Start a task set and stream results")
    p.add_argument("tasks", help="YAML file with the task set")
    p.add_argument("--duration", type=float, default=None,
                   help="Stop after this many seconds (default: run until Ctrl+C)")

    # future-runs
    p = sub.add_parser("future-runs", help="Project the next runs of a schedule")
    p.add_argument("schedule", help="Schedule string, e.g. '[06:00:00Z/P1D, 18:00:00Z/P1D]'")
    p.add_argument("--start", required=True, help="ISO-8601 instant to project from")
    p.add_argument("--count", type=int, default=None, help="Number of runs (default: from config)")

    # modules
    sub.add_parser("modules", help="List check modules and their load status")

    return parser


# ══════════════════════════════════════════════════════════════════════════════
# MAIN
# ══════════════════════════════════════════════════════════════════════════════

_DISPATCH = {
    "run": cmd_run,
    "future-runs": cmd_future_runs,
    "modules": cmd_modules,
}


def main(argv: Optional[list[str]] = None) -> int:
    env_path = _find_env_file()
    if env_path:
        load_dotenv(dotenv_path=env_path)

    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_USAGE

    settings = bootstrap(args)
    if settings is None:
        return EXIT_ERROR
    return _DISPATCH[args.command](args, settings)


def run() -> int:
    """Console-script entry point."""
    return main()


if __name__ == "__main__":
    sys.exit(main())
