from __future__ import annotations

import argparse
import json
import logging
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Sequence

from rich import box
from rich.console import Console
from rich.table import Table

from trackbatch._logging import LOG_FILE_NAME, setup_logging
from trackbatch.artifacts import copy_artifacts
from trackbatch.config import ProjectConfig, load_project_config
from trackbatch.models import ConfigError
from trackbatch.registry import JobRegistry
from trackbatch.runner import run_track
from trackbatch.settings import fix_project_settings, register_project_settings
from trackbatch.status import registry_status
from trackbatch.utils import path_key

_STATUS_STYLES = {
    "done": "green",
    "failed": "red",
    "pending": "yellow",
    "skip": "dim",
}


def _console() -> Console:
    return Console(highlight=False)


def _load_config(args: argparse.Namespace) -> ProjectConfig:
    return load_project_config(args.config, registry=args.registry)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _styled_status(status: str) -> str:
    style = _STATUS_STYLES.get(status)
    return f"[{style}]{status}[/{style}]" if style else status


def _render_init_table(payload: dict[str, Any]) -> None:
    console = _console()
    overview = Table(title="Registry Init", show_header=False)
    overview.add_column("Field", style="bold cyan")
    overview.add_column("Value")
    overview.add_row("Registry", str(payload.get("registry", "")))
    overview.add_row("Created", "yes" if payload.get("created") else "no")
    overview.add_row("Settings found", str(payload.get("discovered", 0)))
    overview.add_row("Jobs added", str(payload.get("added", 0)))
    overview.add_row("Jobs total", str(payload.get("total", 0)))
    console.print(overview)


def _render_status_table(summary: dict[str, Any]) -> None:
    console = _console()
    overview = Table(title="Job Registry", show_header=False)
    overview.add_column("Field", style="bold cyan")
    overview.add_column("Value")
    overview.add_row("Registry", str(summary.get("registry", "")))
    overview.add_row("Generated", str(summary.get("generated_at", "")))
    overview.add_row("Jobs", str(summary.get("total", 0)))
    overview.add_row("Eligible for track", str(summary.get("eligible", 0)))
    console.print(overview)

    counts = Table(title="Jobs By Status")
    counts.add_column("Status", style="bold")
    counts.add_column("Count", justify="right")
    for status, count in dict(summary.get("by_status", {})).items():
        counts.add_row(_styled_status(str(status)), str(count))
    for status, count in dict(summary.get("unknown_statuses", {})).items():
        counts.add_row(f"{status} (ignored)", str(count))
    console.print(counts)

    failed = list(summary.get("failed_settings_files", []))
    if failed:
        failed_table = Table(title="Failed Jobs")
        failed_table.add_column("Settings File")
        for key in failed[:64]:
            failed_table.add_row(str(key))
        if len(failed) > 64:
            failed_table.add_row(f"... and {len(failed) - 64} more")
        console.print(failed_table)


def _render_track_table(payload: dict[str, Any]) -> None:
    console = _console()
    overview = Table(
        title="Dry Run" if payload.get("dry_run") else "Track Batch",
        show_header=False,
        box=box.SIMPLE,
    )
    overview.add_column("Field", style="bold cyan")
    overview.add_column("Value")
    overview.add_row("Registry", str(payload.get("registry", "")))
    overview.add_row("Strategy", str(payload.get("strategy", "")))
    overview.add_row("Eligible", str(payload.get("eligible", 0)))
    overview.add_row("Selected", str(payload.get("selected", 0)))
    overview.add_row("Started", str(payload.get("started_at", "")))
    overview.add_row("Finished", str(payload.get("finished_at", "")))
    console.print(overview)

    jobs = Table(title="Job Outcomes", box=box.SIMPLE)
    jobs.add_column("Settings File")
    jobs.add_column("Video")
    jobs.add_column("Status")
    jobs.add_column("Session")
    jobs.add_column("Reason")
    for outcome in list(payload.get("outcomes", [])):
        jobs.add_row(
            str(outcome.get("settings_file", "")),
            str(outcome.get("video", "")) or "-",
            _styled_status(str(outcome.get("status", ""))),
            str(outcome.get("session_folder", "")) or "-",
            str(outcome.get("reason") or "-"),
        )
    if not payload.get("outcomes"):
        jobs.add_row("<none>", "-", "-", "-", "-")
    console.print(jobs)

    if payload.get("dry_run"):
        console.print("[bold]Registry restored;[/bold] rerun without --dry-run to track.")


def _render_copy_table(payload: dict[str, Any]) -> None:
    console = _console()
    copied = Table(title="Copied Trajectories", box=box.SIMPLE)
    copied.add_column("Settings File")
    copied.add_column("Destination")
    for item in list(payload.get("copied", [])):
        copied.add_row(str(item.get("settings_file", "")), str(item.get("destination", "")))
    if not payload.get("copied"):
        copied.add_row("<none>", "-")
    console.print(copied)

    skipped = list(payload.get("skipped_existing", []))
    if skipped:
        console.print(
            f"[yellow]{len(skipped)} destination(s) already exist;[/yellow] "
            "use --overwrite to replace them."
        )
    warnings = list(payload.get("warnings", []))
    if warnings:
        warn_table = Table(title="Warnings", box=box.SIMPLE)
        warn_table.add_column("Settings File")
        warn_table.add_column("Reason", style="yellow")
        for item in warnings:
            warn_table.add_row(str(item.get("settings_file", "")), str(item.get("reason", "")))
        console.print(warn_table)


def _track_progress_printer(console: Console):
    def _on_event(event: dict[str, Any]) -> None:
        name = event.get("event")
        if name == "job_start":
            console.print(
                f"[bold]\\[{event.get('position')}/{event.get('total')}][/bold] "
                f"{event.get('settings_file')} ({event.get('video') or 'unknown video'})"
            )
        elif name == "job_end":
            status = str(event.get("status", ""))
            session = event.get("session_folder") or "-"
            console.print(f"    -> {_styled_status(status)} session={session}")

    return _on_event


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trackbatch",
        description="Queue and run unattended batches of video tracking jobs",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def _add_project_args(target: argparse.ArgumentParser) -> None:
        target.add_argument(
            "--config",
            default=None,
            help="Project YAML path (default: ./trackbatch.yaml if present)",
        )
        target.add_argument(
            "--registry", default=None, help="Override the job registry CSV path"
        )

    gui = sub.add_parser("gui", help="Open the tracker GUI to prepare settings files")
    _add_project_args(gui)
    gui.add_argument(
        "--folder", default=None, help="Working folder for the GUI (default: settings_dir)"
    )
    gui.set_defaults(handler=_cmd_gui)

    init = sub.add_parser(
        "init", help="Register new settings documents as pending jobs"
    )
    _add_project_args(init)
    init.add_argument("--format", choices=["table", "json"], default="table")
    init.set_defaults(handler=_cmd_init)

    track = sub.add_parser(
        "track",
        help="Run all pending/failed jobs one after another",
        description=(
            "Run all pending/failed jobs sequentially, persisting each outcome "
            "immediately. Only one 'track' may run against a registry at a time; "
            "this is not checked."
        ),
    )
    _add_project_args(track)
    track.add_argument(
        "--dry-run",
        action="store_true",
        help="Simulate the batch without starting the tracker; the registry is restored",
    )
    track.add_argument(
        "--settings",
        action="append",
        default=None,
        help="Run only the given settings_file key(s) (repeatable)",
    )
    track.add_argument("--max-jobs", type=int, default=None, help="Attempt at most N jobs")
    track.add_argument("--format", choices=["table", "json"], default="table")
    track.set_defaults(handler=_cmd_track)

    fix_paths = sub.add_parser(
        "fix-paths", help="Apply the path-escaping fix to settings documents"
    )
    _add_project_args(fix_paths)
    fix_paths.add_argument("--dry-run", action="store_true")
    fix_paths.add_argument("--format", choices=["table", "json"], default="table")
    fix_paths.set_defaults(handler=_cmd_fix_paths)

    copy = sub.add_parser(
        "copy", help="Copy trajectories of done jobs into a flat folder"
    )
    _add_project_args(copy)
    copy.add_argument("--overwrite", action="store_true")
    copy.add_argument("--dry-run", action="store_true")
    copy.add_argument("--format", choices=["table", "json"], default="table")
    copy.set_defaults(handler=_cmd_copy)

    status = sub.add_parser("status", help="Summarize jobs by status")
    _add_project_args(status)
    status.add_argument("--format", choices=["table", "json"], default="table")
    status.set_defaults(handler=_cmd_status)

    return parser


_cli_log = logging.getLogger("trackbatch.cli")


def _cmd_gui(args: argparse.Namespace) -> int:
    config = _load_config(args)
    folder = Path(args.folder).expanduser().resolve() if args.folder else config.settings_dir
    if not folder.is_dir():
        raise ConfigError(f"GUI folder not found: {folder}")
    argv = list(config.tracker.gui_command)
    _cli_log.info("gui_start folder=%s argv=%s", folder, " ".join(argv))
    try:
        completed = subprocess.run(argv, cwd=folder, check=False)
    except OSError as exc:
        raise RuntimeError(f"Failed to start tracker GUI {argv[0]!r}: {exc}") from exc
    return int(completed.returncode)


def _cmd_init(args: argparse.Namespace) -> int:
    config = _load_config(args)
    payload = register_project_settings(config)
    if args.format == "json":
        _print_json(payload)
    else:
        _render_init_table(payload)
    return 0


def _cmd_track(args: argparse.Namespace) -> int:
    config = _load_config(args)
    registry = JobRegistry(config.registry)
    registry.load()
    if args.max_jobs is not None and args.max_jobs < 0:
        raise ConfigError("--max-jobs must be >= 0")
    unknown = sorted(set(args.settings or ()) - set(registry.keys()))
    if unknown:
        raise ConfigError(f"Unknown settings_file key(s): {unknown}")

    log_file = None
    if not args.dry_run:
        try:
            log_file = setup_logging(default_log_file=config.logs_dir / LOG_FILE_NAME)
        except OSError as exc:
            _cli_log.warning("track_log_file_unavailable error=%s", exc)

    fixed = fix_project_settings(config, dry_run=args.dry_run)
    if fixed:
        _cli_log.info(
            "fix_paths_before_track changed=%d dry_run=%s", len(fixed), args.dry_run
        )

    progress = None if args.format == "json" else _track_progress_printer(_console())
    summary = run_track(
        config,
        registry=registry,
        dry_run=args.dry_run,
        only=args.settings,
        max_jobs=args.max_jobs,
        progress_callback=progress,
    )
    payload = summary.to_json()
    payload["fixed_settings"] = [path_key(path, config.root) for path in fixed]
    payload["log_file"] = None if log_file is None else str(log_file)
    if args.format == "json":
        _print_json(payload)
    else:
        _render_track_table(payload)
    return 0


def _cmd_fix_paths(args: argparse.Namespace) -> int:
    config = _load_config(args)
    changed = fix_project_settings(config, dry_run=args.dry_run)
    payload = {
        "dry_run": bool(args.dry_run),
        "changed": [path_key(path, config.root) for path in changed],
    }
    if args.format == "json":
        _print_json(payload)
    else:
        console = _console()
        verb = "Would fix" if args.dry_run else "Fixed"
        console.print(f"[bold]{verb}[/bold] {len(changed)} settings document(s)")
        for item in payload["changed"]:
            console.print(f"  {item}")
    return 0


def _cmd_copy(args: argparse.Namespace) -> int:
    config = _load_config(args)
    payload = copy_artifacts(
        config, overwrite=bool(args.overwrite), dry_run=bool(args.dry_run)
    )
    if args.format == "json":
        _print_json(payload)
    else:
        _render_copy_table(payload)
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_config(args)
    summary = registry_status(JobRegistry(config.registry))
    summary["config"] = config.to_json()
    if args.format == "json":
        _print_json(summary)
    else:
        _render_status_table(summary)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    setup_logging()
    parser = _build_parser()
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    args = parser.parse_args(raw_argv)
    command = str(getattr(args, "command", "unknown"))
    argv_text = " ".join(raw_argv)
    started = time.perf_counter()
    _cli_log.info("cli_command_start command=%s argv=%s", command, argv_text)

    exit_code = 1
    try:
        exit_code = int(args.handler(args))
    except ConfigError as exc:
        _cli_log.error(
            "cli_command_error command=%s kind=config error=%s", command, exc
        )
        print(f"[config error] {exc}", file=sys.stderr)
        exit_code = 2
    except KeyboardInterrupt:
        _cli_log.error("cli_command_error command=%s kind=interrupted", command)
        print("\n[interrupted]", file=sys.stderr)
        exit_code = 130
    except RuntimeError as exc:
        _cli_log.error(
            "cli_command_error command=%s kind=runtime error=%s", command, exc
        )
        print(f"[runtime error] {exc}", file=sys.stderr)
        exit_code = 1
    except (OSError, KeyError, ValueError) as exc:
        _cli_log.error(
            "cli_command_error command=%s kind=%s error=%s",
            command,
            type(exc).__name__,
            exc,
        )
        print(f"[error] {type(exc).__name__}: {exc}", file=sys.stderr)
        exit_code = 1
    finally:
        duration_sec = time.perf_counter() - started
        _cli_log.info(
            "cli_command_end command=%s exit_code=%s duration_sec=%.3f",
            command,
            exit_code,
            duration_sec,
        )

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
