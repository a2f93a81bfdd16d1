"""Command-line interface router for repobatch."""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from repobatch.config import (
    ConfigLoadError,
    ConfigValidationError,
    load_config,
    redact_config,
    resolve_api_key,
)
from repobatch.constants import CHECKPOINT_FILENAME, LOCK_FILENAME
from repobatch.control_plane import (
    BatchController,
    RunConfigurationError,
    default_jobs,
    list_run_ids,
    resolve_root,
    resolve_state_dir,
    summarize_directory,
)
from repobatch.domain.models import RunLayout
from repobatch.persistence.checkpoint_store import CheckpointStore
from repobatch.ui.render import (
    CLIRenderer,
    ProgressPrinter,
    create_renderer,
    render_run_header,
    render_summary,
)
from repobatch.workflows import WorkflowCatalogError

COMMAND_SEPARATOR: Final[str] = "--"


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="repobatch",
        description=(
            "repobatch: run one idempotent workflow over every repository under a root.\n\n"
            "Common workflows:\n"
            "  repobatch run --api-key KEY           Refresh READMEs in ./repo/*\n"
            "  repobatch run --dry-run               Show what would run, touch nothing\n"
            "  repobatch run --workflow command -- ./scan.sh {target}\n"
            "  repobatch status                      Last checkpoint per target\n"
            "  repobatch summary                     Re-print the latest run summary\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--root",
        "--repo",
        dest="root",
        default=None,
        help="Directory whose subdirectories are the targets (default: ./repo, else cwd).",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to repobatch TOML config (default: ./repobatch.toml if present).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show debug logs on stderr.",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Run a workflow over every target",
        description=(
            "Run a workflow over every immediate subdirectory of the root.\n"
            "Targets whose last checkpoint succeeded are skipped unless --force is given.\n\n"
            "Examples:\n"
            "  repobatch run --api-key \"$OPENROUTER_API_KEY\" --jobs 4\n"
            "  repobatch run --retry 1 --timeout 600\n"
            "  repobatch run --workflow command -- gitleaks detect --source {target}\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("--workflow", default=None, help="Workflow name (default: readme)")
    run_parser.add_argument("--api-key", dest="api_key", default=None, help="Tool API key")
    run_parser.add_argument("--model", default=None, help="Model name passed to the tool")
    run_parser.add_argument(
        "--jobs",
        "-j",
        default=None,
        help="Targets processed in parallel (default: number of CPUs)",
    )
    run_parser.add_argument(
        "--timeout",
        type=_non_negative_int,
        default=None,
        help="Per-target tool timeout in seconds; 0 disables it (default: 300)",
    )
    run_parser.add_argument(
        "--retry",
        type=_non_negative_int,
        default=None,
        help="Retry failed targets in a second pass when > 0 (default: 0)",
    )
    run_parser.add_argument(
        "--retry-all-passes",
        dest="retry_all_passes",
        action="store_true",
        default=None,
        help="Run up to --retry retry passes instead of a single one",
    )
    run_parser.add_argument(
        "--dry-run",
        dest="dry_run",
        action="store_true",
        default=None,
        help="Show what would run without executing or writing anything",
    )
    run_parser.add_argument(
        "--force",
        action="store_true",
        default=None,
        help="Re-run targets whose last checkpoint succeeded",
    )
    run_parser.add_argument(
        "--only",
        action="append",
        default=[],
        metavar="NAME",
        help="Restrict the run to this target (repeatable)",
    )
    run_parser.set_defaults(handler=_cmd_run)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show the last checkpoint record per target",
    )
    status_parser.set_defaults(handler=_cmd_status)

    # summary -------------------------------------------------------------
    summary_parser = subparsers.add_parser(
        "summary",
        parents=[common],
        help="Re-print the summary of a past run",
    )
    summary_parser.add_argument("run_id", nargs="?", default=None, help="Run id (default: latest)")
    summary_parser.set_defaults(handler=_cmd_summary)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration (redacted)",
        description=(
            "Display the effective config after merging defaults, file, env, and flags.\n"
            "Sensitive values are redacted.\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    raw = list(sys.argv[1:] if argv is None else argv)
    tool_command: list[str] = []
    if COMMAND_SEPARATOR in raw:
        index = raw.index(COMMAND_SEPARATOR)
        raw, tool_command = raw[:index], raw[index + 1 :]

    parser = build_parser()
    namespace = parser.parse_args(raw)
    namespace.tool_command = tuple(tool_command)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    overrides: dict[str, object] = {
        "run.workflow": args.workflow,
        "run.jobs": _parse_jobs(args.jobs),
        "run.timeout_seconds": args.timeout,
        "run.retry": args.retry,
        "run.retry_all_passes": args.retry_all_passes,
        "run.dry_run": args.dry_run,
        "run.force": args.force,
        "tool.model": args.model,
    }
    config = _load_effective_config(args, overrides)
    as_json = _flag(args, "json")
    renderer = _get_renderer(args)

    controller = BatchController(
        config,
        api_key=resolve_api_key(config, explicit=args.api_key),
        command=args.tool_command,
        progress=None if as_json else ProgressPrinter(renderer),
        handle_interrupt=True,
    )
    try:
        plan = controller.prepare()
    except (RunConfigurationError, WorkflowCatalogError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    if not as_json:
        render_run_header(
            renderer,
            run_id=plan.layout.run_id,
            root=plan.root,
            jobs=plan.jobs,
            workflow=plan.workflow.name,
            dry_run=plan.dry_run,
            log_dir=None if plan.dry_run else plan.layout.log_dir,
            checkpoint_path=plan.layout.checkpoint_path,
        )

    outcome = controller.run(plan, only=tuple(args.only or ()))

    if as_json:
        _emit_json(
            {
                "command": "run",
                "run_id": outcome.run_id,
                "dry_run": outcome.dry_run,
                "summary": outcome.summary.to_dict(),
                "passes": [
                    {
                        "pass_index": report.pass_index,
                        "targets": len(report.results),
                        "failed": list(report.failed_names),
                        "not_started": list(report.not_started),
                    }
                    for report in outcome.passes
                ],
            }
        )
        return outcome.exit_code

    render_summary(renderer, outcome.summary)
    return outcome.exit_code


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, {})
    root = resolve_root(config)
    state_dir = resolve_state_dir(config, root)
    store = CheckpointStore(
        state_dir / CHECKPOINT_FILENAME, state_dir / LOCK_FILENAME, read_only=True
    )
    snapshot = store.snapshot()

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "status",
                "checkpoint": str(store.path),
                "targets": {
                    name: {
                        "status": record.status,
                        "timestamp": record.timestamp,
                        "duration_seconds": record.duration_seconds,
                        "exit_code": record.exit_code,
                        "tool": record.tool,
                        "note": record.note,
                    }
                    for name, record in snapshot.items()
                },
            }
        )
        return 0

    renderer = _get_renderer(args)
    if not snapshot:
        renderer.text(f"No checkpoints in {store.path}")
        return 0
    headers = ["TARGET", "STATUS", "WHEN", "DURATION", "RC", "TOOL"]
    rows = [
        [
            name,
            record.status,
            record.timestamp,
            f"{record.duration_seconds}s",
            "-" if record.exit_code is None else str(record.exit_code),
            record.tool,
        ]
        for name, record in snapshot.items()
    ]
    if renderer.verbose:
        headers.append("NOTE")
        for row, record in zip(rows, snapshot.values(), strict=True):
            row.append(record.note)
    renderer.kv("Checkpoint", store.path)
    renderer.table(headers, rows)
    return 0


def _cmd_summary(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, {})
    root = resolve_root(config)
    state_dir = resolve_state_dir(config, root)

    run_ids = list_run_ids(state_dir)
    requested = _optional_str(getattr(args, "run_id", None))
    if requested is None:
        if not run_ids:
            _get_renderer(args).text(f"No runs found in {state_dir}")
            return 0
        run_id = run_ids[-1]
    elif requested in run_ids:
        run_id = requested
    else:
        raise CLIError(f"run not found: {requested}", exit_code=2)

    layout = RunLayout(state_dir=state_dir, run_id=run_id)
    recorded = _read_recorded_summary(layout.summary_path)
    summary = summarize_directory(
        layout.target_results_dir,
        run_id=run_id,
        queued=_optional_int(recorded.get("queued")),
        retry_passes=_optional_int(recorded.get("retry_passes")) or 0,
        interrupted=recorded.get("interrupted") is True,
        locations={
            "checkpoints": str(layout.checkpoint_path),
            "logs": str(layout.log_dir),
            "results": str(layout.results_dir),
        },
    )
    exit_code = 1 if summary.failed else 0

    if _flag(args, "json"):
        _emit_json({"command": "summary", "summary": summary.to_dict()})
        return exit_code

    renderer = _get_renderer(args)
    renderer.kv("Run id", run_id)
    render_summary(renderer, summary)
    return exit_code


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, {})
    redacted = redact_config(config)

    if _flag(args, "json"):
        _emit_json({"command": "config", "config": redacted})
        return 0

    renderer = _get_renderer(args)
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(verbose=_flag(args, "verbose"))


def _load_effective_config(
    args: argparse.Namespace, overrides: Mapping[str, object]
) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    cli_overrides = dict(overrides)
    cli_overrides["paths.root"] = _optional_str(getattr(args, "root", None))
    if _flag(args, "verbose"):
        cli_overrides["observability.log_level"] = "DEBUG"
        cli_overrides["observability.log_to_stderr"] = True

    try:
        return load_config(config_path, cli_overrides=cli_overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _parse_jobs(raw: str | None) -> int | None:
    """Positive integer or ``None``; anything else warns and falls back to the default."""

    if raw is None:
        return None
    try:
        jobs = int(raw.strip())
    except ValueError:
        jobs = 0
    if jobs > 0:
        return jobs
    print(f"Warning: invalid --jobs {raw!r}, using default {default_jobs()}.", file=sys.stderr)
    return None


def _read_recorded_summary(path: Path) -> dict[str, object]:
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _non_negative_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from exc
    if parsed < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got {parsed}")
    return parsed


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _optional_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "run_cli"]
