"""Executable CLI entrypoint for ``repobatch``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class ExitCode(IntEnum):
    """Deterministic process exit-code contract."""

    SUCCESS = 0
    TARGET_FAILURES = 1
    CONFIG_ERROR = 2
    STATE_ERROR = 3
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m repobatch`` and the console script."""

    try:
        from repobatch.ui.cli import run_cli

        return _normalize_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _normalize_exit_code(exc.code)
    except BaseException as exc:  # noqa: BLE001 - CLI boundary normalization.
        exit_code = _route_exception(exc)
        _emit_failure(exc, exit_code)
        return int(exit_code)


def main() -> None:
    """Console-script shim."""

    raise SystemExit(cli_entrypoint())


def _normalize_exit_code(raw_code: object) -> int:
    if isinstance(raw_code, int) and raw_code in {code.value for code in ExitCode}:
        return raw_code
    if raw_code is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw_code, str) and raw_code.strip():
        _write_stderr(raw_code.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _route_exception(exc: BaseException) -> ExitCode:
    state_error_types = _load_state_error_types()
    config_error_types = _load_config_error_types()

    for item in _iter_exception_chain(exc):
        if isinstance(item, KeyboardInterrupt):
            return ExitCode.TARGET_FAILURES
        if isinstance(item, state_error_types):
            return ExitCode.STATE_ERROR
        if isinstance(item, config_error_types):
            return ExitCode.CONFIG_ERROR
        if isinstance(item, (FileNotFoundError, NotADirectoryError, PermissionError, ValueError)):
            return ExitCode.CONFIG_ERROR
    return ExitCode.INTERNAL_ERROR


def _load_state_error_types() -> tuple[type[BaseException], ...]:
    from repobatch.persistence.checkpoint_store import CheckpointStoreError

    return (CheckpointStoreError,)


def _load_config_error_types() -> tuple[type[BaseException], ...]:
    from repobatch.config.loader import ConfigLoadError
    from repobatch.config.schema import ConfigValidationError
    from repobatch.control_plane.controller import RunConfigurationError
    from repobatch.workflows.catalog import WorkflowCatalogError

    return (ConfigLoadError, ConfigValidationError, RunConfigurationError, WorkflowCatalogError)


def _iter_exception_chain(exc: BaseException) -> list[BaseException]:
    seen: set[int] = set()
    items: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None:
        marker = id(current)
        if marker in seen:
            break
        seen.add(marker)
        items.append(current)
        if current.__cause__ is not None:
            current = current.__cause__
            continue
        if current.__context__ is not None and not current.__suppress_context__:
            current = current.__context__
            continue
        break
    return items


def _emit_failure(exc: BaseException, exit_code: ExitCode) -> None:
    if exit_code is ExitCode.INTERNAL_ERROR:
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        return
    if isinstance(exc, KeyboardInterrupt):
        _write_stderr("interrupted")
        return
    _write_stderr(f"error: {str(exc).strip() or exc.__class__.__name__}")


def _write_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint", "main"]
