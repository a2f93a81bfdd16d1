"""UI package exports for the CLI and plain-text rendering."""

from repobatch.ui.cli import CLIError, build_parser, run_cli
from repobatch.ui.render import CLIRenderer, ProgressPrinter, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "ProgressPrinter",
    "build_parser",
    "create_renderer",
    "run_cli",
]
