"""External tool process management."""

from repobatch.tools.invocation import ToolInvocation, ToolInvocationError, ToolOutcome, run_tool

__all__ = ["ToolInvocation", "ToolInvocationError", "ToolOutcome", "run_tool"]
