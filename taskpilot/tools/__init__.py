"""Tools package for TaskPilot."""

from taskpilot.tools.registry import (
    Tool,
    ToolErrorKind,
    ToolFailure,
    ToolRegistry,
    ToolResult,
)
from taskpilot.tools.shell import CommandOutcome, ShellTool

__all__ = [
    "CommandOutcome",
    "ShellTool",
    "Tool",
    "ToolErrorKind",
    "ToolFailure",
    "ToolRegistry",
    "ToolResult",
]
