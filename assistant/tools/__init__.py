"""Tool execution layer -- registry plus the task and calendar tool contracts.

Public API: ToolRegistry, ToolExecutionResult, build_registry.
"""

from assistant.tools.definitions import TOOL_CATALOG, build_registry
from assistant.tools.registry import ToolExecutionResult, ToolHandler, ToolRegistry, ToolSpec

__all__ = [
    "TOOL_CATALOG",
    "ToolExecutionResult",
    "ToolHandler",
    "ToolRegistry",
    "ToolSpec",
    "build_registry",
]
