"""Tool registry -- maps tool names to validated async handlers.

The registry is an explicit value built once at startup and passed into
the agent. dispatch() never raises: unknown tools, invalid input and
handler exceptions all come back as failed ToolExecutionResults so the
model can see the error and decide what to do next.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic_core import to_jsonable_python

logger = logging.getLogger(__name__)

# A handler receives the validated input model and returns JSON-able data
# (or a ToolExecutionResult to report a business-level failure itself).
ToolHandler = Callable[[Any], Awaitable[Any]]


class ToolExecutionResult(BaseModel):
    """Uniform outcome of one tool dispatch."""

    model_config = ConfigDict(frozen=True)

    success: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, data: Any) -> ToolExecutionResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> ToolExecutionResult:
        return cls(success=False, error=error)


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel]
    handler: ToolHandler

    def definition(self) -> dict[str, Any]:
        """Tool definition in Anthropic API format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_model.model_json_schema(),
        }


def _format_validation_error(name: str, error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        field = ".".join(str(p) for p in item["loc"]) or "input"
        problems.append(f'"{field}": {item["msg"]}')
    return f"Invalid input for {name}: " + "; ".join(problems)


class ToolRegistry:
    """Registers tool specs and dispatches tool calls from the model."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        input_model: type[BaseModel],
        description: str,
    ) -> None:
        if name in self._tools:
            raise ValueError(f"Tool already registered: {name}")
        self._tools[name] = ToolSpec(name, description, input_model, handler)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in registration order."""
        return [spec.definition() for spec in self._tools.values()]

    async def dispatch(self, name: str, tool_input: Any) -> ToolExecutionResult:
        spec = self._tools.get(name)
        if spec is None:
            return ToolExecutionResult.fail(f"Unknown tool: {name}")

        try:
            params = spec.input_model.model_validate(tool_input if tool_input is not None else {})
        except ValidationError as e:
            return ToolExecutionResult.fail(_format_validation_error(name, e))

        try:
            result = await spec.handler(params)
            if isinstance(result, ToolExecutionResult):
                if not result.success:
                    return result
                return result.model_copy(update={"data": to_jsonable_python(result.data)})
            return ToolExecutionResult.ok(to_jsonable_python(result))
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return ToolExecutionResult.fail(str(e) or type(e).__name__)
