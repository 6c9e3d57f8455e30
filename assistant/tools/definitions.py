"""Tool input models and descriptions for the task and calendar tools.

Only the contracts live here. The handlers (task storage, Google Calendar
access) are supplied by the caller and bound with build_registry().
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Annotated, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from assistant.tools.registry import ToolHandler, ToolRegistry

TaskPriority = Literal["low", "medium", "high"]
TaskFilter = Literal["all", "pending", "completed"]


class _ToolInput(BaseModel):
    model_config = ConfigDict(extra="forbid")


def _require_text(value: str) -> str:
    if not value.strip():
        raise ValueError("must be a non-empty string")
    return value


NonEmptyStr = Annotated[str, AfterValidator(_require_text)]


class AddTaskInput(_ToolInput):
    title: NonEmptyStr = Field(description="The title or name of the task. Should be clear and concise.")
    description: str | None = Field(
        None,
        description="Optional detailed description of the task. Use this to provide additional context or notes.",
    )
    priority: TaskPriority | None = Field(
        None,
        description="Optional priority level for the task. Defaults to medium if not specified.",
    )


class ListTasksInput(_ToolInput):
    filter: TaskFilter = Field(
        "all",
        description=(
            'Filter tasks by status. Use "pending" for incomplete tasks, "completed" for '
            'finished tasks, or "all" to see everything. Defaults to "all".'
        ),
    )


class UpdateTaskInput(_ToolInput):
    id: NonEmptyStr = Field(description="The UUID of the task to update.")
    title: str | None = Field(None, description="New title for the task.")
    description: str | None = Field(None, description="New description for the task.")
    priority: TaskPriority | None = Field(None, description="New priority level for the task.")


class TaskIdInput(_ToolInput):
    id: NonEmptyStr = Field(description="The UUID of the task.")


class ReadCalendarEventsInput(_ToolInput):
    calendar_id: NonEmptyStr = Field(
        "primary",
        alias="calendarId",
        description='Calendar identifier. Use "primary" for the user\'s main calendar.',
    )
    time_min: str | None = Field(
        None, alias="timeMin", description="Lower bound (ISO 8601) for event end time."
    )
    time_max: str | None = Field(
        None, alias="timeMax", description="Upper bound (ISO 8601) for event start time."
    )
    max_results: int = Field(10, alias="maxResults", gt=0, description="Maximum number of events to return.")
    order_by: Literal["startTime", "updated"] = Field(
        "startTime", alias="orderBy", description="Sort order of the returned events."
    )
    single_events: bool = Field(
        True, alias="singleEvents", description="Expand recurring events into instances."
    )


TOOL_CATALOG: dict[str, tuple[type[BaseModel], str]] = {
    "add_task": (
        AddTaskInput,
        "Creates a new task and saves it to storage. Use this tool when the user wants to add a new "
        "task, create a todo item, or remember something they need to do. The task will be created "
        "with a pending status. You can optionally set a priority level (low, medium, or high) and "
        "add a description for more details.",
    ),
    "list_tasks": (
        ListTasksInput,
        "Retrieves a list of tasks from storage, optionally filtered by status. Use this tool when "
        "the user wants to see their tasks, check what needs to be done, or review completed items.",
    ),
    "update_task": (
        UpdateTaskInput,
        "Updates the properties of an existing task. You can update the title, description, and/or "
        "priority. To mark a task as complete, use the complete_task tool instead. You must provide "
        "the task ID along with the fields to update.",
    ),
    "complete_task": (
        TaskIdInput,
        "Marks a task as completed and records the completion timestamp. Use this tool when the user "
        "indicates they have finished, completed, or done a task. You must provide the task ID.",
    ),
    "delete_task": (
        TaskIdInput,
        "Permanently deletes a task from storage. Use this tool when the user wants to remove or "
        "delete a task. This action cannot be undone. You must provide the task ID.",
    ),
    "read_calendar_events": (
        ReadCalendarEventsInput,
        "Reads events from the user's Google Calendar. Use this tool when the user asks about their "
        "schedule, meetings, or availability. Times are ISO 8601 strings.",
    ),
}


def build_registry(handlers: Mapping[str, ToolHandler]) -> ToolRegistry:
    """Bind caller-supplied handlers to the catalog tools.

    Only tools with a handler are registered; unknown handler names are
    rejected so a typo can't silently drop a tool.
    """
    unknown = set(handlers) - set(TOOL_CATALOG)
    if unknown:
        raise ValueError(f"No tool definition for: {', '.join(sorted(unknown))}")

    registry = ToolRegistry()
    for name, (input_model, description) in TOOL_CATALOG.items():
        handler = handlers.get(name)
        if handler is not None:
            registry.register(name, handler, input_model, description)
    return registry
