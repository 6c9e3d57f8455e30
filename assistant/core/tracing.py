"""Execution traces: per-turn token, cost, timing and tool-outcome records.

Traces are persisted independently of the conversation and are used for
cost/latency analysis.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from assistant.core.models import utcnow
from assistant.tools.registry import ToolExecutionResult

# USD per 1M tokens. Unknown models price at zero.
MODEL_PRICING: dict[str, dict[str, float]] = {
    "claude-3-5-haiku-20241022": {"input": 1.00, "output": 5.00},
    "claude-3-5-sonnet-20241022": {"input": 3.00, "output": 15.00},
    "claude-haiku-4-5-20251001": {"input": 1.00, "output": 5.00},
    "claude-sonnet-4-5-20250929": {"input": 3.00, "output": 15.00},
    "claude-opus-4-1-20250805": {"input": 15.00, "output": 75.00},
}


def estimate_cost(input_tokens: int, output_tokens: int, model: str) -> float:
    """Cost in USD for the given usage; 0.0 for models missing from the table."""
    pricing = MODEL_PRICING.get(model)
    if pricing is None:
        return 0.0
    return (
        input_tokens / 1_000_000 * pricing["input"]
        + output_tokens / 1_000_000 * pricing["output"]
    )


class ToolInvocationTrace(BaseModel):
    model_config = ConfigDict(frozen=True)

    tool_name: str
    tool_use_id: str
    started_at: datetime
    ended_at: datetime
    duration_ms: float
    input: dict[str, Any] = Field(default_factory=dict)
    output: ToolExecutionResult
    success: bool


class IterationTrace(BaseModel):
    model_config = ConfigDict(frozen=True)

    iteration: int  # 1-indexed
    input_tokens: int
    output_tokens: int
    total_tokens: int
    tools_executed: tuple[ToolInvocationTrace, ...] = ()
    stop_reason: str
    timestamp: datetime


class ExecutionTrace(BaseModel):
    model_config = ConfigDict(frozen=True)

    conversation_id: str
    message_id: str
    user_message: str
    assistant_response: str
    started_at: datetime
    ended_at: datetime
    duration_ms: float
    total_input_tokens: int
    total_output_tokens: int
    total_tokens: int
    total_cost_usd: float
    iterations: tuple[IterationTrace, ...]
    model: str


class TraceRecorder:
    """Collects iteration traces for one turn and builds the final record."""

    def __init__(self, conversation_id: str, message_id: str, user_message: str, model: str) -> None:
        self.conversation_id = conversation_id
        self.message_id = message_id
        self.user_message = user_message
        self.model = model
        self.started_at = utcnow()
        self._start = time.monotonic()
        self.iterations: list[IterationTrace] = []
        self.total_input_tokens = 0
        self.total_output_tokens = 0

    def record_iteration(
        self,
        input_tokens: int,
        output_tokens: int,
        tools_executed: list[ToolInvocationTrace],
        stop_reason: str,
        timestamp: datetime,
    ) -> IterationTrace:
        trace = IterationTrace(
            iteration=len(self.iterations) + 1,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            tools_executed=tuple(tools_executed),
            stop_reason=stop_reason or "unknown",
            timestamp=timestamp,
        )
        self.iterations.append(trace)
        self.total_input_tokens += input_tokens
        self.total_output_tokens += output_tokens
        return trace

    def build(self, assistant_response: str) -> ExecutionTrace:
        return ExecutionTrace(
            conversation_id=self.conversation_id,
            message_id=self.message_id,
            user_message=self.user_message,
            assistant_response=assistant_response,
            started_at=self.started_at,
            ended_at=utcnow(),
            duration_ms=(time.monotonic() - self._start) * 1000,
            total_input_tokens=self.total_input_tokens,
            total_output_tokens=self.total_output_tokens,
            total_tokens=self.total_input_tokens + self.total_output_tokens,
            total_cost_usd=estimate_cost(self.total_input_tokens, self.total_output_tokens, self.model),
            iterations=tuple(self.iterations),
            model=self.model,
        )
