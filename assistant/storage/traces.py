"""Execution trace storage for cost and latency analysis.

Layout: traces/conversation-<id>/<start time>-<message id>.json
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from assistant.core.tracing import ExecutionTrace
from assistant.errors import PersistenceError, TraceSaveError

logger = logging.getLogger(__name__)

_DIR_PREFIX = "conversation-"


class TraceSink(Protocol):
    async def save(self, trace: ExecutionTrace) -> None: ...


@dataclass(frozen=True)
class TraceStats:
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    message_count: int = 0
    average_tokens_per_message: float = 0.0
    average_cost_per_message: float = 0.0


class FileTraceStore:
    """TraceSink backed by JSON files, with simple read-side queries."""

    def __init__(self, data_dir: str | Path) -> None:
        self._dir = Path(data_dir) / "traces"

    def _conversation_dir(self, conversation_id: str) -> Path:
        return self._dir / f"{_DIR_PREFIX}{conversation_id}"

    async def save(self, trace: ExecutionTrace) -> None:
        directory = self._conversation_dir(trace.conversation_id)
        stamp = trace.started_at.isoformat().replace(":", "-")
        path = directory / f"{stamp}-{trace.message_id}.json"
        try:
            await asyncio.to_thread(directory.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(path.write_text, trace.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            raise TraceSaveError(f"Failed to save trace {trace.message_id}: {e}") from e

    async def load_traces(
        self,
        conversation_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[ExecutionTrace]:
        """Traces for one conversation, newest first, optionally filtered by start time."""
        directory = self._conversation_dir(conversation_id)
        if not await asyncio.to_thread(directory.exists):
            return []

        paths = await asyncio.to_thread(lambda: sorted(directory.glob("*.json")))
        traces: list[ExecutionTrace] = []
        for path in paths:
            try:
                content = await asyncio.to_thread(path.read_text, encoding="utf-8")
                trace = ExecutionTrace.model_validate_json(content)
            except (OSError, ValidationError) as e:
                raise PersistenceError(f"Failed to load trace {path.name}: {e}") from e
            if start is not None and trace.started_at < start:
                continue
            if end is not None and trace.started_at > end:
                continue
            traces.append(trace)

        traces.sort(key=lambda t: t.started_at, reverse=True)
        return traces if limit is None else traces[:limit]

    async def stats(self, conversation_id: str | None = None) -> TraceStats:
        """Aggregate token and cost totals for one conversation or all of them."""
        if conversation_id is not None:
            traces = await self.load_traces(conversation_id)
        else:
            traces = []
            for conv_id in await self._conversation_ids():
                traces.extend(await self.load_traces(conv_id))

        if not traces:
            return TraceStats()

        input_tokens = sum(t.total_input_tokens for t in traces)
        output_tokens = sum(t.total_output_tokens for t in traces)
        cost = sum(t.total_cost_usd for t in traces)
        count = len(traces)
        return TraceStats(
            total_input_tokens=input_tokens,
            total_output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            total_cost_usd=cost,
            message_count=count,
            average_tokens_per_message=(input_tokens + output_tokens) / count,
            average_cost_per_message=cost / count,
        )

    async def _conversation_ids(self) -> list[str]:
        if not await asyncio.to_thread(self._dir.exists):
            return []
        entries = await asyncio.to_thread(lambda: sorted(self._dir.iterdir()))
        return [
            entry.name[len(_DIR_PREFIX):]
            for entry in entries
            if entry.is_dir() and entry.name.startswith(_DIR_PREFIX)
        ]
