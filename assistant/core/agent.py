"""Agent loop -- runs one conversational turn against the completion provider.

A turn:
1. Load the conversation (or create a new one)
2. Summarize old history if context management is enabled
3. Append the user message to a local copy of the transcript
4. Loop, at most max_iterations times:
   a. Pre-flight token check (no request is sent over the hard limit)
   b. Call the provider
   c. Collect text and tool_use blocks
   d. Tool uses: run each in order, feed results back, loop again
   e. No tool uses: done
5. Build the execution trace, save the conversation, then the trace

Any fatal error aborts before the conversation is saved, so persisted
state only ever reflects completed turns. Tool failures are not fatal:
they go back to the model as "Error: ..." tool results.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
import weakref
from dataclasses import dataclass

from assistant.config import SafetyLimits, Settings
from assistant.core.context import ContextManager
from assistant.core.models import (
    Conversation,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    utcnow,
)
from assistant.core.tokens import TokenCounter
from assistant.core.tracing import ExecutionTrace, ToolInvocationTrace, TraceRecorder
from assistant.errors import (
    ContextManagementError,
    ContextOverflowError,
    IterationLimitError,
    SummarizationError,
)
from assistant.llm.provider import CompletionProvider
from assistant.prompts import SYSTEM_PROMPT
from assistant.storage.conversations import ConversationStore
from assistant.storage.traces import TraceSink
from assistant.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Usage:
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class AgentResponse:
    response: str
    conversation: Conversation
    usage: Usage
    trace: ExecutionTrace


class Agent:
    """Orchestrates provider calls and tool dispatch with safety limits.

    Turns on the same conversation id are serialized by a per-id lock.
    The lock is process-local; separate processes sharing a data
    directory are not coordinated.
    """

    def __init__(
        self,
        settings: Settings,
        provider: CompletionProvider,
        registry: ToolRegistry,
        conversations: ConversationStore,
        traces: TraceSink,
        counter: TokenCounter | None = None,
        system_prompt: str = SYSTEM_PROMPT,
        safety_limits: SafetyLimits | None = None,
    ) -> None:
        self._settings = settings
        self._provider = provider
        self._registry = registry
        self._conversations = conversations
        self._traces = traces
        self._counter = counter or TokenCounter()
        self._system_prompt = system_prompt
        self._limits = safety_limits or settings.safety_limits
        self._context = ContextManager(
            provider, self._counter, settings.model, settings.summary_max_tokens
        )
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def safety_limits(self) -> SafetyLimits:
        return self._limits

    async def close(self) -> None:
        """Release the tokenizer and close the provider."""
        self._counter.release()
        await self._provider.close()

    async def __aenter__(self) -> Agent:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def process_message(self, user_text: str, conversation_id: str | None = None) -> AgentResponse:
        """Run one turn and return the reply, updated conversation and trace.

        Raises PersistenceError, ContextManagementError, ContextOverflowError,
        ProviderError or IterationLimitError; none of them leave a partial
        turn on disk.
        """
        if conversation_id is None:
            conversation = await self._conversations.create_new()
            lock = self._lock_for(conversation.id)
            async with lock:
                return await self._run_turn(conversation, user_text)

        lock = self._lock_for(conversation_id)
        async with lock:
            conversation = await self._conversations.load(conversation_id)
            return await self._run_turn(conversation, user_text)

    async def _run_turn(self, conversation: Conversation, user_text: str) -> AgentResponse:
        limits = self._limits
        recorder = TraceRecorder(
            conversation_id=conversation.id,
            message_id=str(uuid.uuid4()),
            user_message=user_text,
            model=self._settings.model,
        )
        logger.info("Turn %s started (conversation %s)", recorder.message_id, conversation.id)

        if self._settings.max_conversation_tokens:
            try:
                conversation = await self._context.apply(
                    conversation,
                    threshold=limits.summarization_threshold,
                    keep_recent_count=self._settings.keep_recent_messages,
                )
            except SummarizationError as e:
                logger.error("Context management failed for %s: %s", conversation.id, e)
                raise ContextManagementError(str(e)) from e

        messages: tuple[Message, ...] = (*conversation.messages, Message.user(user_text))
        tools = self._registry.definitions()
        response_parts: list[str] = []

        for iteration in range(1, limits.max_iterations + 1):
            timestamp = utcnow()

            # Pre-flight: no request is sent over the hard limit
            request_tokens = self._counter.count_request(self._system_prompt, messages, tools)
            if request_tokens > limits.hard_token_limit:
                logger.warning(
                    "Context overflow on iteration %d: %d > %d tokens",
                    iteration,
                    request_tokens,
                    limits.hard_token_limit,
                )
                raise ContextOverflowError(request_tokens, limits.hard_token_limit)

            completion = await self._provider.complete(
                system_prompt=self._system_prompt,
                messages=messages,
                tools=tools or None,
                model=self._settings.model,
                max_tokens=limits.max_tokens_per_request,
            )

            response_parts.extend(b.text for b in completion.content if isinstance(b, TextBlock))
            tool_uses = [b for b in completion.content if isinstance(b, ToolUseBlock)]

            if completion.content:
                messages = (*messages, Message(role="assistant", content=completion.content))

            tool_traces: list[ToolInvocationTrace] = []
            for tool_use in tool_uses:
                tool_trace = await self._execute_tool(tool_use)
                tool_traces.append(tool_trace)
                messages = (*messages, _tool_result_message(tool_use, tool_trace))

            recorder.record_iteration(
                input_tokens=completion.input_tokens,
                output_tokens=completion.output_tokens,
                tools_executed=tool_traces,
                stop_reason=completion.stop_reason,
                timestamp=timestamp,
            )
            logger.info(
                "Iteration %d: in=%d out=%d tools=%d stop=%s",
                iteration,
                completion.input_tokens,
                completion.output_tokens,
                len(tool_traces),
                completion.stop_reason,
            )

            if not tool_uses:
                break
        else:
            logger.warning(
                "Iteration limit %d reached in conversation %s", limits.max_iterations, conversation.id
            )
            raise IterationLimitError(limits.max_iterations)

        response_text = "".join(response_parts)
        trace = recorder.build(response_text)

        updated = conversation.model_copy(
            update={
                "last_message_at": utcnow(),
                "messages": messages,
                "token_count": self._counter.count_request(self._system_prompt, messages, tools),
            }
        )
        await self._conversations.save(updated)

        try:
            await self._traces.save(trace)
        except Exception as e:
            # Trace loss must never fail a completed turn
            logger.warning("Failed to save execution trace %s: %s", trace.message_id, e)

        logger.info(
            "Turn %s done: %d iterations, %d tokens, $%.6f",
            trace.message_id,
            len(trace.iterations),
            trace.total_tokens,
            trace.total_cost_usd,
        )
        return AgentResponse(
            response=response_text,
            conversation=updated,
            usage=Usage(trace.total_input_tokens, trace.total_output_tokens),
            trace=trace,
        )

    async def _execute_tool(self, tool_use: ToolUseBlock) -> ToolInvocationTrace:
        started_at = utcnow()
        start = time.monotonic()
        result = await self._registry.dispatch(tool_use.name, tool_use.input)
        duration_ms = (time.monotonic() - start) * 1000
        if not result.success:
            logger.warning("Tool %s failed: %s", tool_use.name, result.error)
        return ToolInvocationTrace(
            tool_name=tool_use.name,
            tool_use_id=tool_use.id,
            started_at=started_at,
            ended_at=utcnow(),
            duration_ms=duration_ms,
            input=tool_use.input,
            output=result,
            success=result.success,
        )


def _tool_result_message(tool_use: ToolUseBlock, tool_trace: ToolInvocationTrace) -> Message:
    result = tool_trace.output
    if result.success:
        content = json.dumps(result.data)
    else:
        content = f"Error: {result.error}"
    return Message(
        role="user",
        content=(
            ToolResultBlock(
                tool_use_id=tool_use.id,
                content=content,
                is_error=not result.success,
            ),
        ),
    )
