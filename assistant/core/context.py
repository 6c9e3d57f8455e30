"""Context management -- compress older history before it overflows the window.

Older messages are folded into one synthetic user message holding an
LLM-written summary; the most recent messages are kept verbatim. Each
pass appends a SummaryMetadata record to the conversation.

Nothing here mutates its inputs. On failure the caller's conversation is
untouched and the error propagates.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass

from assistant.core.models import Conversation, Message, SummaryMetadata, TextBlock
from assistant.core.tokens import TokenCounter
from assistant.errors import InsufficientHistoryError, ProviderError, SummarizationProviderError
from assistant.llm.provider import CompletionProvider
from assistant.prompts import SUMMARY_MARKER, SUMMARY_PROMPT

logger = logging.getLogger(__name__)


def needs_summarization(conversation: Conversation, threshold: int) -> bool:
    return conversation.token_count >= threshold


def render_transcript(messages: Sequence[Message]) -> str:
    """Flatten messages into role-labelled text. Non-text blocks are skipped."""
    lines = []
    for msg in messages:
        role = "User" if msg.role == "user" else "Assistant"
        for text in msg.text_segments():
            lines.append(f"{role}: {text}")
    return "\n\n".join(lines)


@dataclass(frozen=True)
class SummarizationResult:
    messages: tuple[Message, ...]
    metadata: SummaryMetadata


class ContextManager:
    """Summarizes old conversation history via one provider call."""

    def __init__(
        self,
        provider: CompletionProvider,
        counter: TokenCounter,
        model: str,
        summary_max_tokens: int = 1024,
    ) -> None:
        self._provider = provider
        self._counter = counter
        self._model = model
        self._summary_max_tokens = summary_max_tokens

    async def summarize_old_messages(
        self,
        messages: Sequence[Message],
        keep_recent_count: int,
    ) -> SummarizationResult:
        """Replace all but the last keep_recent_count messages with a summary.

        Raises InsufficientHistoryError if there is nothing to compress and
        SummarizationProviderError if the provider call fails.
        """
        if len(messages) <= keep_recent_count:
            raise InsufficientHistoryError(len(messages), keep_recent_count)

        split = len(messages) - keep_recent_count
        old, recent = messages[:split], messages[split:]
        token_count_before = self._counter.count_messages(messages)
        start_time = time.monotonic()

        prompt = f"{SUMMARY_PROMPT}\n\n{render_transcript(old)}"
        try:
            response = await self._provider.complete(
                system_prompt="",
                messages=[Message.user(prompt)],
                tools=None,
                model=self._model,
                max_tokens=self._summary_max_tokens,
            )
        except ProviderError as e:
            raise SummarizationProviderError(f"Summary request failed: {e}") from e

        summary_text = "\n".join(b.text for b in response.content if isinstance(b, TextBlock)).strip()
        if not summary_text:
            raise SummarizationProviderError("Provider returned an empty summary")

        summary_message = Message.user(f"[{SUMMARY_MARKER}: {summary_text}]")
        summarized = (summary_message, *recent)
        token_count_after = self._counter.count_messages(summarized)

        logger.info(
            "Summarized %d messages into 1 (kept %d): %d -> %d tokens (%d ms)",
            len(old),
            len(recent),
            token_count_before,
            token_count_after,
            int((time.monotonic() - start_time) * 1000),
        )
        return SummarizationResult(
            messages=summarized,
            metadata=SummaryMetadata(
                original_message_count=len(messages),
                messages_kept=keep_recent_count,
                token_count_before=token_count_before,
                token_count_after=token_count_after,
            ),
        )

    async def apply(
        self,
        conversation: Conversation,
        threshold: int,
        keep_recent_count: int,
    ) -> Conversation:
        """Return the conversation, summarized if it has reached threshold."""
        if not needs_summarization(conversation, threshold):
            return conversation

        logger.info(
            "Conversation %s at %d tokens (threshold %d), summarizing",
            conversation.id,
            conversation.token_count,
            threshold,
        )
        result = await self.summarize_old_messages(conversation.messages, keep_recent_count)
        return conversation.model_copy(
            update={
                "messages": result.messages,
                "token_count": result.metadata.token_count_after,
                "summaries": (*conversation.summaries, result.metadata),
            }
        )
