"""Token budget estimation.

Uses tiktoken's cl100k_base encoding as a stable sub-word model. It does
not match Anthropic's tokenizer exactly; it only needs to be deterministic
and monotonic so the pre-flight budget check is reproducible.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from typing import Any, Protocol

from assistant.core.models import Message, TextBlock, ToolResultBlock, ToolUseBlock

logger = logging.getLogger(__name__)

CLAUDE_CONTEXT_LIMIT = 200_000
SUMMARIZATION_THRESHOLD = 150_000  # 75% of limit
MAX_TOKENS_PER_REQUEST = 4096

MESSAGE_OVERHEAD = 4  # role + delimiters per message
TOOL_OVERHEAD = 10  # formatting per tool definition

DEFAULT_ENCODING = "cl100k_base"


class Encoding(Protocol):
    """The part of tiktoken.Encoding we rely on."""

    def encode(self, text: str) -> list[int]: ...


class TokenCounter:
    """Counts tokens for text, messages, tool schemas and whole requests.

    The encoding is loaded lazily on first use and shared by all turns.
    Call release() once at shutdown; a released counter reloads on the
    next call.
    """

    def __init__(self, encoding_name: str = DEFAULT_ENCODING, encoding: Encoding | None = None) -> None:
        self._encoding_name = encoding_name
        self._enc: Encoding | None = encoding

    @property
    def loaded(self) -> bool:
        return self._enc is not None

    def _encoding(self) -> Encoding:
        if self._enc is None:
            import tiktoken

            self._enc = tiktoken.get_encoding(self._encoding_name)
            logger.debug("Loaded tokenizer encoding %s", self._encoding_name)
        return self._enc

    def release(self) -> None:
        """Drop the encoding handle."""
        if self._enc is not None:
            self._enc = None
            logger.debug("Released tokenizer encoding %s", self._encoding_name)

    def count_text(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding().encode(text))

    def count_messages(self, messages: Iterable[Message]) -> int:
        """Count message tokens including per-message overhead.

        Tool-use blocks count the tool name and serialized input; tool
        results count both the call id and the result text.
        """
        total = 0
        for message in messages:
            total += MESSAGE_OVERHEAD
            total += self.count_text(message.role)
            if isinstance(message.content, str):
                total += self.count_text(message.content)
                continue
            for block in message.content:
                if isinstance(block, TextBlock):
                    total += self.count_text(block.text)
                elif isinstance(block, ToolResultBlock):
                    total += self.count_text(block.tool_use_id)
                    total += self.count_text(block.content)
                elif isinstance(block, ToolUseBlock):
                    total += self.count_text(block.name)
                    total += self.count_text(json.dumps(block.input))
        return total

    def count_tools(self, tools: Sequence[dict[str, Any]]) -> int:
        total = 0
        for tool in tools:
            total += self.count_text(tool.get("name", ""))
            total += self.count_text(tool.get("description") or "")
            total += self.count_text(json.dumps(tool.get("input_schema", {})))
            total += TOOL_OVERHEAD
        return total

    def count_request(
        self,
        system_prompt: str,
        messages: Iterable[Message],
        tools: Sequence[dict[str, Any]],
    ) -> int:
        """Authoritative pre-flight estimate for one provider call."""
        return (
            self.count_text(system_prompt)
            + self.count_messages(messages)
            + self.count_tools(tools)
        )

