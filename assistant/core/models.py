"""Conversation data model.

Messages and conversations are frozen pydantic models: the loop never
mutates a transcript in place, it builds new tuples and copies the
conversation with model_copy(update=...).
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

Role = Literal["user", "assistant"]


def utcnow() -> datetime:
    return datetime.now(UTC)


# --- Content blocks ---


class TextBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    """A tool-invocation request emitted by the model."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """The result of a tool call, correlated to its request by tool_use_id."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Annotated[
    TextBlock | ToolUseBlock | ToolResultBlock,
    Field(discriminator="type"),
]

_BLOCK_ADAPTER: TypeAdapter[ContentBlock] = TypeAdapter(ContentBlock)
_KNOWN_BLOCK_TYPES = frozenset({"text", "tool_use", "tool_result"})


def parse_content_blocks(raw: list[dict[str, Any]]) -> tuple[ContentBlock, ...]:
    """Parse provider content blocks, dropping block types we don't model.

    Raises ValueError if a known block type is malformed.
    """
    blocks: list[ContentBlock] = []
    for item in raw:
        if item.get("type") not in _KNOWN_BLOCK_TYPES:
            continue
        try:
            blocks.append(_BLOCK_ADAPTER.validate_python(item))
        except ValidationError as e:
            raise ValueError(f"Malformed {item.get('type')} block: {e}") from e
    return tuple(blocks)


# --- Messages ---


class Message(BaseModel):
    """One transcript entry. Content is plain text or an ordered block list."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str | tuple[ContentBlock, ...]

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role="user", content=text)

    @property
    def blocks(self) -> tuple[ContentBlock, ...]:
        if isinstance(self.content, str):
            return (TextBlock(text=self.content),)
        return self.content

    def text_segments(self) -> list[str]:
        """Return the text parts of this message; non-text blocks are skipped."""
        return [b.text for b in self.blocks if isinstance(b, TextBlock)]

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]

    def to_api(self) -> dict[str, Any]:
        """Render the Messages API wire shape."""
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {
            "role": self.role,
            "content": [block.model_dump(mode="json") for block in self.content],
        }


# --- Conversation ---


class SummaryMetadata(BaseModel):
    """Audit record for one summarization pass. Never removed."""

    model_config = ConfigDict(frozen=True)

    summarized_at: datetime = Field(default_factory=utcnow)
    original_message_count: int
    messages_kept: int
    token_count_before: int
    token_count_after: int


class Conversation(BaseModel):
    """A durable conversation transcript.

    token_count is a cached estimate; refresh it after every change to
    messages.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    started_at: datetime = Field(default_factory=utcnow)
    last_message_at: datetime = Field(default_factory=utcnow)
    messages: tuple[Message, ...] = ()
    token_count: int = 0
    summaries: tuple[SummaryMetadata, ...] = ()

    def metadata(self) -> ConversationMetadata:
        return ConversationMetadata(
            id=self.id,
            started_at=self.started_at,
            last_message_at=self.last_message_at,
            message_count=len(self.messages),
            token_count=self.token_count,
            summary_count=len(self.summaries),
        )


class ConversationMetadata(BaseModel):
    id: str
    started_at: datetime
    last_message_at: datetime
    message_count: int
    token_count: int = 0
    summary_count: int = 0
