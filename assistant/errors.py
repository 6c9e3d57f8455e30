"""Error taxonomy for the agent core.

Fatal failures abort the turn before anything is persisted. Tool
failures are not exceptions at all: they come back from the registry
as ToolExecutionResult values and are handed to the model as content.
"""

from __future__ import annotations


class AssistantError(Exception):
    """Base class for all expected agent failures."""


# --- Persistence ---


class PersistenceError(AssistantError):
    """Loading or saving a conversation failed."""


class ConversationNotFoundError(PersistenceError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


# --- Summarization / context management ---


class SummarizationError(AssistantError):
    """Compressing older messages failed."""


class InsufficientHistoryError(SummarizationError):
    def __init__(self, message_count: int, keep_recent_count: int) -> None:
        super().__init__(
            f"Not enough messages to summarize ({message_count} <= {keep_recent_count})"
        )
        self.message_count = message_count
        self.keep_recent_count = keep_recent_count


class SummarizationProviderError(SummarizationError):
    """The provider call that produces the summary failed."""


class ContextManagementError(AssistantError):
    """Turn aborted because context management could not run."""

    def __init__(self, reason: str) -> None:
        super().__init__(
            f"Context management failed: {reason}. "
            "Please start a new conversation or reduce message history."
        )


# --- Loop limits ---


class ContextOverflowError(AssistantError):
    def __init__(self, estimated_tokens: int, limit: int) -> None:
        super().__init__(
            f"Context size ({estimated_tokens} tokens) exceeds hard limit ({limit} tokens). "
            "Consider starting a new conversation or enabling context summarization."
        )
        self.estimated_tokens = estimated_tokens
        self.limit = limit


class IterationLimitError(AssistantError):
    def __init__(self, max_iterations: int) -> None:
        super().__init__(
            f"Maximum iteration limit ({max_iterations}) reached. "
            "The agent may be stuck in a tool loop."
        )
        self.max_iterations = max_iterations


# --- Provider ---


class ProviderError(AssistantError):
    """Transport, auth or rate-limit failure from the completion provider.

    Never retried by the loop; the provider itself makes at most one
    retry for transient statuses before raising.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_type: str = "unknown",
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type
        self.retryable = retryable

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in (401, 403)


class TraceSaveError(AssistantError):
    """Writing an execution trace failed. Logged, never propagated by the loop."""


def describe_failure(exc: BaseException) -> str:
    """Map a turn failure to a short, actionable message for front ends."""
    if isinstance(exc, ConversationNotFoundError):
        return "That conversation no longer exists. Start a new one to continue."
    if isinstance(exc, PersistenceError):
        return "Your conversation could not be loaded or saved. Check the data directory and try again."
    if isinstance(exc, ContextManagementError):
        return "The conversation is too long to summarize. Start a new conversation to continue."
    if isinstance(exc, ContextOverflowError):
        return (
            f"This conversation is too large ({exc.estimated_tokens} tokens, limit {exc.limit}). "
            "Start a new conversation or enable summarization."
        )
    if isinstance(exc, ProviderError):
        if exc.is_auth_error:
            return "The model provider rejected the credentials. Check ANTHROPIC_API_KEY."
        if exc.status_code == 429:
            return "The model provider is rate limiting requests. Wait a moment and try again."
        return "The model provider could not be reached. Try again shortly."
    if isinstance(exc, IterationLimitError):
        return (
            f"The assistant used {exc.max_iterations} tool rounds without finishing. "
            "Try rephrasing the request."
        )
    return "Something went wrong while processing your message."
