"""Component wiring for front ends.

  Settings -> TokenCounter -> AnthropicProvider -> ToolRegistry -> stores -> Agent

The CLI and HTTP front ends call create_agent() once at startup and
close the agent on shutdown.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from assistant.config import Settings
from assistant.core.agent import Agent
from assistant.core.tokens import TokenCounter
from assistant.llm.provider import AnthropicProvider
from assistant.storage.conversations import FileConversationStore
from assistant.storage.traces import FileTraceStore
from assistant.tools.definitions import build_registry
from assistant.tools.registry import ToolHandler

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


async def create_agent(
    settings: Settings,
    handlers: Mapping[str, ToolHandler],
) -> Agent:
    """Build a ready-to-use Agent. The caller owns it and must close() it."""
    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning("Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set")

    provider = AnthropicProvider(settings)
    await provider.start()

    registry = build_registry(handlers)
    logger.info("Model: %s", settings.model)
    logger.info("Tools: %s", ", ".join(registry.names) or "none")
    logger.info(
        "Context management: %s",
        "enabled" if settings.max_conversation_tokens else "disabled",
    )

    return Agent(
        settings=settings,
        provider=provider,
        registry=registry,
        conversations=FileConversationStore(settings.data_dir),
        traces=FileTraceStore(settings.data_dir),
        counter=TokenCounter(),
    )
