"""Completion provider -- direct httpx calls to the Anthropic Messages API.

No SDK: the payload is built by hand and content blocks come back as
plain dicts, parsed into the conversation model by the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from assistant.config import Settings
from assistant.core.models import ContentBlock, Message, parse_content_blocks
from assistant.errors import ProviderError

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

_RETRY_STATUSES = frozenset({429, 500, 529})
_MAX_RETRY_AFTER = 30.0


@dataclass(frozen=True)
class Completion:
    """Parsed response from the Messages API."""

    content: tuple[ContentBlock, ...]
    input_tokens: int
    output_tokens: int
    stop_reason: str


class CompletionProvider(Protocol):
    async def complete(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]] | None,
        model: str,
        max_tokens: int,
    ) -> Completion: ...

    async def close(self) -> None: ...


class AnthropicProvider:
    """CompletionProvider backed by the Anthropic Messages API."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        if settings.anthropic_auth_token:
            headers["authorization"] = f"Bearer {settings.anthropic_auth_token}"
        elif settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            transport=self._transport,
        )
        auth_type = "Bearer token" if settings.anthropic_auth_token else "API key"
        logger.info("httpx client initialized (auth: %s)", auth_type)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    @staticmethod
    def build_payload(
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]] | None,
        model: str,
        max_tokens: int,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": [m.to_api() for m in messages],
        }
        if system_prompt:
            payload["system"] = system_prompt
        if tools:
            payload["tools"] = list(tools)
        return payload

    async def complete(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]] | None,
        model: str,
        max_tokens: int,
    ) -> Completion:
        """Call the Messages API, retrying once on 429/500/529 or timeout.

        Raises ProviderError on any persistent failure.
        """
        if not self._http:
            await self.start()
        assert self._http is not None

        payload = self.build_payload(system_prompt, messages, tools, model, max_tokens)

        last_error: ProviderError | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await self._http.post("/v1/messages", json=payload)
            except httpx.TimeoutException as e:
                last_error = ProviderError(f"API request timed out: {e}", error_type="timeout", retryable=True)
                if attempt == 0:
                    logger.warning("API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                continue
            except httpx.HTTPError as e:
                # Connection errors are not retried
                raise ProviderError(f"HTTP error: {e}", error_type="transport") from e

            if response.status_code == 200:
                return self._parse_response(response)

            error_type, error_msg = self._parse_error(response)
            retryable = response.status_code in _RETRY_STATUSES
            last_error = ProviderError(
                f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}",
                status_code=response.status_code,
                error_type=error_type,
                retryable=retryable,
            )
            if retryable and attempt == 0:
                retry_after = self._retry_after(response)
                logger.warning(
                    "API error %d (%s), retrying in %.1fs: %s",
                    response.status_code,
                    error_type,
                    retry_after,
                    error_msg,
                )
                await asyncio.sleep(retry_after)
                continue
            break

        raise last_error or ProviderError("API call failed with unknown error")

    @staticmethod
    def _parse_response(response: httpx.Response) -> Completion:
        try:
            data = response.json()
            usage = data.get("usage") or {}
            return Completion(
                content=parse_content_blocks(data.get("content", [])),
                input_tokens=int(usage.get("input_tokens", 0)),
                output_tokens=int(usage.get("output_tokens", 0)),
                stop_reason=data.get("stop_reason") or "unknown",
            )
        except ValueError as e:
            raise ProviderError(f"Malformed API response: {e}", status_code=200, error_type="invalid_response") from e

    @staticmethod
    def _parse_error(response: httpx.Response) -> tuple[str, str]:
        try:
            error = response.json().get("error", {})
            return error.get("type", "unknown"), error.get("message", "unknown error")
        except ValueError:
            return "http_error", f"HTTP {response.status_code}: {response.text[:500]}"

    @staticmethod
    def _retry_after(response: httpx.Response) -> float:
        try:
            retry_after = float(response.headers.get("retry-after", "1"))
        except ValueError:
            retry_after = 1.0
        return min(retry_after, _MAX_RETRY_AFTER)
