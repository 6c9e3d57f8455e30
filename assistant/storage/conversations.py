"""Conversation storage -- one JSON file per conversation.

Layout under the data directory:
  conversations/<id>.json   full conversation record
  current.json              {"conversation_id": <id or null>}

File I/O runs in a worker thread so the event loop never blocks on disk.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from assistant.core.models import Conversation, ConversationMetadata
from assistant.errors import ConversationNotFoundError, PersistenceError

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class ConversationStore(Protocol):
    async def load(self, conversation_id: str) -> Conversation: ...

    async def save(self, conversation: Conversation) -> None: ...

    async def create_new(self) -> Conversation: ...


class FileConversationStore:
    """ConversationStore backed by JSON files under data_dir."""

    def __init__(self, data_dir: str | Path) -> None:
        self._root = Path(data_dir)
        self._dir = self._root / "conversations"
        self._current_file = self._root / "current.json"

    def _path(self, conversation_id: str) -> Path:
        if not _SAFE_ID.match(conversation_id):
            raise PersistenceError(f"Invalid conversation id: {conversation_id!r}")
        return self._dir / f"{conversation_id}.json"

    async def load(self, conversation_id: str) -> Conversation:
        path = self._path(conversation_id)
        try:
            content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            raise ConversationNotFoundError(conversation_id) from None
        except OSError as e:
            raise PersistenceError(f"Failed to load conversation {conversation_id}: {e}") from e
        try:
            return Conversation.model_validate_json(content)
        except ValidationError as e:
            raise PersistenceError(f"Conversation {conversation_id} is corrupt: {e}") from e

    async def save(self, conversation: Conversation) -> None:
        path = self._path(conversation.id)
        content = conversation.model_dump_json(indent=2)
        try:
            await asyncio.to_thread(self._dir.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(_write_atomic, path, content)
        except OSError as e:
            raise PersistenceError(f"Failed to save conversation {conversation.id}: {e}") from e

    async def create_new(self) -> Conversation:
        conversation = Conversation(id=str(uuid.uuid4()))
        await self.save(conversation)
        logger.debug("Created conversation %s", conversation.id)
        return conversation

    async def delete(self, conversation_id: str) -> None:
        path = self._path(conversation_id)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            raise ConversationNotFoundError(conversation_id) from None
        except OSError as e:
            raise PersistenceError(f"Failed to delete conversation {conversation_id}: {e}") from e

        if await self.get_current_id() == conversation_id:
            await self.set_current_id(None)

    async def list_conversations(self) -> list[ConversationMetadata]:
        """Metadata for every readable conversation, newest activity first.

        Unreadable files are skipped with a warning.
        """
        if not await asyncio.to_thread(self._dir.exists):
            return []
        paths = await asyncio.to_thread(lambda: sorted(self._dir.glob("*.json")))

        metadata: list[ConversationMetadata] = []
        for path in paths:
            try:
                conversation = await self.load(path.stem)
            except PersistenceError as e:
                logger.warning("Skipping unreadable conversation %s: %s", path.name, e)
                continue
            metadata.append(conversation.metadata())

        metadata.sort(key=lambda m: m.last_message_at, reverse=True)
        return metadata

    async def get_current_id(self) -> str | None:
        try:
            content = await asyncio.to_thread(self._current_file.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Failed to read current conversation: {e}") from e
        try:
            return json.loads(content).get("conversation_id")
        except (ValueError, AttributeError) as e:
            raise PersistenceError(f"Current conversation pointer is corrupt: {e}") from e

    async def set_current_id(self, conversation_id: str | None) -> None:
        content = json.dumps({"conversation_id": conversation_id}, indent=2)
        try:
            await asyncio.to_thread(self._root.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(_write_atomic, self._current_file, content)
        except OSError as e:
            raise PersistenceError(f"Failed to set current conversation: {e}") from e


def _write_atomic(path: Path, content: str) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(content, encoding="utf-8")
    tmp.replace(path)
