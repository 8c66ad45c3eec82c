"""
Conversation store clients.

The engine only needs two calls from the store: create a conversation and
append a message to it. `generate_title` is optional.
"""

from __future__ import annotations

import asyncio
import itertools
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

import aiohttp

from logging_setup import get_logger, Component
from .errors import PersistenceFailure


logger = get_logger(Component.PERSISTENCE)


@dataclass(frozen=True)
class PersistedMessage:
    """A message written by the persistence bridge."""

    role: str  # "user" | "assistant"
    text: str
    conversation_id: str
    created_at: float = field(default_factory=time.time)
    message_id: Optional[str] = None


@runtime_checkable
class ConversationStore(Protocol):
    async def create_conversation(self, title: Optional[str] = None) -> str:
        ...

    async def append_message(self, conversation_id: str, role: str, text: str) -> str:
        ...


class InMemoryConversationStore:
    """Process-local store. Used by the CLI when no backend is configured, and by tests."""

    def __init__(self):
        self.conversations: Dict[str, Optional[str]] = {}
        self.messages: List[PersistedMessage] = []
        self.titled: List[str] = []
        self._ids = itertools.count(1)

    async def create_conversation(self, title: Optional[str] = None) -> str:
        conversation_id = str(uuid.uuid4())
        self.conversations[conversation_id] = title
        return conversation_id

    async def append_message(self, conversation_id: str, role: str, text: str) -> str:
        if conversation_id not in self.conversations:
            raise PersistenceFailure(f"Unknown conversation: {conversation_id}")
        message_id = f"msg_{next(self._ids)}"
        self.messages.append(PersistedMessage(
            role=role,
            text=text,
            conversation_id=conversation_id,
            message_id=message_id,
        ))
        return message_id

    async def generate_title(self, conversation_id: str) -> Optional[str]:
        self.titled.append(conversation_id)
        return None

    def messages_for(self, conversation_id: str) -> List[PersistedMessage]:
        return [m for m in self.messages if m.conversation_id == conversation_id]


async def _request(
    method: str,
    url: str,
    *,
    headers: Dict[str, str],
    json_body: Any,
    timeout: float,
) -> Tuple[int, Any]:
    """Send one JSON request; returns (status, parsed body or None)."""
    async with aiohttp.ClientSession() as s:
        async with s.request(
            method,
            url,
            json=json_body,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            try:
                body = await resp.json(content_type=None)
            except ValueError:
                body = None
            return resp.status, body


def _first_row(body: Any) -> Dict[str, Any]:
    if isinstance(body, list):
        return body[0] if body and isinstance(body[0], dict) else {}
    return body if isinstance(body, dict) else {}


class RestConversationStore:
    """
    PostgREST-style backend.

    - POST /rest/v1/rpc/create_conversation  {p_title, p_model}
    - POST /rest/v1/messages                  {conversation_id, role, content}
    - POST /functions/v1/generate-title       {conversation_id}
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str],
        access_token: Optional[str],
        model: str = "realtime",
        timeout_seconds: float = 15,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self.model = model
        self.timeout_seconds = timeout_seconds

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Prefer": "return=representation"}
        if self.api_key:
            headers["apikey"] = self.api_key
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _call(self, path: str, body: Dict[str, Any]) -> Any:
        url = f"{self.base_url}{path}"
        try:
            status, payload = await _request(
                "POST", url, headers=self._headers(), json_body=body, timeout=self.timeout_seconds
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise PersistenceFailure(f"{path} unreachable: {e}") from e
        if not 200 <= status < 300:
            raise PersistenceFailure(f"{path} failed: HTTP {status}")
        return payload

    async def create_conversation(self, title: Optional[str] = None) -> str:
        payload = await self._call("/rest/v1/rpc/create_conversation", {"p_title": title, "p_model": self.model})
        conversation_id = _first_row(payload).get("id")
        if not conversation_id:
            raise PersistenceFailure("No data returned from create_conversation")
        return str(conversation_id)

    async def append_message(self, conversation_id: str, role: str, text: str) -> str:
        payload = await self._call(
            "/rest/v1/messages",
            {"conversation_id": conversation_id, "role": role, "content": text},
        )
        return str(_first_row(payload).get("id") or "")

    async def generate_title(self, conversation_id: str) -> Optional[str]:
        payload = await self._call("/functions/v1/generate-title", {"conversation_id": conversation_id})
        title = _first_row(payload).get("title")
        logger.info("Conversation title generated", conversation_id=conversation_id, has_title=bool(title))
        return title
