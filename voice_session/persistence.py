"""
Persistence bridge: finished turns -> conversation store.

`commit` never blocks the caller. Each committed turn becomes one task; tasks
take a FIFO lock so turns are written in the order they completed and the
user message always precedes the assistant message of the same turn.

Failures are logged and recorded as events, never retried and never raised:
a lost message must not interrupt the conversation.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional, Set

from logging_setup import get_logger, Component
from observability.events import voice_session_emitter
from .store import ConversationStore
from .transcript import TranscriptBuffer


logger = get_logger(Component.PERSISTENCE)

DEFAULT_CONVERSATION_TITLE = "Voice conversation"


class PersistenceBridge:
    """Writes finalized turns to one conversation, created lazily."""

    def __init__(
        self,
        store: ConversationStore,
        *,
        session_id: str,
        conversation_id: Optional[str] = None,
        on_conversation_created: Optional[Callable[[str], None]] = None,
        title: str = DEFAULT_CONVERSATION_TITLE,
    ):
        self.store = store
        self.session_id = session_id
        self.title = title
        self._conversation_id = conversation_id
        self._on_conversation_created = on_conversation_created
        self._lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()
        self._title_requested = conversation_id is not None
        self.logger = logger.with_session(session_id)

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def pending(self) -> int:
        return len(self._pending)

    def commit(self, buffer: TranscriptBuffer, *, turn_id: str) -> Optional[asyncio.Task]:
        """
        Schedule the appends for one finished turn.

        Returns the scheduled task, or None when there is nothing to write.
        """
        if buffer.is_empty:
            self.logger.debug("Nothing to persist for turn", correlation_id=turn_id)
            return None
        task = asyncio.get_running_loop().create_task(self._persist(buffer, turn_id))
        self._track(task)
        return task

    async def drain(self) -> None:
        """Wait until every scheduled write has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _track(self, task: asyncio.Task) -> None:
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, buffer: TranscriptBuffer, turn_id: str) -> None:
        async with self._lock:
            conversation_id = await self._ensure_conversation()
            if conversation_id is None:
                return

            user_ok = assistant_ok = False
            if buffer.user_text.strip():
                user_ok = await self._append(conversation_id, "user", buffer.user_text.strip(), turn_id)
            if buffer.assistant_text.strip():
                assistant_ok = await self._append(
                    conversation_id, "assistant", buffer.assistant_text.strip(), turn_id
                )

            if user_ok and assistant_ok and not self._title_requested:
                self._title_requested = True
                self._track(asyncio.get_running_loop().create_task(self._generate_title(conversation_id)))

    async def _ensure_conversation(self) -> Optional[str]:
        if self._conversation_id is not None:
            return self._conversation_id

        try:
            conversation_id = await self.store.create_conversation(self.title)
        except Exception as e:
            self.logger.error(
                "Failed to create conversation",
                error=str(e),
                error_type=type(e).__name__,
            )
            voice_session_emitter.persistence_failed(
                self.session_id,
                operation="create_conversation",
                error_class=type(e).__name__,
            )
            return None

        self._conversation_id = conversation_id
        self.logger.info("Conversation created", conversation_id=conversation_id)
        voice_session_emitter.emit("conversation.created", self.session_id, conversation_id=conversation_id)
        if self._on_conversation_created is not None:
            self._on_conversation_created(conversation_id)
        return conversation_id

    async def _append(self, conversation_id: str, role: str, text: str, turn_id: str) -> bool:
        start_ts = time.time()
        try:
            message_id = await self.store.append_message(conversation_id, role, text)
        except Exception as e:
            self.logger.error(
                "Failed to persist message",
                correlation_id=turn_id,
                conversation_id=conversation_id,
                role=role,
                error=str(e),
                error_type=type(e).__name__,
            )
            voice_session_emitter.persistence_failed(
                self.session_id,
                operation="append_message",
                role=role,
                conversation_id=conversation_id,
                error_class=type(e).__name__,
            )
            return False

        latency_ms = int((time.time() - start_ts) * 1000)
        self.logger.info(
            "Message persisted",
            correlation_id=turn_id,
            conversation_id=conversation_id,
            role=role,
            latency_ms=latency_ms,
        )
        voice_session_emitter.emit(
            "persistence.appended",
            self.session_id,
            correlation_id=turn_id,
            conversation_id=conversation_id,
            role=role,
            message_id=message_id,
            text_length=len(text),
        )
        return True

    async def _generate_title(self, conversation_id: str) -> None:
        generate = getattr(self.store, "generate_title", None)
        if generate is None:
            return
        try:
            await generate(conversation_id)
        except Exception as e:
            self.logger.warning(
                "Title generation failed",
                conversation_id=conversation_id,
                error=str(e),
                error_type=type(e).__name__,
            )
