"""
Persistence bridge tests.

Uses the in-memory store plus small failing stores; event emission is
checked through the event store.
"""
import asyncio

import pytest

from observability.event_store import event_store
from voice_session.errors import PersistenceFailure
from voice_session.persistence import DEFAULT_CONVERSATION_TITLE, PersistenceBridge
from voice_session.store import InMemoryConversationStore
from voice_session.transcript import TranscriptBuffer


@pytest.fixture(autouse=True)
def clear_events():
    event_store.clear()
    yield
    event_store.clear()


class SlowStore(InMemoryConversationStore):
    """Completes earlier appends later, to prove ordering comes from the bridge."""

    def __init__(self):
        super().__init__()
        self._delays = iter([0.03, 0.0, 0.02, 0.0])

    async def append_message(self, conversation_id, role, text):
        await asyncio.sleep(next(self._delays, 0.0))
        return await super().append_message(conversation_id, role, text)


class FailingAppendStore(InMemoryConversationStore):
    async def append_message(self, conversation_id, role, text):
        raise PersistenceFailure("/rest/v1/messages failed: HTTP 500")


class FailingCreateStore(InMemoryConversationStore):
    async def create_conversation(self, title=None):
        raise PersistenceFailure("create_conversation unreachable")


@pytest.mark.asyncio
async def test_commit_creates_conversation_once_and_appends_in_order():
    store = InMemoryConversationStore()
    created = []
    bridge = PersistenceBridge(store, session_id="vs_test", on_conversation_created=created.append)

    bridge.commit(TranscriptBuffer("I feel anxious today", "I hear you."), turn_id="vs_test:turn-1")
    bridge.commit(TranscriptBuffer("Thanks", "Any time."), turn_id="vs_test:turn-2")
    await bridge.drain()

    assert len(store.conversations) == 1
    conversation_id = bridge.conversation_id
    assert created == [conversation_id]
    assert store.conversations[conversation_id] == DEFAULT_CONVERSATION_TITLE
    assert [(m.role, m.text) for m in store.messages_for(conversation_id)] == [
        ("user", "I feel anxious today"),
        ("assistant", "I hear you."),
        ("user", "Thanks"),
        ("assistant", "Any time."),
    ]


@pytest.mark.asyncio
async def test_order_holds_with_uneven_store_latency():
    store = SlowStore()
    bridge = PersistenceBridge(store, session_id="vs_test")

    bridge.commit(TranscriptBuffer("first question", "first answer"), turn_id="t1")
    bridge.commit(TranscriptBuffer("second question", "second answer"), turn_id="t2")
    await bridge.drain()

    assert [m.text for m in store.messages] == [
        "first question", "first answer", "second question", "second answer",
    ]


@pytest.mark.asyncio
async def test_empty_buffer_writes_nothing():
    store = InMemoryConversationStore()
    bridge = PersistenceBridge(store, session_id="vs_test")

    assert bridge.commit(TranscriptBuffer("  ", ""), turn_id="t1") is None
    await bridge.drain()

    assert store.conversations == {}
    assert store.messages == []


@pytest.mark.asyncio
async def test_assistant_only_turn():
    store = InMemoryConversationStore()
    bridge = PersistenceBridge(store, session_id="vs_test")

    bridge.commit(TranscriptBuffer("", "Hello, how are you feeling?"), turn_id="t1")
    await bridge.drain()

    assert [(m.role, m.text) for m in store.messages] == [("assistant", "Hello, how are you feeling?")]


@pytest.mark.asyncio
async def test_existing_conversation_is_reused():
    store = InMemoryConversationStore()
    conversation_id = await store.create_conversation("Earlier chat")
    bridge = PersistenceBridge(store, session_id="vs_test", conversation_id=conversation_id)

    bridge.commit(TranscriptBuffer("Hello again", "Welcome back."), turn_id="t1")
    await bridge.drain()

    assert len(store.conversations) == 1
    assert len(store.messages_for(conversation_id)) == 2
    assert store.titled == []


@pytest.mark.asyncio
async def test_title_requested_after_first_full_turn():
    store = InMemoryConversationStore()
    bridge = PersistenceBridge(store, session_id="vs_test")

    bridge.commit(TranscriptBuffer("Hello there", "Hi!"), turn_id="t1")
    bridge.commit(TranscriptBuffer("Another one", "Sure."), turn_id="t2")
    await bridge.drain()

    assert store.titled == [bridge.conversation_id]


@pytest.mark.asyncio
async def test_append_failure_is_logged_not_raised():
    store = FailingAppendStore()
    bridge = PersistenceBridge(store, session_id="vs_fail")

    bridge.commit(TranscriptBuffer("Hello there", "Hi!"), turn_id="t1")
    await bridge.drain()

    failures = event_store.query(session_id="vs_fail", event_type="persistence.failed")
    assert [f["role"] for f in failures] == ["user", "assistant"]
    assert failures[0]["operation"] == "append_message"
    assert failures[0]["error_class"] == "PersistenceFailure"
    assert store.titled == []


@pytest.mark.asyncio
async def test_create_failure_skips_turn():
    store = FailingCreateStore()
    bridge = PersistenceBridge(store, session_id="vs_fail")

    bridge.commit(TranscriptBuffer("Hello there", "Hi!"), turn_id="t1")
    await bridge.drain()

    assert bridge.conversation_id is None
    assert store.messages == []
    failures = event_store.query(session_id="vs_fail", event_type="persistence.failed")
    assert len(failures) == 1
    assert failures[0]["operation"] == "create_conversation"
