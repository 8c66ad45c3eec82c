"""
Voice session orchestrator.

One VoiceSession drives one realtime voice conversation. Everything that can
change session state (side-channel messages, remote audio signals, levels,
transport failures, handshake results, conversation-created notices and the
caller's own start/stop/send_text commands) is put on a single asyncio.Queue
and handled by one consumer task. Producers only enqueue.

Each connection attempt gets a number. Signals from an older attempt are
dropped, so a late message from a torn-down connection can never touch the
current one.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Union

from logging_setup import get_logger, Component
from observability.events import Severity, voice_session_emitter
from .callbacks import SessionCallbacks
from .config import VoiceSessionConfig
from .credentials import CredentialBrokerClient
from .dispatcher import EventDispatcher
from .errors import TransportError, VoiceSessionError, classify_error, get_user_message, is_retryable
from .events import (
    AudioLevel,
    ConversationCreated,
    LocalSignal,
    RemoteAudioStarted,
    RemoteAudioStopped,
    TextCommitted,
    TransportFailed,
)
from .persistence import PersistenceBridge
from .store import ConversationStore, InMemoryConversationStore
from .transcript import TranscriptAggregator, TranscriptBuffer
from .transport import SessionHandle, TransportCallbacks, TransportSessionManager
from .turns import TurnState, TurnStateMachine


logger = get_logger(Component.VOICE_SESSION)


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of a session for rendering."""

    connection_state: ConnectionState
    turn_state: TurnState
    amplitude: float
    conversation_id: Optional[str]
    transcript: TranscriptBuffer
    turn_count: int


# --- Queue items ---


@dataclass(frozen=True)
class _Inbound:
    attempt: int
    item: Union[str, bytes, LocalSignal]


@dataclass(frozen=True)
class _ConnectResult:
    attempt: int
    handle: Optional[SessionHandle] = None
    error: Optional[BaseException] = None


@dataclass
class _Command:
    name: str
    future: asyncio.Future
    args: tuple = field(default_factory=tuple)


class VoiceSession:
    """
    Realtime voice session.

    Usage:
        session = VoiceSession(config=config, callbacks=SessionCallbacks(on_turn_complete=...))
        await session.start()
        ...
        await session.stop()
    """

    def __init__(
        self,
        config: VoiceSessionConfig,
        callbacks: Optional[SessionCallbacks] = None,
        store: Optional[ConversationStore] = None,
        broker: Optional[CredentialBrokerClient] = None,
        transport: Optional[TransportSessionManager] = None,
        conversation_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ):
        self.config = config
        self.session_id = session_id or f"vs_{uuid.uuid4().hex[:12]}"
        self.callbacks = callbacks or SessionCallbacks()
        self.store = store if store is not None else InMemoryConversationStore()
        self.broker = broker or CredentialBrokerClient(
            config.credential_broker_url,
            config.user_access_token,
            timeout_seconds=config.http_timeout_seconds,
            default_ttl_seconds=config.default_credential_ttl_seconds,
        )
        self.transport = transport or TransportSessionManager(
            realtime_base_url=config.realtime_base_url,
            ice_servers=config.ice_servers,
            sample_rate=config.sample_rate,
            amplitude_interval_ms=config.amplitude_interval_ms,
            http_timeout=config.http_timeout_seconds,
        )
        self.logger = logger.with_session(self.session_id)

        self.turns = TurnStateMachine()
        self.transcript = TranscriptAggregator(
            min_user_chars=config.min_user_transcript_chars,
            session_id=self.session_id,
        )
        self.bridge = PersistenceBridge(
            self.store,
            session_id=self.session_id,
            conversation_id=conversation_id,
            on_conversation_created=self._conversation_created,
        )
        self.dispatcher = EventDispatcher(
            session_id=self.session_id,
            turns=self.turns,
            transcript=self.transcript,
            bridge=self.bridge,
            callbacks=self.callbacks,
            config=config,
            send=self._send_event,
            set_mic_muted=self._set_mic_muted,
        )

        self._state = ConnectionState.IDLE
        self._queue: asyncio.Queue = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._attempt = 0
        self._handle: Optional[SessionHandle] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._start_waiters: List[asyncio.Future] = []
        # Current-attempt signals that arrived before the connect result.
        self._held: List[_Inbound] = []
        self._disconnect_fired = True

    # --- Public API ---

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def conversation_id(self) -> Optional[str]:
        return self.bridge.conversation_id

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            connection_state=self._state,
            turn_state=self.turns.state,
            amplitude=self.dispatcher.amplitude,
            conversation_id=self.bridge.conversation_id,
            transcript=self.transcript.buffer,
            turn_count=self.turns.turn_seq,
        )

    async def start(self) -> None:
        """
        Connect with a fresh credential.

        Returns once connected. On failure the session is in ERROR, `on_error`
        has fired once, and the error is raised here. Calling start() again
        is the retry.
        """
        await self._submit("start")

    async def stop(self) -> None:
        """Disconnect. Idempotent; safe while connecting."""
        if self._consumer is None and self._state in (ConnectionState.IDLE, ConnectionState.CLOSED):
            return
        await self._submit("stop")

    disconnect = stop

    async def send_text(self, text: str) -> bool:
        """Send a typed user turn. Returns False when not connected."""
        text = text.strip()
        if not text:
            return False
        return await self._submit("send_text", text)

    async def drain(self) -> None:
        """Wait for every queued signal and pending store write to be handled."""
        await self._submit("sync")
        await self.bridge.drain()
        # Store writes may have queued a conversation-created notice.
        await self._submit("sync")

    # --- Consumer ---

    async def _submit(self, name: str, *args) -> Any:
        future = asyncio.get_running_loop().create_future()
        self._ensure_consumer()
        self._queue.put_nowait(_Command(name, future, args))
        return await future

    def _ensure_consumer(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.get_running_loop().create_task(self._consume())

    def _at_rest(self) -> bool:
        return (
            self._state in (ConnectionState.IDLE, ConnectionState.CLOSED, ConnectionState.ERROR)
            and self._connect_task is None
            and self._queue.empty()
        )

    async def _consume(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._handle_item(item)
            except Exception as e:
                self.logger.exception("Error handling session event", error=str(e), error_type=type(e).__name__)
                if isinstance(item, _Command) and not item.future.done():
                    item.future.set_exception(e)
            if self._at_rest():
                self._consumer = None
                return

    async def _handle_item(self, item: Any) -> None:
        if isinstance(item, _Inbound):
            await self._on_inbound(item)
        elif isinstance(item, _Command):
            await self._on_command(item)
        elif isinstance(item, _ConnectResult):
            await self._on_connect_result(item)
        elif isinstance(item, ConversationCreated):
            self.callbacks.fire("on_conversation_created", item.conversation_id, session_id=self.session_id)

    async def _on_command(self, command: _Command) -> None:
        if command.name == "start":
            self._cmd_start(command.future)
        elif command.name == "stop":
            await self._cmd_stop()
            command.future.set_result(None)
        elif command.name == "send_text":
            command.future.set_result(self._cmd_send_text(*command.args))
        elif command.name == "sync":
            command.future.set_result(None)

    async def _on_inbound(self, inbound: _Inbound) -> None:
        if inbound.attempt != self._attempt:
            return
        if self._state is ConnectionState.CONNECTING:
            self._held.append(inbound)
            return
        if self._state is not ConnectionState.CONNECTED:
            return
        item = inbound.item
        if isinstance(item, TransportFailed):
            await self._on_transport_failed(item.error)
        elif isinstance(item, (str, bytes, bytearray)):
            self.dispatcher.dispatch_raw(item)
        else:
            self.dispatcher.dispatch(item)

    # --- Connection lifecycle ---

    def _set_state(self, state: ConnectionState, reason: Optional[str] = None) -> None:
        old, self._state = self._state, state
        if old is state:
            return
        self.logger.info("Connection state changed", from_state=old.value, to_state=state.value, reason=reason)
        voice_session_emitter.connection_state_changed(
            self.session_id,
            from_state=old.value,
            to_state=state.value,
            reason=reason,
        )

    def _cmd_start(self, future: asyncio.Future) -> None:
        if self._state is ConnectionState.CONNECTED:
            future.set_result(None)
            return
        if self._state is ConnectionState.CONNECTING:
            self._start_waiters.append(future)
            return

        if self._state is ConnectionState.ERROR:
            self._set_state(ConnectionState.IDLE, reason="retry")
        elif self._state is ConnectionState.CLOSED:
            self._set_state(ConnectionState.IDLE, reason="restart")

        self._attempt += 1
        self._disconnect_fired = False
        self._start_waiters = [future]
        self._held = []
        self._set_state(ConnectionState.CONNECTING)
        self._connect_task = asyncio.get_running_loop().create_task(self._connect(self._attempt))

    async def _connect(self, attempt: int) -> None:
        """Runs outside the consumer; reports back through the queue."""
        try:
            credential = await self.broker.acquire_credential()
            voice_session_emitter.emit(
                "credential.acquired",
                self.session_id,
                model=credential.model,
                voice=credential.voice,
                expires_in_s=int(credential.seconds_remaining()),
            )
            handle = await self.transport.connect(credential, self._transport_callbacks(attempt))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._queue.put_nowait(_ConnectResult(attempt, error=e))
            return
        self._queue.put_nowait(_ConnectResult(attempt, handle=handle))

    def _transport_callbacks(self, attempt: int) -> TransportCallbacks:
        put = self._queue.put_nowait

        def on_remote_audio(active: bool, reason: str) -> None:
            put(_Inbound(attempt, RemoteAudioStarted(reason) if active else RemoteAudioStopped(reason)))

        return TransportCallbacks(
            on_message=lambda data: put(_Inbound(attempt, data)),
            on_remote_audio=on_remote_audio,
            on_level=lambda source, level: put(_Inbound(attempt, AudioLevel(source, level))),
            on_error=lambda error: put(_Inbound(attempt, TransportFailed(error))),
        )

    async def _on_connect_result(self, result: _ConnectResult) -> None:
        if result.attempt != self._attempt or self._state is not ConnectionState.CONNECTING:
            if result.handle is not None:
                self.logger.info("Discarding connection from an abandoned attempt")
                await self.transport.disconnect(result.handle)
            return

        self._connect_task = None
        waiters, self._start_waiters = self._start_waiters, []
        held, self._held = self._held, []

        if result.error is not None:
            error = result.error
            category = classify_error(error)
            # A failed attempt reports on_error only.
            self._disconnect_fired = True
            self._set_state(ConnectionState.ERROR, reason=category)
            self.logger.error("Session start failed", error=str(error), error_type=type(error).__name__, category=category)
            self.callbacks.fire("on_error", error, session_id=self.session_id)
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_exception(error)
            return

        self._handle = result.handle
        self._set_state(ConnectionState.CONNECTED)
        self.dispatcher.on_connected()
        self.callbacks.fire("on_connect", session_id=self.session_id)
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

        # The event channel opens inside transport.connect(); replay what it
        # delivered before the handle came back, in arrival order.
        for inbound in held:
            await self._on_inbound(inbound)

    async def _on_transport_failed(self, error: BaseException) -> None:
        category = classify_error(error)
        self.logger.error("Transport failed", error=str(error), category=category)
        voice_session_emitter.emit(
            "transport.failed",
            self.session_id,
            severity=Severity.ERROR,
            category=category,
        )
        self.callbacks.fire("on_error", error, session_id=self.session_id)
        await self._close_attempt(ConnectionState.ERROR, reason=category)

    async def _cmd_stop(self) -> None:
        state = self._state
        if state in (ConnectionState.IDLE, ConnectionState.CLOSED):
            return
        if state is ConnectionState.ERROR:
            self._set_state(ConnectionState.CLOSED, reason="stopped")
            return

        self._set_state(ConnectionState.CLOSING, reason="stopped")

        if state is ConnectionState.CONNECTING:
            task, self._connect_task = self._connect_task, None
            if task is not None:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
            waiters, self._start_waiters = self._start_waiters, []
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_exception(TransportError("Session stopped before it connected"))

        await self._close_attempt(ConnectionState.CLOSED, reason="stopped")

    async def _close_attempt(self, final_state: ConnectionState, reason: str) -> None:
        """
        Release the connection and report the disconnect once.

        Store writes already scheduled keep running in the background; the
        consumer never waits on them here. Callers wanting them finished use
        drain().
        """
        start_ts = time.time()
        handle, self._handle = self._handle, None
        self._held = []
        self.dispatcher.on_disconnected()
        if handle is not None:
            await self.transport.disconnect(handle)
        self._set_state(final_state, reason=reason)
        self.logger.info("Session closed", reason=reason, latency_ms=int((time.time() - start_ts) * 1000))
        if not self._disconnect_fired:
            self._disconnect_fired = True
            self.callbacks.fire("on_disconnect", session_id=self.session_id)

    # --- Outbound ---

    def _cmd_send_text(self, text: str) -> bool:
        if self._state is not ConnectionState.CONNECTED or self.turns.state is not TurnState.LISTENING:
            self.logger.warning("Cannot send text: not listening", state=self._state.value, turn_state=self.turns.state.value)
            return False
        sent = self._send_event({
            "type": "conversation.item.create",
            "item": {
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": text}],
            },
        })
        if not sent or not self._send_event({"type": "response.create"}):
            return False
        self.dispatcher.dispatch(TextCommitted(text))
        return True

    def _send_event(self, event: dict) -> bool:
        if self._handle is None:
            return False
        return self._handle.send(event)

    def _set_mic_muted(self, muted: bool) -> None:
        if self._handle is not None:
            self._handle.set_microphone_muted(muted)

    def _conversation_created(self, conversation_id: str) -> None:
        self._queue.put_nowait(ConversationCreated(conversation_id))
        self._ensure_consumer()

    def __repr__(self) -> str:
        return f"VoiceSession(session_id={self.session_id!r}, state={self._state.value})"


def describe_error(error: BaseException) -> dict:
    """Category, retryability and user-facing text for an error passed to on_error."""
    category = classify_error(error)
    return {
        "category": category,
        "retryable": error.retryable if isinstance(error, VoiceSessionError) else is_retryable(category),
        "message": get_user_message(category),
    }
