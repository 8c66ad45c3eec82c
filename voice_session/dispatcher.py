"""
Event dispatcher.

Routes decoded side-channel events and local signals to the turn state
machine, the transcript aggregator, the persistence bridge and the caller's
callbacks. Runs only on the session's event consumer, so handlers never race
each other.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Type

from logging_setup import get_logger, Component
from observability.events import Severity, voice_session_emitter
from .callbacks import SessionCallbacks
from .config import VoiceSessionConfig
from .errors import ServerError
from .events import (
    AssistantAudioDone,
    AssistantAudioStarted,
    AssistantTranscriptDelta,
    AssistantTranscriptFinal,
    AudioLevel,
    BufferCommitted,
    RemoteAudioStarted,
    RemoteAudioStopped,
    ResponseCancelled,
    ResponseCreated,
    ResponseDone,
    ResponseFailed,
    ServerErrorEvent,
    SpeechStarted,
    SpeechStopped,
    TextCommitted,
    Unhandled,
    UserTranscriptDelta,
    UserTranscriptFinal,
    decode_event,
)
from .persistence import PersistenceBridge
from .transcript import TranscriptAggregator
from .turns import TurnState, TurnStateMachine, TurnTrigger


logger = get_logger(Component.DISPATCHER)

# Weight of the newest sample in the level moving average.
LEVEL_SMOOTHING = 0.4


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class EventDispatcher:
    def __init__(
        self,
        *,
        session_id: str,
        turns: TurnStateMachine,
        transcript: TranscriptAggregator,
        bridge: PersistenceBridge,
        callbacks: SessionCallbacks,
        config: VoiceSessionConfig,
        send: Callable[[Dict[str, Any]], bool],
        set_mic_muted: Callable[[bool], None],
        now: Callable[[], float] = time.monotonic,
    ):
        self.session_id = session_id
        self.turns = turns
        self.transcript = transcript
        self.bridge = bridge
        self.callbacks = callbacks
        self.config = config
        self._send = send
        self._set_mic_muted = set_mic_muted
        self._now = now
        self.logger = logger.with_session(session_id)

        self._turn_started_at: Optional[float] = None
        self._speech_stopped_at: Optional[float] = None
        self._speaking_end_fired = True
        self._mic_level = 0.0
        self._remote_level = 0.0

        self._handlers: Dict[Type, Callable[[Any], None]] = {
            SpeechStarted: self._on_speech_started,
            SpeechStopped: self._on_speech_stopped,
            BufferCommitted: self._on_buffer_committed,
            UserTranscriptDelta: self._on_user_delta,
            UserTranscriptFinal: self._on_user_final,
            AssistantTranscriptDelta: self._on_assistant_delta,
            AssistantTranscriptFinal: self._on_assistant_final,
            AssistantAudioStarted: self._on_assistant_output,
            AssistantAudioDone: self._on_assistant_audio_stopped,
            ResponseCreated: self._on_response_created,
            ResponseDone: self._on_response_done,
            ResponseFailed: self._on_response_failed,
            ResponseCancelled: self._on_response_cancelled,
            ServerErrorEvent: self._on_server_error,
            RemoteAudioStarted: self._on_assistant_output,
            RemoteAudioStopped: self._on_assistant_audio_stopped,
            AudioLevel: self._on_level,
            TextCommitted: self._on_text_committed,
            Unhandled: self._on_unhandled,
        }

    # --- Entry points ---

    @property
    def turn_id(self) -> str:
        return f"{self.session_id}:turn-{self.turns.turn_seq}"

    @property
    def amplitude(self) -> float:
        state = self.turns.state
        if state is TurnState.LISTENING:
            return _clamp(self._mic_level)
        if state is TurnState.SPEAKING:
            return _clamp(self._remote_level)
        return 0.0

    def dispatch_raw(self, raw: Any) -> None:
        """Decode one side-channel message and dispatch it. Malformed input is dropped."""
        event = decode_event(raw)
        if event is None:
            size = len(raw) if isinstance(raw, (str, bytes, bytearray)) else None
            self.logger.debug("Dropped malformed event", size=size)
            return
        self.dispatch(event)

    def dispatch(self, event: Any) -> None:
        handler = self._handlers.get(type(event), self._on_unhandled)
        handler(event)

    def on_connected(self) -> None:
        self.transcript.reset()
        self._mic_level = self._remote_level = 0.0
        self._transition(TurnTrigger.CONNECTED)

    def on_disconnected(self) -> None:
        # A turn cut off by the disconnect is not persisted.
        self._transition(TurnTrigger.DISCONNECTED)
        self.transcript.reset()
        self._mic_level = self._remote_level = 0.0

    # --- State ---

    def _transition(self, trigger: TurnTrigger) -> bool:
        result = self.turns.fire(trigger)
        if result is None:
            return False
        old, new = result

        if trigger is TurnTrigger.BUFFER_COMMITTED:
            self._turn_started_at = self._now()

        self.logger.debug(
            "Turn state changed",
            from_state=old.value,
            to_state=new.value,
            trigger=trigger.value,
            correlation_id=self.turn_id,
        )
        voice_session_emitter.turn_state_changed(
            self.session_id,
            from_state=old.value,
            to_state=new.value,
            trigger=trigger.value,
            turn_id=self.turn_id,
        )

        if old is TurnState.SPEAKING:
            self._end_speaking()
            if not self.config.barge_in:
                self._set_mic_muted(False)

        if new is TurnState.SPEAKING:
            self._speaking_end_fired = False
            if not self.config.barge_in:
                self._set_mic_muted(True)
            self._fire("on_speaking_start")

        return True

    def _end_speaking(self) -> None:
        if self._speaking_end_fired:
            return
        self._speaking_end_fired = True
        self._fire("on_speaking_end")

    def _fire(self, name: str, *args) -> None:
        self.callbacks.fire(name, *args, session_id=self.session_id)

    # --- User input ---

    def _on_speech_started(self, event: SpeechStarted) -> None:
        now = self._now()

        if self.config.barge_in and self.turns.response_in_flight:
            self.logger.info("Barge-in: cancelling response", correlation_id=self.turn_id)
            self._send({"type": "response.cancel"})
            voice_session_emitter.emit("barge_in.detected", self.session_id, correlation_id=self.turn_id)

        if self._speech_stopped_at is not None:
            since_ms = (now - self._speech_stopped_at) * 1000
            if since_ms < self.config.speech_start_cooldown_ms:
                self.logger.debug("Speech start within cooldown; not reported", since_ms=int(since_ms))
                return

        self._fire("on_user_speech_start")

    def _on_speech_stopped(self, event: SpeechStopped) -> None:
        self._speech_stopped_at = self._now()
        self._fire("on_user_speech_stop")

    def _on_buffer_committed(self, event: BufferCommitted) -> None:
        if not self._transition(TurnTrigger.BUFFER_COMMITTED):
            self.logger.debug("Buffer committed outside LISTENING; ignored", state=self.turns.state.value)

    def _on_text_committed(self, event: TextCommitted) -> None:
        self.transcript.set_user_text(event.text)
        self._fire("on_user_transcript", self.transcript.buffer.user_text, True)
        self._transition(TurnTrigger.BUFFER_COMMITTED)

    def _on_user_delta(self, event: UserTranscriptDelta) -> None:
        if self.turns.state is TurnState.IDLE:
            return
        self.transcript.on_user_transcript(event.delta, is_final=False)
        self._fire("on_user_transcript", event.delta, False)

    def _on_user_final(self, event: UserTranscriptFinal) -> None:
        if self.turns.state is TurnState.IDLE:
            return
        if self.transcript.on_user_transcript(event.transcript, is_final=True):
            self._fire("on_user_transcript", self.transcript.buffer.user_text, True)

    # --- Assistant output ---

    def _on_assistant_delta(self, event: AssistantTranscriptDelta) -> None:
        if not self.turns.response_in_flight:
            self.logger.debug("Assistant transcript outside a response; ignored")
            return
        self.transcript.on_assistant_transcript(event.delta, is_final=False)
        self._transition(TurnTrigger.ASSISTANT_OUTPUT)
        self._fire("on_assistant_transcript", event.delta, False)

    def _on_assistant_final(self, event: AssistantTranscriptFinal) -> None:
        if not self.turns.response_in_flight:
            self.logger.debug("Assistant transcript outside a response; ignored")
            return
        self.transcript.on_assistant_transcript(event.transcript, is_final=True)
        self._transition(TurnTrigger.ASSISTANT_OUTPUT)
        self._fire("on_assistant_transcript", event.transcript, True)

    def _on_assistant_output(self, event: Any) -> None:
        if self.turns.response_in_flight:
            self._transition(TurnTrigger.ASSISTANT_OUTPUT)

    def _on_assistant_audio_stopped(self, event: Any) -> None:
        # Audio may stop and restart within one response; only response.done ends the turn.
        if self.turns.state is TurnState.SPEAKING:
            self._end_speaking()

    def _on_level(self, event: AudioLevel) -> None:
        level = _clamp(event.level)
        if event.source == "mic":
            self._mic_level += LEVEL_SMOOTHING * (level - self._mic_level)
        else:
            self._remote_level += LEVEL_SMOOTHING * (level - self._remote_level)

    # --- Response lifecycle ---

    def _on_response_created(self, event: ResponseCreated) -> None:
        self.logger.debug("Response created", response_id=event.response_id, correlation_id=self.turn_id)

    def _on_response_done(self, event: ResponseDone) -> None:
        if not self.turns.response_in_flight:
            self.logger.debug("Response done outside a turn; ignored", response_id=event.response_id)
            return

        turn_id = self.turn_id
        finished = self.transcript.take()
        self.bridge.commit(finished, turn_id=turn_id)
        self._transition(TurnTrigger.RESPONSE_DONE)
        self._fire("on_turn_complete")

        latency_ms = None
        if self._turn_started_at is not None:
            latency_ms = int((self._now() - self._turn_started_at) * 1000)
        self.logger.info(
            "Turn completed",
            correlation_id=turn_id,
            user_chars=len(finished.user_text),
            assistant_chars=len(finished.assistant_text),
            latency_ms=latency_ms,
        )
        voice_session_emitter.turn_completed(
            self.session_id,
            turn_id=turn_id,
            user_chars=len(finished.user_text),
            assistant_chars=len(finished.assistant_text),
            latency_ms=latency_ms,
        )

    def _abort_turn(self, reason: str, response_id: Optional[str]) -> None:
        turn_id = self.turn_id
        self.transcript.discard_assistant()
        self._transition(TurnTrigger.RESPONSE_ABORTED)
        self.logger.warning("Turn aborted", reason=reason, response_id=response_id, correlation_id=turn_id)
        voice_session_emitter.turn_aborted(self.session_id, turn_id=turn_id, reason=reason)

    def _on_response_failed(self, event: ResponseFailed) -> None:
        if self.turns.response_in_flight:
            self._abort_turn("failed", event.response_id)
        self._fire("on_error", ServerError(event.message))

    def _on_response_cancelled(self, event: ResponseCancelled) -> None:
        if self.turns.response_in_flight:
            self._abort_turn("cancelled", event.response_id)

    def _on_server_error(self, event: ServerErrorEvent) -> None:
        self.logger.error("Realtime server error", error=event.message, code=event.code)
        voice_session_emitter.emit(
            "protocol.server_error",
            self.session_id,
            severity=Severity.ERROR,
            error_code=event.code,
        )
        self._fire("on_error", ServerError(event.message, code=event.code))

    def _on_unhandled(self, event: Any) -> None:
        self.logger.debug("Unhandled event", event_type=getattr(event, "type", type(event).__name__))
