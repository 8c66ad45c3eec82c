"""
Event dispatcher tests.

The dispatcher is driven directly with decoded events; sends and mic mute
changes are recorded instead of going to a transport.
"""
import pytest

from voice_session.callbacks import SessionCallbacks
from voice_session.config import VoiceSessionConfig
from voice_session.dispatcher import EventDispatcher
from voice_session.events import (
    AssistantAudioDone,
    AssistantTranscriptDelta,
    AssistantTranscriptFinal,
    AudioLevel,
    BufferCommitted,
    RemoteAudioStarted,
    RemoteAudioStopped,
    ResponseCancelled,
    ResponseDone,
    ResponseFailed,
    ServerErrorEvent,
    SpeechStarted,
    SpeechStopped,
    UserTranscriptDelta,
    UserTranscriptFinal,
)
from voice_session.errors import ServerError
from voice_session.persistence import PersistenceBridge
from voice_session.store import InMemoryConversationStore
from voice_session.transcript import TranscriptAggregator, TranscriptBuffer
from voice_session.turns import TurnState, TurnStateMachine


class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, name):
        return lambda *args: self.calls.append((name,) + args)

    def names(self):
        return [c[0] for c in self.calls]


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _dispatcher(barge_in=False):
    recorder = Recorder()
    callbacks = SessionCallbacks(**{
        name: recorder(name)
        for name in (
            "on_error", "on_user_transcript", "on_assistant_transcript", "on_speaking_start",
            "on_speaking_end", "on_turn_complete", "on_user_speech_start", "on_user_speech_stop",
        )
    })
    sent = []
    muted = []
    store = InMemoryConversationStore()
    clock = Clock()
    dispatcher = EventDispatcher(
        session_id="vs_test",
        turns=TurnStateMachine(),
        transcript=TranscriptAggregator(min_user_chars=3),
        bridge=PersistenceBridge(store, session_id="vs_test"),
        callbacks=callbacks,
        config=VoiceSessionConfig(credential_broker_url="https://auth.example.com/x", barge_in=barge_in),
        send=lambda event: sent.append(event) or True,
        set_mic_muted=muted.append,
        now=clock,
    )
    dispatcher.on_connected()
    return dispatcher, recorder, sent, muted, store, clock


def _open_turn(dispatcher, user_text="I feel anxious today"):
    dispatcher.dispatch(SpeechStarted())
    dispatcher.dispatch(SpeechStopped())
    dispatcher.dispatch(BufferCommitted())
    dispatcher.dispatch(UserTranscriptFinal(transcript=user_text))


@pytest.mark.asyncio
async def test_full_turn_persists_in_order():
    dispatcher, recorder, sent, muted, store, clock = _dispatcher()

    _open_turn(dispatcher)
    assert dispatcher.turns.state is TurnState.THINKING
    for delta in ("I ", "hear ", "you."):
        dispatcher.dispatch(AssistantTranscriptDelta(delta=delta))
    assert dispatcher.turns.state is TurnState.SPEAKING
    dispatcher.dispatch(AssistantTranscriptFinal(transcript="I hear you."))
    clock.now += 1.5
    dispatcher.dispatch(ResponseDone(response_id="r1"))
    await dispatcher.bridge.drain()

    assert dispatcher.turns.state is TurnState.LISTENING
    assert [(m.role, m.text) for m in store.messages] == [
        ("user", "I feel anxious today"),
        ("assistant", "I hear you."),
    ]
    assert recorder.names().count("on_speaking_start") == 1
    assert recorder.names().count("on_speaking_end") == 1
    assert recorder.names().count("on_turn_complete") == 1
    assert ("on_user_transcript", "I feel anxious today", True) in recorder.calls
    assert ("on_assistant_transcript", "I hear you.", True) in recorder.calls
    assert muted == [True, False]
    assert sent == []


@pytest.mark.asyncio
async def test_duplicate_final_after_done_is_ignored():
    dispatcher, recorder, sent, muted, store, clock = _dispatcher()

    _open_turn(dispatcher)
    dispatcher.dispatch(AssistantTranscriptFinal(transcript="I hear you."))
    dispatcher.dispatch(ResponseDone())
    dispatcher.dispatch(AssistantTranscriptFinal(transcript="I hear you."))
    dispatcher.dispatch(ResponseDone())
    await dispatcher.bridge.drain()

    assert [m.text for m in store.messages] == ["I feel anxious today", "I hear you."]
    assert recorder.names().count("on_turn_complete") == 1
    assert dispatcher.transcript.buffer.is_empty


@pytest.mark.asyncio
async def test_audio_stop_ends_speaking_but_not_turn():
    dispatcher, recorder, sent, muted, store, clock = _dispatcher()

    _open_turn(dispatcher)
    dispatcher.dispatch(RemoteAudioStarted("activity"))
    assert dispatcher.turns.state is TurnState.SPEAKING
    dispatcher.dispatch(RemoteAudioStopped("silence"))
    dispatcher.dispatch(AssistantAudioDone())

    assert dispatcher.turns.state is TurnState.SPEAKING
    assert recorder.names().count("on_speaking_end") == 1

    dispatcher.dispatch(ResponseDone())
    assert recorder.names().count("on_speaking_end") == 1
    assert dispatcher.turns.state is TurnState.LISTENING
    await dispatcher.bridge.drain()


@pytest.mark.asyncio
async def test_response_failed_discards_turn():
    dispatcher, recorder, sent, muted, store, clock = _dispatcher()

    _open_turn(dispatcher)
    dispatcher.dispatch(AssistantTranscriptDelta(delta="I hear"))
    dispatcher.dispatch(ResponseFailed(message="quota exceeded"))
    await dispatcher.bridge.drain()

    assert dispatcher.turns.state is TurnState.LISTENING
    assert store.messages == []
    assert dispatcher.transcript.buffer == TranscriptBuffer("I feel anxious today", "")
    errors = [c[1] for c in recorder.calls if c[0] == "on_error"]
    assert len(errors) == 1
    assert isinstance(errors[0], ServerError)
    assert "quota" in str(errors[0])
    assert muted == [True, False]


@pytest.mark.asyncio
async def test_barge_in_cancels_response():
    dispatcher, recorder, sent, muted, store, clock = _dispatcher(barge_in=True)

    _open_turn(dispatcher)
    dispatcher.dispatch(AssistantTranscriptDelta(delta="Let me"))
    clock.now += 2
    dispatcher.dispatch(SpeechStarted())
    assert sent == [{"type": "response.cancel"}]

    dispatcher.dispatch(ResponseCancelled())
    await dispatcher.bridge.drain()

    assert dispatcher.turns.state is TurnState.LISTENING
    assert store.messages == []
    assert muted == []


@pytest.mark.asyncio
async def test_barge_in_keeps_new_utterance():
    dispatcher, recorder, sent, muted, store, clock = _dispatcher(barge_in=True)

    _open_turn(dispatcher)
    dispatcher.dispatch(AssistantTranscriptDelta(delta="Let me think"))
    clock.now += 2
    dispatcher.dispatch(SpeechStarted())
    dispatcher.dispatch(UserTranscriptFinal(transcript="Wait, one more thing"))
    dispatcher.dispatch(ResponseCancelled())
    await dispatcher.bridge.drain()

    assert dispatcher.turns.state is TurnState.LISTENING
    assert dispatcher.transcript.buffer == TranscriptBuffer("Wait, one more thing", "")
    assert store.messages == []


def test_speech_start_cooldown():
    dispatcher, recorder, sent, muted, store, clock = _dispatcher()

    dispatcher.dispatch(SpeechStarted())
    dispatcher.dispatch(SpeechStopped())
    clock.now += 0.1
    dispatcher.dispatch(SpeechStarted())
    clock.now += 0.5
    dispatcher.dispatch(SpeechStopped())
    clock.now += 0.5
    dispatcher.dispatch(SpeechStarted())

    assert recorder.names().count("on_user_speech_start") == 2
    assert recorder.names().count("on_user_speech_stop") == 2


def test_user_partials_are_forwarded_not_stored():
    dispatcher, recorder, sent, muted, store, clock = _dispatcher()

    dispatcher.dispatch(UserTranscriptDelta(delta="I fe"))

    assert ("on_user_transcript", "I fe", False) in recorder.calls
    assert dispatcher.transcript.buffer.user_text == ""


def test_assistant_text_outside_turn_is_ignored():
    dispatcher, recorder, sent, muted, store, clock = _dispatcher()

    dispatcher.dispatch(AssistantTranscriptDelta(delta="stray"))

    assert dispatcher.turns.state is TurnState.LISTENING
    assert dispatcher.transcript.buffer.assistant_text == ""
    assert "on_assistant_transcript" not in recorder.names()


def test_server_error_is_surfaced():
    dispatcher, recorder, sent, muted, store, clock = _dispatcher()

    dispatcher.dispatch(ServerErrorEvent(message="bad request", code="invalid_value"))

    errors = [c[1] for c in recorder.calls if c[0] == "on_error"]
    assert errors[0].code == "invalid_value"
    assert dispatcher.turns.state is TurnState.LISTENING


def test_malformed_raw_is_dropped():
    dispatcher, recorder, sent, muted, store, clock = _dispatcher()

    dispatcher.dispatch_raw("{not json")
    dispatcher.dispatch_raw('{"type": "session.updated"}')

    assert recorder.calls == []
    assert dispatcher.turns.state is TurnState.LISTENING


def test_amplitude_follows_turn_state():
    dispatcher, recorder, sent, muted, store, clock = _dispatcher()

    dispatcher.dispatch(AudioLevel("mic", 1.0))
    dispatcher.dispatch(AudioLevel("remote", 1.0))
    assert dispatcher.amplitude == pytest.approx(0.4)

    _open_turn(dispatcher)
    assert dispatcher.amplitude == 0.0

    dispatcher.dispatch(RemoteAudioStarted())
    assert dispatcher.amplitude == pytest.approx(0.4)

    dispatcher.dispatch(AudioLevel("remote", 5.0))
    assert dispatcher.amplitude == pytest.approx(0.64)


def test_callback_exception_does_not_stop_dispatch():
    dispatcher, recorder, sent, muted, store, clock = _dispatcher()

    def boom(*args):
        raise RuntimeError("ui went away")

    dispatcher.callbacks.on_user_speech_start = boom
    dispatcher.dispatch(SpeechStarted())
    dispatcher.dispatch(BufferCommitted())

    assert dispatcher.turns.state is TurnState.THINKING


def test_disconnect_drops_open_turn():
    dispatcher, recorder, sent, muted, store, clock = _dispatcher()

    _open_turn(dispatcher)
    dispatcher.dispatch(AssistantTranscriptDelta(delta="I hear"))
    dispatcher.on_disconnected()

    assert dispatcher.turns.state is TurnState.IDLE
    assert dispatcher.transcript.buffer.is_empty
    assert recorder.names().count("on_speaking_end") == 1
