"""
Side-channel protocol events.

Inbound messages are JSON objects tagged by a `type` string. They decode into
a closed set of frozen dataclasses; anything with an unknown type becomes
`Unhandled` so newer server events never break an older client. Messages that
are not JSON objects with a string `type` decode to None and are dropped.

Local signals (track lifecycle, levels, connection outcome) share the same
queue as protocol events but are never decoded from the wire.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Union


# --- Protocol events (wire) ---


@dataclass(frozen=True)
class SpeechStarted:
    item_id: Optional[str] = None


@dataclass(frozen=True)
class SpeechStopped:
    item_id: Optional[str] = None


@dataclass(frozen=True)
class BufferCommitted:
    """End of the user utterance. Authoritative "user turn ended"."""

    item_id: Optional[str] = None


@dataclass(frozen=True)
class UserTranscriptDelta:
    delta: str
    item_id: Optional[str] = None


@dataclass(frozen=True)
class UserTranscriptFinal:
    transcript: str
    item_id: Optional[str] = None


@dataclass(frozen=True)
class AssistantTranscriptDelta:
    delta: str
    response_id: Optional[str] = None


@dataclass(frozen=True)
class AssistantTranscriptFinal:
    transcript: str
    response_id: Optional[str] = None


@dataclass(frozen=True)
class AssistantAudioStarted:
    response_id: Optional[str] = None


@dataclass(frozen=True)
class AssistantAudioDone:
    """Assistant stopped producing audio. May repeat within a turn; never completes it."""

    response_id: Optional[str] = None


@dataclass(frozen=True)
class ResponseCreated:
    response_id: Optional[str] = None


@dataclass(frozen=True)
class ResponseDone:
    """Authoritative turn completion."""

    response_id: Optional[str] = None


@dataclass(frozen=True)
class ResponseFailed:
    message: str = "Response failed"
    response_id: Optional[str] = None


@dataclass(frozen=True)
class ResponseCancelled:
    response_id: Optional[str] = None


@dataclass(frozen=True)
class ServerErrorEvent:
    message: str
    code: Optional[str] = None


@dataclass(frozen=True)
class Unhandled:
    """Known-unknown: a well-formed message whose type this client ignores."""

    type: str


ProtocolEvent = Union[
    SpeechStarted,
    SpeechStopped,
    BufferCommitted,
    UserTranscriptDelta,
    UserTranscriptFinal,
    AssistantTranscriptDelta,
    AssistantTranscriptFinal,
    AssistantAudioStarted,
    AssistantAudioDone,
    ResponseCreated,
    ResponseDone,
    ResponseFailed,
    ResponseCancelled,
    ServerErrorEvent,
    Unhandled,
]


# --- Local signals ---


@dataclass(frozen=True)
class RemoteAudioStarted:
    """Remote assistant audio became available (track arrival or sound after silence)."""

    reason: str = "activity"


@dataclass(frozen=True)
class RemoteAudioStopped:
    """Remote assistant audio went silent or its track ended."""

    reason: str = "silence"


@dataclass(frozen=True)
class AudioLevel:
    source: str  # "mic" | "remote"
    level: float


@dataclass(frozen=True)
class TransportFailed:
    error: BaseException


@dataclass(frozen=True)
class ConversationCreated:
    conversation_id: str


@dataclass(frozen=True)
class TextCommitted:
    text: str


LocalSignal = Union[
    RemoteAudioStarted,
    RemoteAudioStopped,
    AudioLevel,
    TransportFailed,
    ConversationCreated,
    TextCommitted,
]


# --- Decoding ---


def _str(payload: Mapping[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    return value if isinstance(value, str) else None


def _response_id(payload: Mapping[str, Any]) -> Optional[str]:
    rid = _str(payload, "response_id")
    if rid:
        return rid
    response = payload.get("response")
    if isinstance(response, dict):
        return _str(response, "id")
    return None


def _error_message(payload: Mapping[str, Any], default: str) -> str:
    error = payload.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    if isinstance(error, str) and error:
        return error
    return default


def _decode_response_done(payload: Mapping[str, Any]) -> ProtocolEvent:
    # Failed and cancelled responses also arrive as response.done with a status.
    response = payload.get("response")
    status = response.get("status") if isinstance(response, dict) else None
    rid = _response_id(payload)
    if status == "failed":
        details = response.get("status_details") if isinstance(response, dict) else None
        message = "Response failed"
        if isinstance(details, dict):
            message = _error_message(details, message)
        return ResponseFailed(message=message, response_id=rid)
    if status == "cancelled":
        return ResponseCancelled(response_id=rid)
    return ResponseDone(response_id=rid)


_Decoder = Callable[[Mapping[str, Any]], ProtocolEvent]

_DECODERS: Dict[str, _Decoder] = {
    # Input lifecycle
    "input_audio_buffer.speech_started": lambda p: SpeechStarted(item_id=_str(p, "item_id")),
    "input_audio_buffer.speech_stopped": lambda p: SpeechStopped(item_id=_str(p, "item_id")),
    "input_audio_buffer.committed": lambda p: BufferCommitted(item_id=_str(p, "item_id")),
    # User transcription
    "conversation.item.input_audio_transcription.delta":
        lambda p: UserTranscriptDelta(delta=_str(p, "delta") or "", item_id=_str(p, "item_id")),
    "conversation.item.input_audio_transcription.completed":
        lambda p: UserTranscriptFinal(transcript=_str(p, "transcript") or "", item_id=_str(p, "item_id")),
    # Assistant transcription (beta and GA names)
    "response.audio_transcript.delta":
        lambda p: AssistantTranscriptDelta(delta=_str(p, "delta") or "", response_id=_response_id(p)),
    "response.output_audio_transcript.delta":
        lambda p: AssistantTranscriptDelta(delta=_str(p, "delta") or "", response_id=_response_id(p)),
    "response.audio_transcript.done":
        lambda p: AssistantTranscriptFinal(transcript=_str(p, "transcript") or "", response_id=_response_id(p)),
    "response.output_audio_transcript.done":
        lambda p: AssistantTranscriptFinal(transcript=_str(p, "transcript") or "", response_id=_response_id(p)),
    # Assistant audio
    "response.audio.delta": lambda p: AssistantAudioStarted(response_id=_response_id(p)),
    "response.output_audio.delta": lambda p: AssistantAudioStarted(response_id=_response_id(p)),
    "output_audio_buffer.started": lambda p: AssistantAudioStarted(response_id=_response_id(p)),
    "response.audio.done": lambda p: AssistantAudioDone(response_id=_response_id(p)),
    "response.output_audio.done": lambda p: AssistantAudioDone(response_id=_response_id(p)),
    "output_audio_buffer.stopped": lambda p: AssistantAudioDone(response_id=_response_id(p)),
    "output_audio_buffer.speech_stopped": lambda p: AssistantAudioDone(response_id=_response_id(p)),
    # Response lifecycle
    "response.created": lambda p: ResponseCreated(response_id=_response_id(p)),
    "response.done": _decode_response_done,
    "response.failed":
        lambda p: ResponseFailed(message=_error_message(p, "Response failed"), response_id=_response_id(p)),
    "response.cancelled": lambda p: ResponseCancelled(response_id=_response_id(p)),
    # Errors
    "error": lambda p: ServerErrorEvent(
        message=_error_message(p, "Realtime API error"),
        code=p["error"].get("code") if isinstance(p.get("error"), dict) else None,
    ),
}


def decode_event(raw: Union[str, bytes, Mapping[str, Any]]) -> Optional[ProtocolEvent]:
    """
    Decode one side-channel message.

    Returns None for malformed messages; `Unhandled` for unknown types.
    """
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            payload = json.loads(raw)
        except (ValueError, UnicodeDecodeError):
            return None
    else:
        payload = raw

    if not isinstance(payload, dict):
        return None

    event_type = payload.get("type")
    if not isinstance(event_type, str) or not event_type:
        return None

    decoder = _DECODERS.get(event_type)
    if decoder is None:
        return Unhandled(type=event_type)

    try:
        return decoder(payload)
    except (AttributeError, KeyError, TypeError):
        return None


def encode_event(event: Mapping[str, Any]) -> str:
    """Serialise an outbound client event for the side-channel."""
    return json.dumps(event, ensure_ascii=False, separators=(",", ":"))
