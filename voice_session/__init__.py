"""
Voice session engine.

Real-time voice conversation with a hosted speech model over WebRTC:
credential broker -> transport (mic, remote audio, event side-channel) ->
event dispatcher -> turn state machine / transcript aggregator ->
persistence bridge.

- The engine never decides what the assistant says; that is the model's job.
- Every connection attempt uses a fresh, single-use credential.
- All state changes happen on one event consumer per session.
- All behaviour is observable via structured logs and session events.
"""

from .callbacks import SessionCallbacks
from .config import VoiceSessionConfig, get_config
from .errors import ErrorCategory, VoiceSessionError
from .session import ConnectionState, SessionSnapshot, VoiceSession
from .turns import TurnState

__all__ = [
    "ConnectionState",
    "ErrorCategory",
    "SessionCallbacks",
    "SessionSnapshot",
    "TurnState",
    "VoiceSession",
    "VoiceSessionConfig",
    "VoiceSessionError",
    "get_config",
]
