"""
Voice session error taxonomy.

Every failure the engine can produce maps to one stable category so callers
can decide between "retry with a fresh credential", "ask for microphone
permission" and "ignore".
"""
from typing import Optional


class ErrorCategory:
    """Stable error categories."""

    # Local media
    PERMISSION_DENIED = "media.permission_denied"

    # Credential broker
    UNAUTHENTICATED = "credential.unauthenticated"
    NETWORK_ERROR = "credential.network_error"
    BACKEND_ERROR = "credential.backend_error"

    # Transport
    HANDSHAKE_FAILED = "transport.handshake_failed"
    TRANSPORT_ERROR = "transport.error"

    # Protocol
    MALFORMED_EVENT = "protocol.malformed_event"
    SERVER_ERROR = "protocol.server_error"

    # Persistence
    PERSISTENCE_FAILURE = "persistence.failure"

    UNKNOWN_ERROR = "unknown_error"


class VoiceSessionError(Exception):
    """Base class for all voice session errors."""

    category: str = ErrorCategory.UNKNOWN_ERROR
    retryable: bool = False

    def __init__(self, message: str = "", *, detail: Optional[str] = None):
        super().__init__(message or self.category)
        self.detail = detail


class PermissionDenied(VoiceSessionError):
    """Microphone not available or access refused. User-actionable."""

    category = ErrorCategory.PERMISSION_DENIED


class Unauthenticated(VoiceSessionError):
    """The credential broker rejected the caller's identity."""

    category = ErrorCategory.UNAUTHENTICATED
    retryable = True


class NetworkError(VoiceSessionError):
    """The credential broker could not be reached."""

    category = ErrorCategory.NETWORK_ERROR
    retryable = True


class BackendError(VoiceSessionError):
    """The credential broker answered, but not with a usable credential."""

    category = ErrorCategory.BACKEND_ERROR
    retryable = True

    def __init__(self, message: str = "", *, status: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message, detail=detail)
        self.status = status


class HandshakeFailed(VoiceSessionError):
    """Offer/answer exchange failed or the credential expired first."""

    category = ErrorCategory.HANDSHAKE_FAILED
    retryable = True

    def __init__(self, message: str = "", *, status: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message, detail=detail)
        self.status = status


class TransportError(VoiceSessionError):
    """The media transport or its event side-channel broke."""

    category = ErrorCategory.TRANSPORT_ERROR
    retryable = True


class MalformedEvent(VoiceSessionError):
    """A side-channel message could not be decoded. Never surfaced."""

    category = ErrorCategory.MALFORMED_EVENT


class ServerError(VoiceSessionError):
    """The speech model reported an error event. The session stays open."""

    category = ErrorCategory.SERVER_ERROR

    def __init__(self, message: str = "", *, code: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message, detail=detail)
        self.code = code


class PersistenceFailure(VoiceSessionError):
    """A conversation store call failed. Logged only."""

    category = ErrorCategory.PERSISTENCE_FAILURE


def classify_error(error: BaseException) -> str:
    """
    Classify an arbitrary exception into a stable category.

    Engine exceptions carry their own category; anything else is matched on
    its message the same way provider errors are matched elsewhere.
    """
    if isinstance(error, VoiceSessionError):
        return error.category

    error_str = str(error).lower()
    error_type = type(error).__name__.lower()

    if "permission" in error_str or "portaudio" in error_type or "no default input device" in error_str:
        return ErrorCategory.PERMISSION_DENIED

    if "unauthorized" in error_str or "401" in error_str or "403" in error_str:
        return ErrorCategory.UNAUTHENTICATED

    if "timeout" in error_str or "timeout" in error_type or "connection" in error_str or "connect" in error_type:
        return ErrorCategory.NETWORK_ERROR

    if "sdp" in error_str or "handshake" in error_str:
        return ErrorCategory.HANDSHAKE_FAILED

    return ErrorCategory.UNKNOWN_ERROR


def is_retryable(category: str) -> bool:
    """Whether the caller should offer a retry affordance for this category."""
    return category in (
        ErrorCategory.UNAUTHENTICATED,
        ErrorCategory.NETWORK_ERROR,
        ErrorCategory.BACKEND_ERROR,
        ErrorCategory.HANDSHAKE_FAILED,
        ErrorCategory.TRANSPORT_ERROR,
        ErrorCategory.UNKNOWN_ERROR,
    )


def get_user_message(category: str) -> str:
    """User-facing text for the retry affordance."""
    messages = {
        ErrorCategory.PERMISSION_DENIED: "Microphone access is required for voice chat.",
        ErrorCategory.UNAUTHENTICATED: "Please sign in again to use voice chat.",
        ErrorCategory.NETWORK_ERROR: "Could not reach the voice service. Check your connection and try again.",
        ErrorCategory.BACKEND_ERROR: "Could not connect to voice service. Please try again.",
        ErrorCategory.HANDSHAKE_FAILED: "Could not connect to voice service. Please try again.",
        ErrorCategory.TRANSPORT_ERROR: "The voice connection was lost. Please try again.",
        ErrorCategory.SERVER_ERROR: "Something went wrong on our side. You can keep talking.",
    }

    return messages.get(category, "Something went wrong. Please try again.")
