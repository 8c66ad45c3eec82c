"""
Caller-facing session callbacks.

Every callback is optional. They are always invoked from the session's event
consumer, one at a time; an exception raised by a callback is logged and
never stops event processing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from logging_setup import get_logger, Component


logger = get_logger(Component.VOICE_SESSION)


@dataclass
class SessionCallbacks:
    on_connect: Optional[Callable[[], None]] = None
    on_disconnect: Optional[Callable[[], None]] = None
    on_error: Optional[Callable[[BaseException], None]] = None
    on_user_transcript: Optional[Callable[[str, bool], None]] = None
    on_assistant_transcript: Optional[Callable[[str, bool], None]] = None
    on_speaking_start: Optional[Callable[[], None]] = None
    on_speaking_end: Optional[Callable[[], None]] = None
    on_turn_complete: Optional[Callable[[], None]] = None
    on_conversation_created: Optional[Callable[[str], None]] = None
    on_user_speech_start: Optional[Callable[[], None]] = None
    on_user_speech_stop: Optional[Callable[[], None]] = None

    def fire(self, name: str, *args, session_id: str = "") -> None:
        """Invoke callback `name` if set."""
        callback = getattr(self, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.with_session(session_id).warning(
                f"Error in {name} callback (non-fatal)",
                error=str(e),
                error_type=type(e).__name__,
            )
