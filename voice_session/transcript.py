"""
Per-turn transcript aggregation.

Exactly one buffer is open per connection. User finals overwrite, assistant
deltas concatenate, and the assistant final replaces whatever the deltas
accumulated so a repeated final never duplicates text.
"""

from __future__ import annotations

from dataclasses import dataclass

from logging_setup import get_logger, Component


logger = get_logger(Component.TURNS)


@dataclass(frozen=True)
class TranscriptBuffer:
    user_text: str = ""
    assistant_text: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.user_text.strip() and not self.assistant_text.strip()


class TranscriptAggregator:
    """Accumulates one turn of user and assistant text."""

    def __init__(self, *, min_user_chars: int = 3, session_id: str = ""):
        self._min_user_chars = min_user_chars
        self._user_text = ""
        self._assistant_text = ""
        self.logger = logger.with_session(session_id) if session_id else logger

    @property
    def buffer(self) -> TranscriptBuffer:
        return TranscriptBuffer(self._user_text, self._assistant_text)

    def on_user_transcript(self, text: str, is_final: bool) -> bool:
        """
        Record user speech. Returns True if the final was accepted.

        Partials are never stored.
        """
        if not is_final:
            self.logger.debug_pii("User transcript (partial)", transcript=text)
            return False

        trimmed = text.strip()
        if len(trimmed) < self._min_user_chars:
            self.logger.debug("Discarded short user transcript", transcript_length=len(trimmed))
            return False

        self._user_text = trimmed
        self.logger.debug_pii("User transcript (final)", transcript=trimmed)
        return True

    def set_user_text(self, text: str) -> None:
        """Typed input: no length filter."""
        self._user_text = text.strip()

    def on_assistant_transcript(self, text: str, is_final: bool) -> None:
        if is_final:
            self._assistant_text = text
            self.logger.debug_pii("Assistant transcript (final)", transcript=text)
        else:
            self._assistant_text += text

    def discard_assistant(self) -> None:
        """Drop a reply that failed or was cancelled; the user's words stay."""
        self._assistant_text = ""

    def take(self) -> TranscriptBuffer:
        """Return the finished turn and reset to an empty buffer."""
        finished = self.buffer
        self._user_text = ""
        self._assistant_text = ""
        return finished

    def reset(self) -> None:
        self._user_text = ""
        self._assistant_text = ""
