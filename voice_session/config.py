"""
Voice session configuration.

Loads broker, realtime and store endpoints plus turn-taking tunables from
environment variables.
"""
import os
from dataclasses import dataclass, field
from typing import List, Optional


def _parse_int_env(key: str, default: int) -> int:
    """
    Parse integer environment variable, stripping comments and whitespace.

    Handles cases like:
    - "300  # comment" -> 300
    - "300" -> 300
    - None -> default
    """
    value = os.environ.get(key)
    if not value:
        return default

    if "#" in value:
        value = value.split("#")[0]
    value = value.strip()

    if not value:
        return default

    try:
        return int(value)
    except ValueError:
        return default


def _parse_bool_env(key: str, default: bool) -> bool:
    value = os.environ.get(key)
    if value is None or not value.strip():
        return default
    return value.split("#")[0].strip().lower() in ("1", "true", "yes", "on")


def _parse_list_env(key: str, default: List[str]) -> List[str]:
    value = os.environ.get(key)
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class VoiceSessionConfig:
    """Voice session engine configuration."""

    # Credential broker (authorization backend)
    credential_broker_url: str
    user_access_token: Optional[str] = None

    # Realtime signaling endpoint; the model is appended as ?model=...
    realtime_base_url: str = "https://api.openai.com/v1/realtime"
    ice_servers: List[str] = field(default_factory=lambda: ["stun:stun.l.google.com:19302"])

    # Conversation store (PostgREST-style backend)
    conversation_store_url: Optional[str] = None
    conversation_store_key: Optional[str] = None

    # Turn taking
    barge_in: bool = False  # False: mic muted while the assistant speaks
    speech_start_cooldown_ms: int = 300
    min_user_transcript_chars: int = 3

    # Audio
    sample_rate: int = 48000
    amplitude_interval_ms: int = 50

    # Timeouts
    default_credential_ttl_seconds: int = 60
    http_timeout_seconds: int = 15

    @classmethod
    def from_env(cls) -> "VoiceSessionConfig":
        """Load configuration from environment variables."""
        return cls(
            credential_broker_url=os.environ["CREDENTIAL_BROKER_URL"],
            user_access_token=os.environ.get("USER_ACCESS_TOKEN"),
            realtime_base_url=os.environ.get("REALTIME_BASE_URL", "https://api.openai.com/v1/realtime").rstrip("/"),
            ice_servers=_parse_list_env("ICE_SERVERS", ["stun:stun.l.google.com:19302"]),
            conversation_store_url=os.environ.get("CONVERSATION_STORE_URL"),
            conversation_store_key=os.environ.get("CONVERSATION_STORE_KEY"),
            barge_in=_parse_bool_env("VOICE_BARGE_IN", default=False),
            speech_start_cooldown_ms=_parse_int_env("VOICE_SPEECH_START_COOLDOWN_MS", default=300),
            min_user_transcript_chars=_parse_int_env("VOICE_MIN_USER_TRANSCRIPT_CHARS", default=3),
            sample_rate=_parse_int_env("VOICE_SAMPLE_RATE", default=48000),
            amplitude_interval_ms=_parse_int_env("VOICE_AMPLITUDE_INTERVAL_MS", default=50),
            default_credential_ttl_seconds=_parse_int_env("CREDENTIAL_TTL_SECONDS", default=60),
            http_timeout_seconds=_parse_int_env("HTTP_TIMEOUT_SECONDS", default=15),
        )


def get_config() -> VoiceSessionConfig:
    """Get or create global config instance."""
    global _config
    if _config is None:
        _config = VoiceSessionConfig.from_env()
    return _config


# Global config instance (lazy loaded)
_config: Optional[VoiceSessionConfig] = None
