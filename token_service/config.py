"""
Token service configuration.

Everything is optional at load time; the endpoint fails closed per request
when something it needs is missing.
"""
import os
from dataclasses import dataclass
from typing import Optional

from voice_session.config import _parse_bool_env, _parse_int_env


@dataclass
class TokenServiceConfig:
    """Realtime credential minting configuration."""

    # Upstream
    openai_api_key: Optional[str] = None
    realtime_enabled: bool = True
    realtime_server: str = "openai"  # "openai" | "azure"
    realtime_model: str = "gpt-4o-mini-realtime-preview-2024-12-17"
    openai_base_url: str = "https://api.openai.com"
    azure_openai_endpoint: Optional[str] = None
    azure_openai_api_version: str = "2025-04-01-preview"

    # Voice / turn detection
    voice_female: str = "shimmer"
    voice_male: str = "alloy"
    turn_detection: str = "server_vad"
    vad_threshold: float = 0.5
    vad_silence_ms: int = 900
    persona: str = "companion"

    # User verification (auth backend)
    auth_url: Optional[str] = None
    auth_anon_key: Optional[str] = None

    http_timeout_seconds: int = 15

    @classmethod
    def from_env(cls) -> "TokenServiceConfig":
        """Load configuration from environment variables."""
        azure_endpoint = os.environ.get("AZURE_OPENAI_ENDPOINT")
        auth_url = os.environ.get("AUTH_URL")
        return cls(
            openai_api_key=os.environ.get("OPENAI_API_KEY") or None,
            realtime_enabled=_parse_bool_env("REALTIME_ENABLE", default=True),
            realtime_server=os.environ.get("REALTIME_SERVER", "openai").strip().lower(),
            realtime_model=os.environ.get("REALTIME_MODEL", "gpt-4o-mini-realtime-preview-2024-12-17"),
            openai_base_url=os.environ.get("OPENAI_BASE_URL", "https://api.openai.com").rstrip("/"),
            azure_openai_endpoint=azure_endpoint.rstrip("/") if azure_endpoint else None,
            azure_openai_api_version=os.environ.get("AZURE_OPENAI_API_VERSION", "2025-04-01-preview"),
            voice_female=os.environ.get("REALTIME_VOICE_FEMALE", "shimmer"),
            voice_male=os.environ.get("REALTIME_VOICE_MALE", "alloy"),
            turn_detection=os.environ.get("REALTIME_TURN_DETECTION", "server_vad"),
            vad_silence_ms=_parse_int_env("REALTIME_VAD_SILENCE_MS", default=900),
            persona=os.environ.get("REALTIME_PERSONA", "companion"),
            auth_url=auth_url.rstrip("/") if auth_url else None,
            auth_anon_key=os.environ.get("AUTH_ANON_KEY"),
            http_timeout_seconds=_parse_int_env("HTTP_TIMEOUT_SECONDS", default=15),
        )

    def sessions_url(self) -> Optional[str]:
        """Upstream sessions endpoint, or None when Azure is selected but not configured."""
        if self.realtime_server == "azure":
            if not self.azure_openai_endpoint:
                return None
            return (
                f"{self.azure_openai_endpoint}/openai/realtime/sessions"
                f"?api-version={self.azure_openai_api_version}"
            )
        return f"{self.openai_base_url}/v1/realtime/sessions"


def get_config() -> TokenServiceConfig:
    """Get or create global config instance."""
    global _config
    if _config is None:
        _config = TokenServiceConfig.from_env()
    return _config


# Global config instance (lazy loaded)
_config: Optional[TokenServiceConfig] = None
