"""
Tests for voice session configuration.

Verifies:
- Configuration loading from environment
- Required fields validation
- Default values
- Integer env parsing with comments
"""
import pytest

from voice_session.config import VoiceSessionConfig, _parse_bool_env, _parse_int_env, _parse_list_env


_VARS = (
    "USER_ACCESS_TOKEN", "REALTIME_BASE_URL", "ICE_SERVERS", "CONVERSATION_STORE_URL",
    "CONVERSATION_STORE_KEY", "VOICE_BARGE_IN", "VOICE_SPEECH_START_COOLDOWN_MS",
    "VOICE_MIN_USER_TRANSCRIPT_CHARS", "VOICE_SAMPLE_RATE", "VOICE_AMPLITUDE_INTERVAL_MS",
    "CREDENTIAL_TTL_SECONDS", "HTTP_TIMEOUT_SECONDS",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CREDENTIAL_BROKER_URL", "https://auth.example.com/functions/v1/realtime-ephemeral")
    return monkeypatch


def test_config_from_env_defaults(clean_env):
    config = VoiceSessionConfig.from_env()

    assert config.credential_broker_url == "https://auth.example.com/functions/v1/realtime-ephemeral"
    assert config.user_access_token is None
    assert config.realtime_base_url == "https://api.openai.com/v1/realtime"
    assert config.ice_servers == ["stun:stun.l.google.com:19302"]
    assert config.conversation_store_url is None
    assert config.barge_in is False
    assert config.speech_start_cooldown_ms == 300
    assert config.min_user_transcript_chars == 3
    assert config.sample_rate == 48000
    assert config.default_credential_ttl_seconds == 60
    assert config.http_timeout_seconds == 15


def test_config_from_env_all_fields(clean_env):
    clean_env.setenv("USER_ACCESS_TOKEN", "user-jwt")
    clean_env.setenv("REALTIME_BASE_URL", "https://realtime.example.com/v1/realtime/")
    clean_env.setenv("ICE_SERVERS", "stun:a.example.com:3478, turn:b.example.com:3478")
    clean_env.setenv("CONVERSATION_STORE_URL", "https://db.example.com")
    clean_env.setenv("CONVERSATION_STORE_KEY", "anon-key")
    clean_env.setenv("VOICE_BARGE_IN", "true")
    clean_env.setenv("VOICE_SPEECH_START_COOLDOWN_MS", "500  # ms")
    clean_env.setenv("VOICE_MIN_USER_TRANSCRIPT_CHARS", "5")
    clean_env.setenv("VOICE_SAMPLE_RATE", "24000")
    clean_env.setenv("CREDENTIAL_TTL_SECONDS", "30")

    config = VoiceSessionConfig.from_env()

    assert config.user_access_token == "user-jwt"
    assert config.realtime_base_url == "https://realtime.example.com/v1/realtime"
    assert config.ice_servers == ["stun:a.example.com:3478", "turn:b.example.com:3478"]
    assert config.conversation_store_url == "https://db.example.com"
    assert config.conversation_store_key == "anon-key"
    assert config.barge_in is True
    assert config.speech_start_cooldown_ms == 500
    assert config.min_user_transcript_chars == 5
    assert config.sample_rate == 24000
    assert config.default_credential_ttl_seconds == 30


def test_config_missing_broker_url(monkeypatch):
    monkeypatch.delenv("CREDENTIAL_BROKER_URL", raising=False)
    with pytest.raises(KeyError):
        VoiceSessionConfig.from_env()


def test_parse_int_env(monkeypatch):
    monkeypatch.setenv("X_INT", "300  # comment")
    assert _parse_int_env("X_INT", 1) == 300
    monkeypatch.setenv("X_INT", "abc")
    assert _parse_int_env("X_INT", 1) == 1
    monkeypatch.setenv("X_INT", "# only comment")
    assert _parse_int_env("X_INT", 7) == 7
    monkeypatch.delenv("X_INT")
    assert _parse_int_env("X_INT", 9) == 9


def test_parse_bool_env(monkeypatch):
    for value in ("1", "true", "YES", "on  # enabled"):
        monkeypatch.setenv("X_BOOL", value)
        assert _parse_bool_env("X_BOOL", False) is True
    monkeypatch.setenv("X_BOOL", "false")
    assert _parse_bool_env("X_BOOL", True) is False
    monkeypatch.delenv("X_BOOL")
    assert _parse_bool_env("X_BOOL", True) is True


def test_parse_list_env(monkeypatch):
    monkeypatch.setenv("X_LIST", " a, ,b ")
    assert _parse_list_env("X_LIST", ["z"]) == ["a", "b"]
    monkeypatch.delenv("X_LIST")
    assert _parse_list_env("X_LIST", ["z"]) == ["z"]
