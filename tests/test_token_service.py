"""
Realtime credential endpoint tests.

Both outbound calls (user verification and upstream session creation) are
module-level helpers and are monkeypatched, so no network is touched.
"""
import json

import aiohttp
import pytest
from fastapi.testclient import TestClient

from token_service import app as app_module
from token_service import config as config_module
from token_service.config import TokenServiceConfig


API_KEY = "sk-test-upstream-key"


@pytest.fixture
def configure(monkeypatch):
    def _configure(**overrides):
        values = {
            "openai_api_key": API_KEY,
            "auth_url": "https://auth.example.com",
            "auth_anon_key": "anon-key",
        }
        values.update(overrides)
        monkeypatch.setattr(config_module, "_config", TokenServiceConfig(**values))

    _configure()
    return _configure


@pytest.fixture
def verified(monkeypatch):
    calls = []

    async def _fake_verify(auth_url, anon_key, authorization, timeout):
        calls.append((auth_url, anon_key, authorization))
        return "user-1" if authorization == "Bearer good-jwt" else None

    monkeypatch.setattr(app_module, "_verify_user", _fake_verify)
    return calls


@pytest.fixture
def upstream(monkeypatch):
    state = {"status": 200, "body": None, "calls": []}

    async def _fake_create(url, api_key, body, timeout):
        state["calls"].append({"url": url, "api_key": api_key, "body": body})
        text = state["body"] if isinstance(state["body"], str) else json.dumps(state["body"])
        return state["status"], text

    monkeypatch.setattr(app_module, "_create_upstream_session", _fake_create)
    state["body"] = {
        "id": "sess_abc",
        "model": "gpt-4o-mini-realtime-preview-2024-12-17",
        "voice": "shimmer",
        "expires_at": 1700000060,
        "client_secret": {"value": "ek_123", "expires_at": 1700000060},
    }
    return state


def _post(json_body=None, token="good-jwt"):
    client = TestClient(app_module.app)
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return client.post("/realtime/ephemeral", json=json_body or {}, headers=headers)


def test_mint_success(configure, verified, upstream, capsys):
    res = _post()

    assert res.status_code == 200
    assert res.json() == {
        "ok": True,
        "token": "ek_123",
        "session_id": "sess_abc",
        "model": "gpt-4o-mini-realtime-preview-2024-12-17",
        "voice": "shimmer",
        "expires_at": 1700000060,
    }
    assert API_KEY not in res.text

    call = upstream["calls"][0]
    assert call["url"] == "https://api.openai.com/v1/realtime/sessions"
    assert call["api_key"] == API_KEY
    assert call["body"]["voice"] == "shimmer"
    assert call["body"]["modalities"] == ["audio", "text"]
    assert "Olive" in call["body"]["instructions"]
    assert call["body"]["turn_detection"]["type"] == "server_vad"
    assert verified == [("https://auth.example.com", "anon-key", "Bearer good-jwt")]

    out = capsys.readouterr().out
    assert "credential.minted" in out
    assert "ek_123" not in out


def test_male_voice_selected(configure, verified, upstream):
    upstream["body"].pop("voice")
    res = _post({"voice_gender": "male"})

    assert res.status_code == 200
    assert upstream["calls"][0]["body"]["voice"] == "alloy"
    assert res.json()["voice"] == "alloy"


def test_expiry_falls_back_to_client_secret(configure, verified, upstream):
    upstream["body"].pop("expires_at")
    upstream["body"]["client_secret"]["expires_at"] = 1700000099

    assert _post().json()["expires_at"] == 1700000099


def test_disabled(configure, verified, upstream):
    configure(realtime_enabled=False)
    res = _post()

    assert res.status_code == 503
    assert res.json() == {"ok": False, "error": "Voice features are currently disabled"}
    assert upstream["calls"] == []


def test_missing_api_key(configure, verified, upstream):
    configure(openai_api_key=None)
    res = _post()

    assert res.status_code == 500
    assert res.json()["error"] == "Server configuration error"


def test_missing_bearer(configure, verified, upstream, capsys):
    res = _post(token=None)

    assert res.status_code == 401
    assert res.json() == {"ok": False, "error": "Unauthorized"}
    assert verified == []
    assert "credential.mint_failed" in capsys.readouterr().out


def test_invalid_token(configure, verified, upstream):
    res = _post(token="bad-jwt")

    assert res.status_code == 401
    assert upstream["calls"] == []


def test_auth_backend_unreachable(configure, upstream, monkeypatch):
    async def _fake_verify(auth_url, anon_key, authorization, timeout):
        raise aiohttp.ClientConnectionError("refused")

    monkeypatch.setattr(app_module, "_verify_user", _fake_verify)

    assert _post().status_code == 401


def test_azure_requires_endpoint(configure, verified, upstream):
    configure(realtime_server="azure")
    res = _post()

    assert res.status_code == 500
    assert res.json()["error"] == "Azure configuration missing"


def test_azure_sessions_url(configure, verified, upstream):
    configure(realtime_server="azure", azure_openai_endpoint="https://olive.openai.azure.com")
    _post()

    assert upstream["calls"][0]["url"] == (
        "https://olive.openai.azure.com/openai/realtime/sessions?api-version=2025-04-01-preview"
    )


def test_upstream_error_passthrough(configure, verified, upstream):
    upstream["status"] = 400
    upstream["body"] = {"error": {"message": "Invalid model"}}
    res = _post()

    assert res.status_code == 400
    assert res.json() == {
        "ok": False,
        "error": "Failed to create Realtime session",
        "message": "Invalid model",
        "status": 400,
    }


def test_upstream_without_client_secret(configure, verified, upstream):
    upstream["body"] = {"id": "sess_abc"}
    res = _post()

    assert res.status_code == 500
    assert res.json()["error"] == "Invalid sessions response"


def test_upstream_unreachable(configure, verified, monkeypatch):
    async def _fake_create(url, api_key, body, timeout):
        raise aiohttp.ClientConnectionError("refused")

    monkeypatch.setattr(app_module, "_create_upstream_session", _fake_create)
    res = _post()

    assert res.status_code == 500
    assert res.json()["error"] == "Internal server error"


def test_health():
    client = TestClient(app_module.app)
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok", "component": "token_service"}


class TestTokenServiceConfig:
    def test_defaults_from_env(self, monkeypatch):
        for name in ("OPENAI_API_KEY", "REALTIME_ENABLE", "REALTIME_SERVER", "AUTH_URL", "REALTIME_PERSONA"):
            monkeypatch.delenv(name, raising=False)
        config = TokenServiceConfig.from_env()

        assert config.openai_api_key is None
        assert config.realtime_enabled is True
        assert config.realtime_server == "openai"
        assert config.persona == "companion"
        assert config.sessions_url() == "https://api.openai.com/v1/realtime/sessions"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("REALTIME_ENABLE", "false")
        monkeypatch.setenv("REALTIME_SERVER", " Azure ")
        monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://olive.openai.azure.com/")
        monkeypatch.setenv("AUTH_URL", "https://auth.example.com/")
        monkeypatch.setenv("REALTIME_VAD_SILENCE_MS", "700 # ms")
        config = TokenServiceConfig.from_env()

        assert config.realtime_enabled is False
        assert config.realtime_server == "azure"
        assert config.auth_url == "https://auth.example.com"
        assert config.vad_silence_ms == 700
        assert config.sessions_url().startswith("https://olive.openai.azure.com/openai/realtime/sessions")
