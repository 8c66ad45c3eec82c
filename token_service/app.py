"""
Realtime credential broker (HTTP).

POST /realtime/ephemeral
- fails closed: realtime disabled -> 503, upstream key missing -> 500
- verifies the caller's bearer token against the auth backend -> 401
- mints a realtime session upstream (OpenAI or Azure) and returns only the
  ephemeral client secret: {ok, token, session_id, model, voice, expires_at}

The upstream API key is never returned to the caller.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, Optional, Tuple

import aiohttp
from fastapi import APIRouter, FastAPI, Header
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from logging_setup import get_logger, Component
from observability.events import Component as ObsComponent, EventEmitter, Severity
from .config import TokenServiceConfig, get_config
from .instructions import get_instructions


logger = get_logger(Component.TOKEN_SERVICE)
emitter = EventEmitter(ObsComponent.TOKEN_SERVICE)
router = APIRouter(prefix="/realtime", tags=["realtime"])


class EphemeralRequest(BaseModel):
    voice_gender: Optional[str] = None  # "male" | "female"


class EphemeralResponse(BaseModel):
    ok: bool
    token: str
    session_id: Optional[str] = None
    model: Optional[str] = None
    voice: Optional[str] = None
    expires_at: Optional[Any] = None


def _new_correlation_id() -> str:
    return f"mint_{int(time.time() * 1000)}"


def _error(http_status: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=http_status, content={"ok": False, "error": error, **extra})


def select_voice(config: TokenServiceConfig, voice_gender: Optional[str]) -> str:
    """Male voice only when asked for; female otherwise."""
    if (voice_gender or "").strip().lower() == "male":
        return config.voice_male
    return config.voice_female


def build_session_request(config: TokenServiceConfig, voice: str) -> Dict[str, Any]:
    return {
        "model": config.realtime_model,
        "voice": voice,
        "modalities": ["audio", "text"],
        "instructions": get_instructions(config.persona),
        "turn_detection": {
            "type": config.turn_detection,
            "threshold": config.vad_threshold,
            "silence_duration_ms": config.vad_silence_ms,
        },
    }


async def _verify_user(auth_url: str, anon_key: Optional[str], authorization: str, timeout: float) -> Optional[str]:
    """
    Resolve the caller's user id from their bearer token.

    Returns None when the auth backend rejects the token.
    """
    headers = {"Authorization": authorization}
    if anon_key:
        headers["apikey"] = anon_key
    async with aiohttp.ClientSession() as s:
        async with s.get(
            f"{auth_url}/auth/v1/user",
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            if resp.status != 200:
                return None
            body = await resp.json(content_type=None)
            user_id = body.get("id") if isinstance(body, dict) else None
            return str(user_id) if user_id else None


async def _create_upstream_session(url: str, api_key: str, body: Dict[str, Any], timeout: float) -> Tuple[int, str]:
    """POST the session request upstream; returns (status, body text)."""
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }
    async with aiohttp.ClientSession() as s:
        async with s.post(url, json=body, headers=headers, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            return resp.status, await resp.text()


def _upstream_error_message(text: str) -> str:
    try:
        payload = json.loads(text)
    except ValueError:
        return text
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return text


@router.post("/ephemeral", response_model=EphemeralResponse)
async def mint_ephemeral(
    req: Optional[EphemeralRequest] = None,
    authorization: Optional[str] = Header(None, alias="Authorization"),
):
    """Mint one ephemeral realtime credential for the authenticated caller."""
    config = get_config()
    correlation_id = _new_correlation_id()

    def failed(http_status: int, error: str, reason: str, **extra: Any) -> JSONResponse:
        emitter.emit(
            "credential.mint_failed",
            session_id=correlation_id,
            severity=Severity.WARN if http_status < 500 else Severity.ERROR,
            http_status=http_status,
            reason=reason,
        )
        return _error(http_status, error, **extra)

    if not config.realtime_enabled:
        logger.warning("Realtime voice is disabled via REALTIME_ENABLE")
        return failed(503, "Voice features are currently disabled", "disabled")

    if not config.openai_api_key:
        logger.error("OPENAI_API_KEY not configured")
        return failed(500, "Server configuration error", "missing_api_key")

    if not config.auth_url:
        logger.error("AUTH_URL not configured")
        return failed(500, "Server configuration error", "missing_auth_url")

    if not authorization or not authorization.lower().startswith("bearer "):
        logger.warning("Unauthorized request", has_auth=authorization is not None)
        return failed(401, "Unauthorized", "missing_token")

    try:
        user_id = await _verify_user(
            config.auth_url, config.auth_anon_key, authorization, config.http_timeout_seconds
        )
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.warning("Auth backend unreachable", error=str(e), error_type=type(e).__name__)
        user_id = None
    if not user_id:
        logger.warning("Unauthorized request")
        return failed(401, "Unauthorized", "invalid_token")

    sessions_url = config.sessions_url()
    if sessions_url is None:
        logger.error("AZURE_OPENAI_ENDPOINT required when REALTIME_SERVER=azure")
        return failed(500, "Azure configuration missing", "missing_azure_endpoint")

    voice = select_voice(config, req.voice_gender if req else None)
    logger.info("Minting ephemeral token", user_id=user_id, model=config.realtime_model, server=config.realtime_server)
    logger.debug("Voice selected", voice=voice, voice_gender=req.voice_gender if req else None)

    start_ts = time.time()
    try:
        status, text = await _create_upstream_session(
            sessions_url,
            config.openai_api_key,
            build_session_request(config, voice),
            config.http_timeout_seconds,
        )
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error("Sessions endpoint unreachable", error=str(e), error_type=type(e).__name__)
        return failed(500, "Internal server error", "upstream_unreachable")

    latency_ms = int((time.time() - start_ts) * 1000)

    if not 200 <= status < 300:
        message = _upstream_error_message(text)
        logger.error("Sessions API error", status=status, error=message, latency_ms=latency_ms)
        return failed(
            status,
            "Failed to create Realtime session",
            "upstream_error",
            message=message,
            status=status,
        )

    try:
        session_data = json.loads(text)
    except ValueError:
        session_data = None
    if not isinstance(session_data, dict):
        session_data = {}

    client_secret = session_data.get("client_secret")
    token = client_secret.get("value") if isinstance(client_secret, dict) else None
    if not token:
        logger.error("No ephemeral token in sessions response", latency_ms=latency_ms)
        return failed(500, "Invalid sessions response", "missing_client_secret")

    expires_at = session_data.get("expires_at")
    if expires_at is None and isinstance(client_secret, dict):
        expires_at = client_secret.get("expires_at")

    logger.info("Ephemeral token minted", user_id=user_id, latency_ms=latency_ms)
    emitter.emit(
        "credential.minted",
        session_id=correlation_id,
        upstream_session_id=session_data.get("id"),
        model=session_data.get("model") or config.realtime_model,
        voice=session_data.get("voice") or voice,
        latency_ms=latency_ms,
    )

    return EphemeralResponse(
        ok=True,
        token=token,
        session_id=session_data.get("id"),
        model=session_data.get("model") or config.realtime_model,
        voice=session_data.get("voice") or voice,
        expires_at=expires_at,
    )


app = FastAPI(title="Realtime Token Service")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["POST", "GET", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)
app.include_router(router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok", "component": "token_service"}
