"""
Credential broker client.

Requests a short-lived, single-use realtime credential from the
authorization backend. Nothing is cached: every connection attempt asks for
a fresh credential.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Tuple

import aiohttp

from logging_setup import get_logger, Component
from .errors import BackendError, NetworkError, Unauthenticated


logger = get_logger(Component.CREDENTIALS)


@dataclass(frozen=True)
class SessionCredential:
    """Ephemeral realtime credential. Immutable once issued."""

    token: str = field(repr=False)
    session_id: str
    model: str
    voice: str
    issued_at: float
    expires_at: float

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at

    def seconds_remaining(self, now: Optional[float] = None) -> float:
        return max(0.0, self.expires_at - (now if now is not None else time.time()))


def parse_expires_at(value: Any, *, issued_at: float, default_ttl: float) -> float:
    """
    Normalise the broker's expires_at to epoch seconds.

    Accepts epoch seconds (int, float or digit string) and ISO-8601 strings.
    Missing or unparseable values fall back to issued_at + default_ttl.
    """
    if isinstance(value, bool) or value is None:
        return issued_at + default_ttl
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return float(text)
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp()
        except ValueError:
            logger.warning("Unparseable credential expiry; using default TTL", expires_at=text)
    return issued_at + default_ttl


async def _post_json(url: str, bearer: str, timeout: float) -> Tuple[int, Any]:
    """
    POST to the broker and return (status, parsed JSON or None).

    Raises aiohttp.ClientError / asyncio.TimeoutError on transport failure.
    """
    headers = {
        "Authorization": f"Bearer {bearer}",
        "Content-Type": "application/json",
    }
    async with aiohttp.ClientSession() as s:
        async with s.post(url, json={}, headers=headers, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            try:
                body = await resp.json(content_type=None)
            except ValueError:
                body = None
            return resp.status, body


class CredentialBrokerClient:
    """Fetches ephemeral credentials from the authorization backend."""

    def __init__(
        self,
        broker_url: str,
        access_token: Optional[str],
        *,
        timeout_seconds: float = 15,
        default_ttl_seconds: float = 60,
    ):
        self.broker_url = broker_url
        self.access_token = access_token
        self.timeout_seconds = timeout_seconds
        self.default_ttl_seconds = default_ttl_seconds

    async def acquire_credential(self) -> SessionCredential:
        """
        Mint a fresh credential for one connection attempt.

        Raises:
            Unauthenticated: no user token, or the broker answered 401/403
            NetworkError: the broker could not be reached
            BackendError: any other unusable answer
        """
        if not self.access_token:
            raise Unauthenticated("Not authenticated")

        start_ts = time.time()
        logger.debug("Requesting ephemeral credential", endpoint=self.broker_url)
        try:
            status, body = await _post_json(self.broker_url, self.access_token, self.timeout_seconds)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(
                "Credential broker unreachable",
                endpoint=self.broker_url,
                error=str(e),
                error_type=type(e).__name__,
                latency_ms=int((time.time() - start_ts) * 1000),
            )
            raise NetworkError(f"Credential broker unreachable: {e}") from e

        latency_ms = int((time.time() - start_ts) * 1000)
        body = body if isinstance(body, dict) else {}

        if status in (401, 403):
            logger.warning("Credential broker rejected caller", status=status, latency_ms=latency_ms)
            raise Unauthenticated(body.get("error") or f"HTTP {status}")

        if not 200 <= status < 300:
            message = body.get("message") or body.get("error") or f"HTTP {status}"
            logger.error("Credential broker error", status=status, error=message, latency_ms=latency_ms)
            raise BackendError(message, status=status)

        token = body.get("token")
        if not body.get("ok") or not token:
            message = body.get("error") or "Failed to get ephemeral token"
            logger.error("Invalid credential response", error=message, latency_ms=latency_ms)
            raise BackendError(message, status=status)

        issued_at = time.time()
        credential = SessionCredential(
            token=token,
            session_id=str(body.get("session_id") or ""),
            model=str(body.get("model") or ""),
            voice=str(body.get("voice") or ""),
            issued_at=issued_at,
            expires_at=parse_expires_at(
                body.get("expires_at"),
                issued_at=issued_at,
                default_ttl=self.default_ttl_seconds,
            ),
        )
        logger.info(
            "Ephemeral credential acquired",
            session_id=credential.session_id,
            model=credential.model,
            voice=credential.voice,
            expires_in_s=int(credential.seconds_remaining()),
            latency_ms=latency_ms,
        )
        return credential
