"""
Transport session manager.

Owns the peer connection for one connection attempt: local microphone track,
remote assistant audio, and the "oai-events" data channel used as the event
side-channel. The SDP offer is exchanged over HTTP with the ephemeral
credential as bearer token.

Handshake order:
  1. open the microphone (PermissionDenied if unavailable)
  2. create the peer connection, add the mic track, watch for remote audio
  3. create the event channel
  4. offer -> POST {realtime_base_url}?model=... -> answer
  5. wait for the event channel to open

The whole handshake is bounded by the credential's remaining lifetime.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import quote

import aiohttp
from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription

from logging_setup import get_logger, Component
from .credentials import SessionCredential
from .errors import HandshakeFailed, TransportError, VoiceSessionError
from .events import encode_event
from .media import MicrophoneTrack, SpeakerSink


logger = get_logger(Component.TRANSPORT)

EVENT_CHANNEL_LABEL = "oai-events"


def _noop(*args, **kwargs) -> None:
    return None


@dataclass
class TransportCallbacks:
    """Hooks the transport calls from the event loop. All optional."""

    on_connect: Callable[[], None] = _noop
    on_disconnect: Callable[[], None] = _noop
    on_error: Callable[[BaseException], None] = _noop
    on_message: Callable[[Any], None] = _noop
    on_remote_audio: Callable[[bool, str], None] = _noop
    on_level: Callable[[str, float], None] = _noop


class SessionHandle:
    """One live (or establishing) transport session."""

    def __init__(self, session_id: str, callbacks: TransportCallbacks):
        self.session_id = session_id
        self.callbacks = callbacks
        self.peer = None
        self.channel = None
        self.microphone = None
        self.speaker_task: Optional[asyncio.Task] = None
        self.ready = asyncio.Event()
        self.failure: Optional[VoiceSessionError] = None
        self.connected = False
        self.errored = False
        self.disconnected = False
        self.logger = logger.with_session(session_id) if session_id else logger

    @property
    def is_open(self) -> bool:
        return (
            not self.disconnected
            and self.channel is not None
            and getattr(self.channel, "readyState", None) == "open"
        )

    def send(self, event: Dict[str, Any]) -> bool:
        """Send one client event on the side-channel. Returns False if it is not open."""
        if not self.is_open:
            self.logger.debug("Event channel not open; dropping client event", event_type=event.get("type"))
            return False
        self.channel.send(encode_event(event))
        self.logger.debug("Client event sent", event_type=event.get("type"))
        return True

    def set_microphone_muted(self, muted: bool) -> None:
        if self.microphone is not None and self.microphone.muted != muted:
            self.microphone.muted = muted
            self.logger.debug("Microphone muted" if muted else "Microphone unmuted")

    def _fail(self, error: VoiceSessionError) -> None:
        """Record a failure; before connect it aborts the handshake, after it goes to on_error once."""
        if self.disconnected:
            return
        if not self.connected:
            if self.failure is None:
                self.failure = error
            self.ready.set()
            return
        if self.errored:
            return
        self.errored = True
        self.logger.error("Transport failed", error=str(error), error_type=type(error).__name__)
        self.callbacks.on_error(error)


async def _post_offer(url: str, token: str, sdp: str, timeout: float) -> Tuple[int, str]:
    """
    POST the SDP offer; returns (status, body text).

    Raises aiohttp.ClientError / asyncio.TimeoutError on transport failure.
    """
    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/sdp",
    }
    async with aiohttp.ClientSession() as s:
        async with s.post(url, data=sdp, headers=headers, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            return resp.status, await resp.text()


def _fingerprint(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TransportSessionManager:
    """Establishes and tears down realtime transport sessions."""

    def __init__(
        self,
        *,
        realtime_base_url: str = "https://api.openai.com/v1/realtime",
        ice_servers: Optional[List[str]] = None,
        sample_rate: int = 48000,
        amplitude_interval_ms: int = 50,
        http_timeout: float = 15,
        peer_factory: Optional[Callable[[RTCConfiguration], Any]] = None,
        microphone_factory: Optional[Callable[..., Any]] = None,
        speaker_factory: Optional[Callable[..., Any]] = None,
    ):
        self.realtime_base_url = realtime_base_url.rstrip("/")
        self.ice_servers = list(ice_servers or [])
        self.sample_rate = sample_rate
        self.amplitude_interval_ms = amplitude_interval_ms
        self.http_timeout = http_timeout
        self._peer_factory = peer_factory or (lambda configuration: RTCPeerConnection(configuration=configuration))
        self._microphone_factory = microphone_factory or self._default_microphone
        self._speaker_factory = speaker_factory or self._default_speaker
        self._spent: Set[str] = set()

    def _default_microphone(self, *, on_level):
        return MicrophoneTrack(
            sample_rate=self.sample_rate,
            on_level=on_level,
            level_interval_ms=self.amplitude_interval_ms,
        )

    def _default_speaker(self, track, *, microphone, on_activity, on_level):
        return SpeakerSink(
            track,
            microphone=microphone,
            on_activity=on_activity,
            on_level=on_level,
            level_interval_ms=self.amplitude_interval_ms,
        )

    def _configuration(self) -> RTCConfiguration:
        return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in self.ice_servers])

    def offer_url(self, model: str) -> str:
        if not model:
            return self.realtime_base_url
        return f"{self.realtime_base_url}?model={quote(model)}"

    async def connect(self, credential: SessionCredential, callbacks: TransportCallbacks) -> SessionHandle:
        """
        Establish a transport session with a fresh credential.

        On success `on_connect` has fired and the event channel is open. On
        failure everything acquired so far is released, `on_error` fires once
        and the error is raised; `on_disconnect` does not fire.

        Raises:
            PermissionDenied: microphone unavailable
            HandshakeFailed: credential reused or expired, or SDP exchange rejected
            TransportError: network failure or the connection broke mid-handshake
        """
        handle = SessionHandle(credential.session_id, callbacks)
        log = handle.logger

        fingerprint = _fingerprint(credential.token)
        if fingerprint in self._spent or credential.is_expired():
            error = HandshakeFailed(
                "Credential already used" if fingerprint in self._spent else "Credential expired before connect"
            )
            log.warning("Transport connect rejected", error=str(error))
            callbacks.on_error(error)
            raise error
        self._spent.add(fingerprint)

        start_ts = time.time()
        log.info("Transport connecting", model=credential.model, voice=credential.voice)
        error: Optional[VoiceSessionError] = None
        try:
            await asyncio.wait_for(self._establish(handle, credential), timeout=credential.seconds_remaining())
        except asyncio.CancelledError:
            log.info("Transport connect cancelled")
            await self.disconnect(handle)
            raise
        except asyncio.TimeoutError:
            error = HandshakeFailed("Credential expired during handshake")
        except VoiceSessionError as e:
            error = e
        except Exception as e:
            error = TransportError(f"Transport setup failed: {e}")

        if error is not None:
            closed_by_caller = handle.disconnected
            await self._teardown(handle)
            if closed_by_caller:
                log.info("Handshake abandoned: session closed")
                raise TransportError("Disconnected during handshake") from error
            log.error("Transport handshake failed", error=str(error), error_type=type(error).__name__)
            callbacks.on_error(error)
            raise error

        handle.connected = True
        log.info("Transport connected", latency_ms=int((time.time() - start_ts) * 1000))
        callbacks.on_connect()
        return handle

    async def _establish(self, handle: SessionHandle, credential: SessionCredential) -> None:
        callbacks = handle.callbacks
        log = handle.logger

        # 1. Local audio
        microphone = self._microphone_factory(on_level=lambda level: callbacks.on_level("mic", level))
        handle.microphone = microphone
        microphone.start()

        # 2. Peer connection
        pc = self._peer_factory(self._configuration())
        handle.peer = pc
        pc.addTrack(microphone)

        @pc.on("track")
        def on_track(track):
            if track.kind != "audio" or handle.disconnected:
                return
            log.info("Remote audio track received")
            callbacks.on_remote_audio(True, "track")

            @track.on("ended")
            def on_ended():
                if not handle.disconnected:
                    callbacks.on_remote_audio(False, "track_ended")

            speaker = self._speaker_factory(
                track,
                microphone=microphone,
                on_activity=lambda active: callbacks.on_remote_audio(active, "activity" if active else "silence"),
                on_level=lambda level: callbacks.on_level("remote", level),
            )
            handle.speaker_task = asyncio.ensure_future(speaker.run())

        @pc.on("connectionstatechange")
        def on_connection_state():
            state = pc.connectionState
            log.debug("Peer connection state", state=state)
            if state == "failed":
                handle._fail(TransportError("Peer connection failed"))

        # 3. Event side-channel
        channel = pc.createDataChannel(EVENT_CHANNEL_LABEL)
        handle.channel = channel

        @channel.on("open")
        def on_open():
            log.debug("Event channel open")
            handle.ready.set()

        @channel.on("message")
        def on_message(message):
            if not handle.disconnected:
                callbacks.on_message(message)

        @channel.on("close")
        def on_close():
            handle._fail(TransportError("Event channel closed"))

        # 4. Offer / answer
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)

        url = self.offer_url(credential.model)
        try:
            status, answer = await _post_offer(url, credential.token, pc.localDescription.sdp, self.http_timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"SDP exchange unreachable: {e}") from e

        if not 200 <= status < 300:
            raise HandshakeFailed(
                f"SDP exchange failed: HTTP {status}",
                status=status,
                detail=(answer or "")[:200],
            )

        if handle.disconnected:
            raise TransportError("Disconnected during handshake")
        await pc.setRemoteDescription(RTCSessionDescription(sdp=answer, type="answer"))

        # 5. Wait for the side-channel
        await handle.ready.wait()
        if handle.disconnected:
            raise TransportError("Disconnected during handshake")
        if handle.failure is not None:
            raise handle.failure

    async def disconnect(self, handle: SessionHandle) -> None:
        """
        Release everything the session holds. Idempotent.

        Order: event channel, local tracks, peer connection, then
        `on_disconnect` exactly once.
        """
        if handle.disconnected:
            return
        handle.disconnected = True
        handle.ready.set()
        await self._teardown(handle)
        handle.logger.info("Transport disconnected")
        try:
            handle.callbacks.on_disconnect()
        except Exception as e:
            handle.logger.warning("Error in on_disconnect (non-fatal)", error=str(e))

    async def _teardown(self, handle: SessionHandle) -> None:
        log = handle.logger
        handle.disconnected = True
        handle.ready.set()

        channel, handle.channel = handle.channel, None
        if channel is not None:
            try:
                channel.close()
            except Exception as e:
                log.warning("Error closing event channel", error=str(e))

        microphone, handle.microphone = handle.microphone, None
        if microphone is not None:
            try:
                microphone.stop()
            except Exception as e:
                log.warning("Error stopping microphone", error=str(e))

        task, handle.speaker_task = handle.speaker_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        peer, handle.peer = handle.peer, None
        if peer is not None:
            try:
                await peer.close()
            except Exception as e:
                log.warning("Error closing peer connection", error=str(e))
