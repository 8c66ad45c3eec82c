"""
Device audio for the realtime transport.

- MicrophoneTrack: sounddevice capture -> LiveKit audio processing (echo
  cancellation, noise suppression, high-pass filter, auto gain) -> aiortc
  audio frames. Can be muted without releasing the device.
- SpeakerSink: plays the remote assistant track, feeds it back to the
  microphone's echo canceller, and reports activity and amplitude.

Capture runs on the PortAudio thread; frames cross into the event loop with
call_soon_threadsafe and are processed in 10 ms chunks, which is what the
audio processing module expects.
"""

from __future__ import annotations

import asyncio
import fractions
import time
from typing import Callable, Optional

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from livekit import rtc

from logging_setup import get_logger, Component
from .errors import PermissionDenied


logger = get_logger(Component.MEDIA)

FRAME_MS = 10


def rms_level(samples: np.ndarray) -> float:
    """RMS of int16 PCM, normalised to [0, 1]."""
    if samples.size == 0:
        return 0.0
    x = samples.astype(np.float32) / 32768.0
    return float(min(1.0, np.sqrt(np.mean(x * x))))


class LevelMeter:
    """Throttles amplitude reports to one per interval."""

    def __init__(self, callback: Callable[[float], None], interval_ms: int = 50, *, now=time.monotonic):
        self._callback = callback
        self._interval = interval_ms / 1000.0
        self._now = now
        self._last = 0.0
        self._peak = 0.0

    def feed(self, samples: np.ndarray) -> None:
        self._peak = max(self._peak, rms_level(samples))
        ts = self._now()
        if ts - self._last >= self._interval:
            self._last = ts
            level, self._peak = self._peak, 0.0
            self._callback(level)


class MicrophoneTrack(MediaStreamTrack):
    """Local capture track with voice processing enabled."""

    kind = "audio"

    def __init__(
        self,
        *,
        sample_rate: int = 48000,
        on_level: Optional[Callable[[float], None]] = None,
        level_interval_ms: int = 50,
        device: Optional[int | str] = None,
    ):
        super().__init__()
        self.sample_rate = sample_rate
        self.samples_per_frame = sample_rate * FRAME_MS // 1000
        self.muted = False
        self.apm = rtc.AudioProcessingModule(
            echo_cancellation=True,
            noise_suppression=True,
            high_pass_filter=True,
            auto_gain_control=True,
        )
        self._device = device
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=50)
        self._stream = None
        self._pts = 0
        self._meter = LevelMeter(on_level, level_interval_ms) if on_level else None

    def start(self) -> None:
        """
        Open the capture device.

        Raises PermissionDenied when no usable input device is available.
        """
        try:
            import sounddevice as sd
        except OSError as e:
            raise PermissionDenied(f"Audio backend unavailable: {e}") from e

        loop = asyncio.get_running_loop()

        def _callback(indata, frames, time_info, status):
            if status:
                logger.debug("Capture status", status=str(status))
            loop.call_soon_threadsafe(self._enqueue, bytes(indata))

        try:
            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="int16",
                blocksize=self.samples_per_frame,
                device=self._device,
                callback=_callback,
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError) as e:
            self._stream = None
            raise PermissionDenied(f"Microphone unavailable: {e}") from e

        logger.info("Microphone opened", sample_rate=self.sample_rate, device=self._device)

    def _enqueue(self, pcm: Optional[bytes]) -> None:
        if self._queue.full():
            # Drop the oldest frame rather than build latency.
            self._queue.get_nowait()
        self._queue.put_nowait(pcm)

    async def recv(self) -> av.AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError

        pcm = await self._queue.get()
        if pcm is None:
            raise MediaStreamError

        frame = rtc.AudioFrame(pcm, self.sample_rate, 1, self.samples_per_frame)
        self.apm.process_stream(frame)
        samples = np.frombuffer(frame.data, dtype=np.int16).copy()
        if self.muted:
            samples[:] = 0
        if self._meter is not None:
            self._meter.feed(samples)

        out = av.AudioFrame.from_ndarray(samples.reshape(1, -1), format="s16", layout="mono")
        out.sample_rate = self.sample_rate
        out.pts = self._pts
        out.time_base = fractions.Fraction(1, self.sample_rate)
        self._pts += self.samples_per_frame
        return out

    def stop(self) -> None:
        super().stop()
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as e:
                logger.warning("Error closing capture device", error=str(e))
            logger.info("Microphone released")
        self._enqueue(None)


def _to_mono_int16(frame: av.AudioFrame) -> np.ndarray:
    arr = frame.to_ndarray()
    channels = len(frame.layout.channels)
    if frame.format.is_planar:
        mono = arr.mean(axis=0) if channels > 1 else arr[0]
    else:
        mono = arr.reshape(-1, channels).mean(axis=1) if channels > 1 else arr.reshape(-1)
    if mono.dtype != np.int16:
        if np.issubdtype(mono.dtype, np.floating) and frame.format.name.startswith("flt"):
            mono = np.clip(mono, -1.0, 1.0) * 32767
        mono = mono.astype(np.int16)
    return mono


class SpeakerSink:
    """Plays the remote assistant track and watches it for activity."""

    def __init__(
        self,
        track: MediaStreamTrack,
        *,
        on_activity: Callable[[bool], None],
        on_level: Optional[Callable[[float], None]] = None,
        microphone: Optional[MicrophoneTrack] = None,
        level_interval_ms: int = 50,
        activity_threshold: float = 0.01,
        silence_ms: int = 400,
        device: Optional[int | str] = None,
    ):
        self._track = track
        self._on_activity = on_activity
        self._microphone = microphone
        self._meter = LevelMeter(on_level, level_interval_ms) if on_level else None
        self._threshold = activity_threshold
        self._silence = silence_ms / 1000.0
        self._device = device
        self._active = False
        self._last_voice = 0.0

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        stream = None
        try:
            import sounddevice as sd
            playback = True
        except OSError as e:
            logger.error("Audio backend unavailable; assistant audio will not play", error=str(e))
            playback = False
        try:
            while True:
                try:
                    frame = await self._track.recv()
                except MediaStreamError:
                    break

                samples = _to_mono_int16(frame)

                if stream is None and playback:
                    try:
                        stream = sd.OutputStream(
                            samplerate=frame.sample_rate,
                            channels=1,
                            dtype="int16",
                            device=self._device,
                        )
                        stream.start()
                    except sd.PortAudioError as e:
                        playback = False
                        logger.error("Speaker unavailable; assistant audio will not play", error=str(e))

                if stream is not None:
                    await loop.run_in_executor(None, stream.write, samples.reshape(-1, 1))

                self._feed_echo_reference(samples, frame.sample_rate)
                if self._meter is not None:
                    self._meter.feed(samples)
                self._update_activity(samples)
        finally:
            if stream is not None:
                try:
                    stream.stop()
                    stream.close()
                except Exception as e:
                    logger.warning("Error closing playback device", error=str(e))
            if self._active:
                self._active = False
                self._on_activity(False)

    def _feed_echo_reference(self, samples: np.ndarray, sample_rate: int) -> None:
        mic = self._microphone
        if mic is None or sample_rate != mic.sample_rate:
            return
        chunk = mic.samples_per_frame
        for start in range(0, len(samples) - chunk + 1, chunk):
            ref = rtc.AudioFrame(samples[start:start + chunk].tobytes(), sample_rate, 1, chunk)
            mic.apm.process_reverse_stream(ref)

    def _update_activity(self, samples: np.ndarray) -> None:
        now = time.monotonic()
        if rms_level(samples) >= self._threshold:
            self._last_voice = now
            if not self._active:
                self._active = True
                self._on_activity(True)
        elif self._active and now - self._last_voice > self._silence:
            self._active = False
            self._on_activity(False)
