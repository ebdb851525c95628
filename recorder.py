"""Microphone recorder adapter."""

from __future__ import annotations

import io
import itertools
import logging
import threading
import time
import wave
from queue import Full, Queue
from typing import Any, Optional

from errors import InvalidStateError, PermissionDeniedError, UnsupportedFormatError
from models import AudioArtifact, AudioFrame, CaptureHandle

try:
    import numpy as np
except Exception:  # pragma: no cover
    np = None  # type: ignore

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

logger = logging.getLogger(__name__)

WAV_MIME_TYPE = "audio/wav"


def _pcm_to_wav(
    pcm: bytes,
    sample_rate: int = 16000,
    channels: int = 1,
    sample_width: int = 2,
) -> bytes:
    """Wrap raw PCM bytes in a WAV container."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return buf.getvalue()


class SoundDeviceRecorder:
    """Records one capture at a time and finalizes it into a WAV artifact.

    The input stream is opened in ``start`` and closed exactly once, by
    either ``stop`` or ``abort``.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        chunk_ms: int = 100,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_ms = chunk_ms
        self._stream: Any = None
        self._running = False
        self._lock = threading.Lock()
        self.dropped_chunks = 0
        self._audio_queue: Optional[Queue[AudioFrame | None]] = None
        self._pcm = bytearray()
        self._handle: Optional[CaptureHandle] = None
        self._ids = itertools.count(1)

    def start(self, audio_queue: Optional[Queue[AudioFrame | None]] = None) -> CaptureHandle:
        with self._lock:
            if self._running:
                raise InvalidStateError("a capture is already active")
            if sd is None or np is None:
                raise UnsupportedFormatError("sounddevice is not installed")
            try:
                sd.check_input_settings(
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype="int16",
                )
            except (ValueError, sd.PortAudioError) as exc:
                raise UnsupportedFormatError(str(exc)) from exc

            blocksize = int(self.sample_rate * (self.chunk_ms / 1000.0))
            stream = None
            try:
                stream = sd.InputStream(
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype="int16",
                    blocksize=blocksize,
                    callback=self._on_audio,
                )
                stream.start()
            except sd.PortAudioError as exc:
                if stream is not None:
                    stream.close()
                raise PermissionDeniedError(str(exc)) from exc

            self._stream = stream
            self._audio_queue = audio_queue
            self._pcm = bytearray()
            self.dropped_chunks = 0
            self._handle = CaptureHandle(capture_id=next(self._ids), started_at_ms=int(time.time() * 1000))
            self._running = True
            logger.debug("Capture %d started", self._handle.capture_id)
            return self._handle

    def stop(self, handle: CaptureHandle) -> AudioArtifact:
        with self._lock:
            if not self._running or handle != self._handle:
                raise InvalidStateError(f"capture {handle.capture_id} is not active")
            self._release()
            wav = _pcm_to_wav(bytes(self._pcm), self.sample_rate, self.channels)
            self._pcm = bytearray()
            logger.debug("Capture %d stopped, %d bytes", handle.capture_id, len(wav))
            return AudioArtifact(data=wav, mime_type=WAV_MIME_TYPE)

    def abort(self, handle: CaptureHandle) -> None:
        with self._lock:
            if not self._running or handle != self._handle:
                return
            self._release()
            self._pcm = bytearray()
            logger.debug("Capture %d aborted", handle.capture_id)

    def _release(self) -> None:
        self._running = False
        if self._stream is not None:
            try:
                self._stream.stop()
            finally:
                self._stream.close()
                self._stream = None
        self._emit_sentinel_if_needed()
        self._audio_queue = None

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if not self._running or np is None:
            return
        payload = np.asarray(indata, dtype=np.int16).tobytes()
        self._pcm.extend(payload)
        if self._audio_queue is None:
            return
        frame = AudioFrame(
            pcm16_bytes=payload,
            sample_rate=self.sample_rate,
            channels=self.channels,
            timestamp_ms=int(time.time() * 1000),
        )
        try:
            self._audio_queue.put_nowait(frame)
        except Full:
            self.dropped_chunks += 1

    def _emit_sentinel_if_needed(self) -> None:
        if self._audio_queue is None:
            return
        try:
            self._audio_queue.put_nowait(None)
        except Full:
            pass
