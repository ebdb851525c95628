"""Preemptible playback of audio artifacts."""

from __future__ import annotations

import io
import logging
import threading

from errors import UnsupportedFormatError
from models import AudioArtifact

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

try:
    import soundfile as sf
except Exception:  # pragma: no cover
    sf = None  # type: ignore

logger = logging.getLogger(__name__)


class SoundDevicePlayer:
    """Plays one artifact at a time; a new ``play`` cuts off the previous one."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started = False

    @property
    def playing(self) -> bool:
        """True while the last started clip is still being output."""
        if sd is None or not self._started:
            return False
        try:
            return bool(sd.get_stream().active)
        except RuntimeError:
            return False

    def play(self, artifact: AudioArtifact) -> None:
        if sd is None or sf is None:
            raise UnsupportedFormatError("sounddevice/soundfile is not installed")
        try:
            data, sample_rate = sf.read(io.BytesIO(artifact.data), dtype="float32")
        except RuntimeError as exc:
            raise UnsupportedFormatError(f"cannot decode {artifact.mime_type}: {exc}") from exc

        with self._lock:
            if self.playing:
                logger.debug("Preempting current playback")
            sd.stop()
            sd.play(data, sample_rate)
            self._started = True

    def stop(self) -> None:
        with self._lock:
            if sd is not None:
                sd.stop()
            self._started = False
