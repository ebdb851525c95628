"""Protocol interfaces used by SessionController."""

from __future__ import annotations

from queue import Queue
from typing import Callable, Optional, Protocol

from models import AudioArtifact, AudioFrame, CaptureHandle, RecognitionEvent


class AudioCapture(Protocol):
    def start(self, audio_queue: Optional[Queue[AudioFrame | None]] = None) -> CaptureHandle: ...

    def stop(self, handle: CaptureHandle) -> AudioArtifact: ...

    def abort(self, handle: CaptureHandle) -> None: ...


class LocalRecognizer(Protocol):
    def start(
        self,
        audio_queue: Queue[AudioFrame | None],
        on_event: Callable[[RecognitionEvent], None],
    ) -> None: ...

    def stop(self) -> None: ...


class TranscriptionClient(Protocol):
    def transcribe(self, artifact: AudioArtifact) -> str: ...

    def improve(self, artifact: AudioArtifact, original_text: str) -> str: ...


class SynthesisClient(Protocol):
    def synthesize(self, text: str) -> AudioArtifact: ...

