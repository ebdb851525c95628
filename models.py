"""Core data models for the app."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class SessionState(str, Enum):
    IDLE = "IDLE"
    RECORDING = "RECORDING"
    FINALIZING = "FINALIZING"
    REMOTE_PROCESSING = "REMOTE_PROCESSING"
    IMPROVING = "IMPROVING"
    SYNTHESIZING = "SYNTHESIZING"
    READY = "READY"
    FAILED = "FAILED"


class RecognitionKind(str, Enum):
    INTERIM = "interim"
    FINAL = "final"
    ERROR = "error"
    END = "end"


class Operation(str, Enum):
    TRANSCRIBE = "transcribe"
    IMPROVE = "improve"
    SYNTHESIZE = "synthesize"


# State the controller sits in while an operation is outstanding.
OPERATION_STATES = {
    Operation.TRANSCRIBE: SessionState.REMOTE_PROCESSING,
    Operation.IMPROVE: SessionState.IMPROVING,
    Operation.SYNTHESIZE: SessionState.SYNTHESIZING,
}


@dataclass
class AudioFrame:
    pcm16_bytes: bytes
    sample_rate: int = 16000
    channels: int = 1
    timestamp_ms: int = 0


@dataclass
class RecognitionEvent:
    kind: str
    text: str = ""
    code: str = ""
    message: str = ""
    retryable: bool = False


@dataclass(frozen=True)
class AudioArtifact:
    """Immutable recorded or synthesized audio."""

    data: bytes
    mime_type: str

    @property
    def data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class CaptureHandle:
    capture_id: int
    started_at_ms: int = 0


@dataclass
class Session:
    """One recording-to-result cycle.

    ``local_fragments`` holds final recognizer fragments and is append-only
    while recording; ``local_final_text`` is published once both the capture
    and the recognizer have stopped.
    """

    session_id: int
    local_fragments: list[str] = field(default_factory=list)
    pending_interim: str = ""
    local_final_text: Optional[str] = None
    audio_artifact: Optional[AudioArtifact] = None
    remote_text: Optional[str] = None
    improved_text: Optional[str] = None
    synthesized_audio: Optional[AudioArtifact] = None
    error: Optional[str] = None
    error_code: str = ""
    failed_operation: Optional[Operation] = None
    recognizer_errors: int = 0
    recognizer_degraded: bool = False

    @property
    def interim_text(self) -> str:
        return "".join(self.local_fragments) + self.pending_interim

    @property
    def display_text(self) -> str:
        for text in (self.improved_text, self.remote_text, self.local_final_text):
            if text:
                return text
        return ""


@dataclass
class CopyResult:
    success: bool
    reason: str
