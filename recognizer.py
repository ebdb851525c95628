"""Live caption recognizer using DashScope realtime ASR.

Frames are read from the shared audio queue and pushed to a realtime
``Recognition`` session.  Sentence updates flow through ``on_event`` as
``interim`` events; completed sentences are ``final``.  Every ``start`` ends
with exactly one ``end`` event once the engine has flushed, whatever the
exit path.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from queue import Empty, Queue
from typing import Any, Callable, Optional

from errors import NETWORK_ERROR, RECOGNIZER_ERROR
from models import AudioFrame, RecognitionEvent, RecognitionKind

try:
    import dashscope
    from dashscope.audio.asr import Recognition, RecognitionCallback, RecognitionResult
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore
    Recognition = None  # type: ignore
    RecognitionCallback = object  # type: ignore
    RecognitionResult = None  # type: ignore

logger = logging.getLogger(__name__)


class _EventBridge(RecognitionCallback):
    """Translates DashScope callbacks into RecognitionEvents."""

    def __init__(self, emit: Callable[[RecognitionEvent], None]) -> None:
        super().__init__()
        self._emit = emit

    def on_event(self, result: Any) -> None:
        sentence = result.get_sentence()
        if not isinstance(sentence, dict):
            return
        text = str(sentence.get("text", ""))
        if RecognitionResult.is_sentence_end(sentence):
            self._emit(RecognitionEvent(kind=RecognitionKind.FINAL.value, text=text))
        elif text:
            self._emit(RecognitionEvent(kind=RecognitionKind.INTERIM.value, text=text))

    def on_error(self, result: Any) -> None:
        message = str(getattr(result, "message", result))
        self._emit(_to_error_event(message))


def _to_error_event(message: str) -> RecognitionEvent:
    low = message.lower()
    if "timeout" in low or "network" in low or "connection" in low:
        code = NETWORK_ERROR
    else:
        code = RECOGNIZER_ERROR
    return RecognitionEvent(
        kind=RecognitionKind.ERROR.value,
        code=code,
        message=message,
        retryable=True,
    )


class DashscopeStreamingRecognizer:
    def __init__(
        self,
        api_key: str,
        model: str = "paraformer-realtime-v2",
        sample_rate: int = 16000,
        language_hints: Optional[list[str]] = None,
        drain_timeout_s: float = 0.5,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._sample_rate = sample_rate
        self._language_hints = language_hints
        self._drain_timeout_s = drain_timeout_s
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(
        self,
        audio_queue: Queue[AudioFrame | None],
        on_event: Callable[[RecognitionEvent], None],
    ) -> None:
        """Open a new engine session fed from ``audio_queue``.

        A previous run that is still flushing keeps its own engine and
        callback and finishes in the background.
        """
        if Recognition is None:
            raise RuntimeError("dashscope is not installed")

        dashscope.api_key = self._api_key
        kwargs: dict[str, Any] = {}
        if self._language_hints:
            kwargs["language_hints"] = self._language_hints
        recognition = Recognition(
            model=self._model,
            format="pcm",
            sample_rate=self._sample_rate,
            callback=_EventBridge(on_event),
            **kwargs,
        )
        recognition.start()

        if self._thread is not None and self._thread.is_alive():
            logger.debug("Previous recognizer run still flushing")
        self._stop_event.set()
        stop_event = threading.Event()
        self._stop_event = stop_event
        self._thread = threading.Thread(
            target=self._worker,
            args=(recognition, audio_queue, on_event, stop_event),
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Ask the current run to finish once queued audio is sent."""
        self._stop_event.set()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _worker(
        self,
        recognition: Any,
        audio_queue: Queue[AudioFrame | None],
        on_event: Callable[[RecognitionEvent], None],
        stop_event: threading.Event,
    ) -> None:
        """Forward frames until the sentinel, then flush and report end.

        After ``stop`` the queue is still drained up to the sentinel; if the
        sentinel never arrives the run ends ``drain_timeout_s`` later.
        """
        deadline: Optional[float] = None
        try:
            while True:
                if deadline is None and stop_event.is_set():
                    deadline = time.monotonic() + self._drain_timeout_s
                try:
                    frame = audio_queue.get(timeout=0.05 if deadline is not None else 0.2)
                except Empty:
                    if deadline is not None and time.monotonic() >= deadline:
                        logger.debug("No end of audio within %.2fs of stop", self._drain_timeout_s)
                        break
                    continue
                if frame is None:  # Sentinel
                    break
                recognition.send_audio_frame(frame.pcm16_bytes)
        except Exception as exc:
            logger.warning("Live recognizer failed while streaming: %s", exc)
            on_event(_to_error_event(str(exc)))
        finally:
            try:
                recognition.stop()
            except Exception as exc:
                logger.warning("Live recognizer failed to stop cleanly: %s", exc)
                on_event(_to_error_event(str(exc)))
            on_event(RecognitionEvent(kind=RecognitionKind.END.value))


def build_local_recognizer(
    api_key: str = "",
    enabled: bool = True,
    model: str = "paraformer-realtime-v2",
) -> Optional[DashscopeStreamingRecognizer]:
    """Resolve the optional live recognizer once at startup.

    Returns ``None`` when live captions are disabled, DashScope is missing,
    or no key is configured; the app then runs without live captions.
    """
    if not enabled:
        return None
    if Recognition is None:
        logger.info("dashscope is not installed; live captions disabled")
        return None
    key = api_key or os.getenv("DASHSCOPE_API_KEY", "")
    if not key:
        logger.info("No DashScope key configured; live captions disabled")
        return None
    return DashscopeStreamingRecognizer(api_key=key, model=model)
