"""State-machine based session orchestration.

Every transition is driven by a named event: a user action, a recognizer
event, the capture stopping, the finalize timer, or a remote call
resolving.  Events that carry a session id are dropped when that id is no
longer the active session, so results of a discarded recording never leak
into the next one.
"""

from __future__ import annotations

import itertools
import logging
import threading
from queue import Queue
from typing import Any, Callable, Mapping, Optional

from corrections import apply_corrections
from errors import (
    RECOGNIZER_ERROR,
    RECOGNIZER_START_FAILED,
    ERROR_MESSAGES,
    InvalidInputError,
    InvalidStateError,
    VoiceScribeError,
)
from interfaces import AudioCapture, LocalRecognizer, SynthesisClient, TranscriptionClient
from models import (
    OPERATION_STATES,
    AudioFrame,
    CaptureHandle,
    Operation,
    RecognitionEvent,
    RecognitionKind,
    Session,
    SessionState,
)

logger = logging.getLogger(__name__)

StateCallback = Callable[[SessionState, SessionState], None]
PartialCallback = Callable[[str], None]
ErrorCallback = Callable[[str, str], None]
Runner = Callable[[Callable[[], None]], None]

RETRYABLE_STATES = (SessionState.READY, SessionState.FAILED)


def run_in_thread(job: Callable[[], None]) -> None:
    threading.Thread(target=job, daemon=True).start()


class SessionController:
    def __init__(
        self,
        capture: AudioCapture,
        recognizer: Optional[LocalRecognizer] = None,
        transcription_client: Optional[TranscriptionClient] = None,
        synthesis_client: Optional[SynthesisClient] = None,
        auto_transcribe: bool = True,
        corrections: Optional[Mapping[str, str]] = None,
        finalize_timeout_s: Optional[float] = 3.0,
        max_recognizer_errors: int = 3,
        queue_maxsize: int = 50,
        runner: Runner = run_in_thread,
        on_state_change: Optional[StateCallback] = None,
        on_partial: Optional[PartialCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._capture = capture
        self._recognizer = recognizer
        self._transcription_client = transcription_client
        self._synthesis_client = synthesis_client
        self.auto_transcribe = auto_transcribe
        self._corrections: dict[str, str] = dict(corrections or {})
        self._finalize_timeout_s = finalize_timeout_s
        self._max_recognizer_errors = max_recognizer_errors
        self._queue_maxsize = queue_maxsize
        self._runner = runner
        self._on_state_change = on_state_change
        self._on_partial = on_partial
        self._on_error = on_error

        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._session_ids = itertools.count(1)
        self._session: Optional[Session] = None
        self._capture_handle: Optional[CaptureHandle] = None
        self._recognizer_running = False
        self._recognizer_done = False
        self._recognizer_snapshot = ""
        self._finalize_timer: Optional[threading.Timer] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def has_recognizer(self) -> bool:
        return self._recognizer is not None

    def set_corrections(self, corrections: Mapping[str, str]) -> None:
        with self._lock:
            self._corrections = dict(corrections)

    def replace_clients(
        self,
        transcription_client: Optional[TranscriptionClient],
        synthesis_client: Optional[SynthesisClient],
    ) -> None:
        """Swap remote clients, e.g. after the API token changes."""
        with self._lock:
            self._transcription_client = transcription_client
            self._synthesis_client = synthesis_client

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def start_recording(self) -> None:
        with self._lock:
            if self._state in (SessionState.RECORDING, SessionState.FINALIZING):
                return
            self._discard_session()
            self._transition(SessionState.IDLE)

            session = Session(session_id=next(self._session_ids))
            audio_queue: Optional[Queue[AudioFrame | None]] = None
            if self._recognizer is not None:
                audio_queue = Queue(maxsize=self._queue_maxsize)

            try:
                handle = self._capture.start(audio_queue)
            except VoiceScribeError as exc:
                logger.warning("Capture failed to start: %s", exc)
                self._emit_error(exc.code, exc.user_message())
                return

            self._session = session
            self._capture_handle = handle
            self._recognizer_done = self._recognizer is None
            self._recognizer_snapshot = ""

            if self._recognizer is not None and audio_queue is not None:
                session_id = session.session_id
                try:
                    self._recognizer.start(
                        audio_queue,
                        lambda event: self._handle_recognition_event(session_id, event),
                    )
                except Exception as exc:
                    logger.warning("Live recognizer failed to start: %s", exc)
                    self._discard_session()
                    self._emit_error(
                        RECOGNIZER_START_FAILED,
                        f"{ERROR_MESSAGES[RECOGNIZER_START_FAILED]} ({exc})",
                    )
                    return
                self._recognizer_running = True

            logger.info("Session %d recording", session.session_id)
            self._transition(SessionState.RECORDING)

    def stop_recording(self) -> None:
        with self._lock:
            if self._state != SessionState.RECORDING or self._session is None:
                return
            session = self._session
            self._transition(SessionState.FINALIZING)

            # Capture first: its end-of-audio sentinel must be queued before
            # the recognizer is told to stop.
            handle = self._capture_handle
            self._capture_handle = None
            try:
                artifact = self._capture.stop(handle)
            except VoiceScribeError as exc:
                logger.warning("Capture failed to stop: %s", exc)
                self._discard_session()
                self._transition(SessionState.IDLE)
                self._emit_error(exc.code, exc.user_message())
                return

            session.audio_artifact = artifact
            self._stop_recognizer()
            if not self._recognizer_done and self._finalize_timeout_s is not None:
                timer = threading.Timer(
                    self._finalize_timeout_s,
                    self._handle_finalize_timeout,
                    args=(session.session_id,),
                )
                timer.daemon = True
                self._finalize_timer = timer
                timer.start()
            self._maybe_finalize()

    def record_new(self) -> None:
        """Discard the current session, outstanding calls included."""
        with self._lock:
            self._discard_session()
            self._transition(SessionState.IDLE)

    def shutdown(self) -> None:
        with self._lock:
            if self._session is not None:
                logger.info("Shutting down session %d", self._session.session_id)
            self._discard_session()
            self._transition(SessionState.IDLE)

    # ------------------------------------------------------------------
    # Remote operations
    # ------------------------------------------------------------------

    def transcribe(self) -> None:
        with self._lock:
            self._request(Operation.TRANSCRIBE)

    def improve(self) -> None:
        with self._lock:
            self._request(Operation.IMPROVE)

    def synthesize(self) -> None:
        with self._lock:
            self._request(Operation.SYNTHESIZE)

    def retry(self) -> None:
        """Re-run the operation that moved the session to FAILED."""
        with self._lock:
            session = self._session
            if self._state != SessionState.FAILED or session is None or session.failed_operation is None:
                raise InvalidStateError("nothing to retry")
            self._request(session.failed_operation)

    def _request(self, operation: Operation) -> None:
        session = self._session
        if session is None or self._state not in RETRYABLE_STATES:
            raise InvalidStateError(f"cannot {operation.value} while {self._state.value}")
        artifact = session.audio_artifact
        if artifact is None:
            raise InvalidStateError("no recording available")

        call: Callable[[], Any]
        if operation is Operation.TRANSCRIBE:
            client = self._transcription_client
            if client is None:
                raise InvalidStateError("no transcription service configured")
            if session.remote_text is not None:
                raise InvalidStateError("this recording is already transcribed")
            call = lambda: client.transcribe(artifact)  # noqa: E731
        elif operation is Operation.IMPROVE:
            client = self._transcription_client
            if client is None:
                raise InvalidStateError("no transcription service configured")
            if session.improved_text is not None:
                raise InvalidStateError("this recording is already improved")
            original = session.remote_text or session.local_final_text or ""
            call = lambda: client.improve(artifact, original)  # noqa: E731
        else:
            synth = self._synthesis_client
            if synth is None:
                raise InvalidStateError("no synthesis service configured")
            if session.synthesized_audio is not None:
                raise InvalidStateError("this transcription is already synthesized")
            text = session.display_text
            if not text.strip():
                raise InvalidInputError("there is no transcription to read aloud")
            call = lambda: synth.synthesize(text)  # noqa: E731

        self._begin(session, operation, call)

    def _begin(self, session: Session, operation: Operation, call: Callable[[], Any]) -> None:
        session.error = None
        session.error_code = ""
        session.failed_operation = None
        self._transition(OPERATION_STATES[operation])
        session_id = session.session_id
        logger.info("Session %d: %s started", session_id, operation.value)
        self._runner(lambda: self._run_remote(session_id, operation, call))

    def _run_remote(self, session_id: int, operation: Operation, call: Callable[[], Any]) -> None:
        try:
            result = call()
        except VoiceScribeError as exc:
            self._handle_remote_failure(session_id, operation, exc)
            return
        except Exception as exc:
            logger.exception("Unexpected error during %s", operation.value)
            self._handle_remote_failure(session_id, operation, VoiceScribeError(str(exc)))
            return
        self._handle_remote_success(session_id, operation, result)

    def _handle_remote_success(self, session_id: int, operation: Operation, result: Any) -> None:
        with self._lock:
            session = self._awaiting(session_id, operation)
            if session is None:
                return
            if operation is Operation.TRANSCRIBE:
                session.remote_text = apply_corrections(result, self._corrections)
            elif operation is Operation.IMPROVE:
                session.improved_text = apply_corrections(result, self._corrections)
            else:
                session.synthesized_audio = result
            logger.info("Session %d: %s finished", session_id, operation.value)
            self._transition(SessionState.READY)

    def _handle_remote_failure(self, session_id: int, operation: Operation, exc: VoiceScribeError) -> None:
        with self._lock:
            session = self._awaiting(session_id, operation)
            if session is None:
                return
            logger.warning("Session %d: %s failed: %s", session_id, operation.value, exc)
            session.error = exc.detail
            session.error_code = exc.code
            session.failed_operation = operation
            self._transition(SessionState.FAILED)
            self._emit_error(exc.code, exc.user_message())

    def _awaiting(self, session_id: int, operation: Operation) -> Optional[Session]:
        session = self._session
        if (
            session is None
            or session.session_id != session_id
            or self._state != OPERATION_STATES[operation]
        ):
            logger.debug("Dropping stale %s result for session %d", operation.value, session_id)
            return None
        return session

    # ------------------------------------------------------------------
    # Recognizer and finalization
    # ------------------------------------------------------------------

    def _handle_recognition_event(self, session_id: int, event: RecognitionEvent) -> None:
        with self._lock:
            session = self._session
            if session is None or session.session_id != session_id or self._recognizer_done:
                logger.debug("Dropping recognizer %s event for session %d", event.kind, session_id)
                return
            kind = event.kind
            if kind == RecognitionKind.INTERIM.value:
                session.pending_interim = event.text
                self._emit_partial(session.interim_text)
            elif kind == RecognitionKind.FINAL.value:
                session.local_fragments.append(event.text)
                session.pending_interim = ""
                self._emit_partial(session.interim_text)
            elif kind == RecognitionKind.ERROR.value:
                session.recognizer_errors += 1
                logger.warning("Live recognizer error (%s): %s", event.code, event.message)
                if session.recognizer_errors >= self._max_recognizer_errors and not session.recognizer_degraded:
                    session.recognizer_degraded = True
                    self._emit_error(RECOGNIZER_ERROR, f"{ERROR_MESSAGES[RECOGNIZER_ERROR]} ({event.message})")
            elif kind == RecognitionKind.END.value:
                self._recognizer_done = True
                self._recognizer_snapshot = "".join(session.local_fragments)
                self._maybe_finalize()

    def _handle_finalize_timeout(self, session_id: int) -> None:
        with self._lock:
            session = self._session
            if (
                session is None
                or session.session_id != session_id
                or self._state != SessionState.FINALIZING
                or self._recognizer_done
            ):
                return
            logger.warning("Live recognizer did not finish in %.1fs; using partial captions", self._finalize_timeout_s)
            session.recognizer_degraded = True
            self._recognizer_done = True
            self._recognizer_snapshot = "".join(session.local_fragments)
            self._maybe_finalize()

    def _maybe_finalize(self) -> None:
        """Publish the local text once both capture and recognizer stopped."""
        session = self._session
        if (
            self._state != SessionState.FINALIZING
            or session is None
            or session.audio_artifact is None
            or not self._recognizer_done
        ):
            return
        self._cancel_finalize_timer()
        session.local_final_text = self._recognizer_snapshot
        session.pending_interim = ""
        client = self._transcription_client
        if self.auto_transcribe and client is not None:
            artifact = session.audio_artifact
            self._begin(session, Operation.TRANSCRIBE, lambda: client.transcribe(artifact))
        else:
            self._transition(SessionState.READY)

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def _discard_session(self) -> None:
        self._cancel_finalize_timer()
        if self._capture_handle is not None:
            handle = self._capture_handle
            self._capture_handle = None
            self._capture.abort(handle)
        self._stop_recognizer()
        self._session = None
        self._recognizer_done = False
        self._recognizer_snapshot = ""

    def _stop_recognizer(self) -> None:
        if not self._recognizer_running or self._recognizer is None:
            return
        self._recognizer_running = False
        try:
            self._recognizer.stop()
        except Exception as exc:
            logger.warning("Live recognizer failed to stop: %s", exc)

    def _cancel_finalize_timer(self) -> None:
        if self._finalize_timer is not None:
            self._finalize_timer.cancel()
            self._finalize_timer = None

    def _emit_partial(self, text: str) -> None:
        if self._on_partial:
            self._on_partial(text)

    def _emit_error(self, code: str, message: str) -> None:
        if self._on_error:
            self._on_error(code, message)

    def _transition(self, to_state: SessionState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        logger.debug("State %s -> %s", from_state.value, to_state.value)
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
