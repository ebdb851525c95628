from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from queue import Queue
from typing import Callable
from unittest.mock import MagicMock, patch

import pytest

from errors import (
    ENDPOINT_UNAVAILABLE,
    MISSING_CREDENTIALS,
    PERMISSION_DENIED,
    RECOGNIZER_ERROR,
    RECOGNIZER_START_FAILED,
    EndpointUnavailableError,
    InvalidInputError,
    InvalidStateError,
    MissingCredentialsError,
    PermissionDeniedError,
)
from models import (
    AudioArtifact,
    AudioFrame,
    CaptureHandle,
    Operation,
    RecognitionEvent,
    RecognitionKind,
    SessionState,
)
from recognizer import DashscopeStreamingRecognizer
from session_controller import SessionController

WAV = AudioArtifact(data=b"RIFF-fake", mime_type="audio/wav")


class FakeCapture:
    def __init__(self, fail_with: Exception | None = None) -> None:
        self.fail_with = fail_with
        self.starts = 0
        self.stops = 0
        self.aborts = 0
        self.handle: CaptureHandle | None = None
        self.queue: Queue[AudioFrame | None] | None = None

    def start(self, audio_queue=None) -> CaptureHandle:  # noqa: ANN001
        if self.fail_with is not None:
            raise self.fail_with
        self.starts += 1
        self.queue = audio_queue
        self.handle = CaptureHandle(capture_id=self.starts)
        return self.handle

    def stop(self, handle: CaptureHandle) -> AudioArtifact:
        if handle != self.handle:
            raise InvalidStateError("not active")
        self.handle = None
        self.stops += 1
        return WAV

    def abort(self, handle: CaptureHandle) -> None:
        if handle != self.handle:
            return
        self.handle = None
        self.aborts += 1

    @property
    def releases(self) -> int:
        return self.stops + self.aborts


class TailCapture(FakeCapture):
    """Queues the last audio chunks and the end-of-audio sentinel on stop."""

    def __init__(self, tail: list[bytes]) -> None:
        super().__init__()
        self.tail = tail

    def stop(self, handle: CaptureHandle) -> AudioArtifact:
        assert self.queue is not None
        for chunk in self.tail:
            self.queue.put(_frame(chunk))
        self.queue.put(None)
        return super().stop(handle)


class ScriptedEngine:
    """Stands in for dashscope Recognition: each frame comes back as a sentence."""

    def __init__(self, callback, flush_delay_s: float = 0.0) -> None:  # noqa: ANN001
        self.callback = callback
        self.flush_delay_s = flush_delay_s

    def start(self) -> None:
        pass

    def send_audio_frame(self, data: bytes) -> None:
        result = MagicMock()
        result.get_sentence.return_value = {"text": data.decode(), "sentence_end": True}
        self.callback.on_event(result)

    def stop(self) -> None:
        time.sleep(self.flush_delay_s)


@contextmanager
def scripted_dashscope(flush_delay_s: float = 0.0):  # noqa: ANN201
    def factory(callback, **kwargs) -> ScriptedEngine:  # noqa: ANN001, ANN003
        return ScriptedEngine(callback, flush_delay_s)

    with patch("recognizer.dashscope"), patch("recognizer.Recognition", factory), patch(
        "recognizer.RecognitionResult"
    ) as result_cls:
        result_cls.is_sentence_end.side_effect = lambda sentence: sentence["sentence_end"]
        yield


def _frame(data: bytes) -> AudioFrame:
    return AudioFrame(pcm16_bytes=data, sample_rate=16000, channels=1, timestamp_ms=0)


class FakeRecognizer:
    def __init__(self, end_on_stop: bool = False, fail_start: bool = False) -> None:
        self.on_event = None
        self.started = 0
        self.stopped = 0
        self.end_on_stop = end_on_stop
        self.fail_start = fail_start

    def start(self, audio_queue, on_event) -> None:  # noqa: ANN001
        if self.fail_start:
            raise RuntimeError("engine unavailable")
        self.started += 1
        self.on_event = on_event

    def stop(self) -> None:
        self.stopped += 1
        if self.end_on_stop:
            self.end()

    def emit(self, kind: RecognitionKind, text: str = "", message: str = "") -> None:
        assert self.on_event is not None
        self.on_event(RecognitionEvent(kind=kind.value, text=text, message=message))

    def end(self) -> None:
        self.emit(RecognitionKind.END)


class FakeTranscriptionClient:
    def __init__(self, text: str = "hi there", improved: str = "hi there, friend") -> None:
        self.text = text
        self.improved = improved
        self.errors: list[Exception] = []
        self.calls: list[tuple[str, object]] = []

    def transcribe(self, artifact: AudioArtifact) -> str:
        self.calls.append(("transcribe", artifact))
        if self.errors:
            raise self.errors.pop(0)
        return self.text

    def improve(self, artifact: AudioArtifact, original_text: str) -> str:
        self.calls.append(("improve", original_text))
        if self.errors:
            raise self.errors.pop(0)
        return self.improved


class FakeSynthesisClient:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def synthesize(self, text: str) -> AudioArtifact:
        self.calls.append(text)
        return AudioArtifact(data=b"fLaC", mime_type="audio/flac")


class DeferredRunner:
    """Holds remote jobs until the test releases them."""

    def __init__(self) -> None:
        self.jobs: list[Callable[[], None]] = []

    def __call__(self, job: Callable[[], None]) -> None:
        self.jobs.append(job)

    def run_all(self) -> None:
        jobs, self.jobs = self.jobs, []
        for job in jobs:
            job()


def run_now(job: Callable[[], None]) -> None:
    job()


def make_controller(**kwargs) -> SessionController:  # noqa: ANN003
    kwargs.setdefault("capture", FakeCapture())
    kwargs.setdefault("finalize_timeout_s", None)
    kwargs.setdefault("runner", run_now)
    return SessionController(**kwargs)


def test_happy_path_auto_transcribes_to_ready() -> None:
    capture = FakeCapture()
    recognizer = FakeRecognizer(end_on_stop=True)
    client = FakeTranscriptionClient()
    transitions: list[tuple[SessionState, SessionState]] = []

    controller = make_controller(
        capture=capture,
        recognizer=recognizer,
        transcription_client=client,
        on_state_change=lambda f, t: transitions.append((f, t)),
    )
    controller.start_recording()
    recognizer.emit(RecognitionKind.FINAL, "hello there")
    controller.stop_recording()

    session = controller.session
    assert controller.state == SessionState.READY
    assert session.audio_artifact == WAV
    assert session.local_final_text == "hello there"
    assert session.remote_text == "hi there"
    assert session.display_text == "hi there"
    assert capture.releases == 1
    assert recognizer.stopped == 1
    assert transitions == [
        (SessionState.IDLE, SessionState.RECORDING),
        (SessionState.RECORDING, SessionState.FINALIZING),
        (SessionState.FINALIZING, SessionState.REMOTE_PROCESSING),
        (SessionState.REMOTE_PROCESSING, SessionState.READY),
    ]


def test_interim_then_final_fragment_scenario() -> None:
    recognizer = FakeRecognizer()
    partials: list[str] = []
    controller = make_controller(recognizer=recognizer, on_partial=partials.append, auto_transcribe=False)

    controller.start_recording()
    recognizer.emit(RecognitionKind.INTERIM, "hel")
    recognizer.emit(RecognitionKind.INTERIM, "hello ")
    recognizer.emit(RecognitionKind.FINAL, "hello world")
    controller.stop_recording()
    recognizer.end()

    assert partials == ["hel", "hello ", "hello world"]
    assert controller.session.local_final_text == "hello world"
    assert controller.state == SessionState.READY


@pytest.mark.parametrize("end_first", [True, False])
def test_local_final_text_is_concatenation_regardless_of_stop_order(end_first: bool) -> None:
    recognizer = FakeRecognizer()
    controller = make_controller(recognizer=recognizer, auto_transcribe=False)

    controller.start_recording()
    recognizer.emit(RecognitionKind.FINAL, "one ")
    recognizer.emit(RecognitionKind.INTERIM, "tw")
    recognizer.emit(RecognitionKind.FINAL, "two ")

    if end_first:
        recognizer.emit(RecognitionKind.FINAL, "three")
        recognizer.end()
        assert controller.state == SessionState.RECORDING
        assert controller.session.local_final_text is None
        controller.stop_recording()
    else:
        controller.stop_recording()
        assert controller.state == SessionState.FINALIZING
        assert controller.session.local_final_text is None
        # Engine flushes the last sentence after stop was signalled.
        recognizer.emit(RecognitionKind.FINAL, "three")
        recognizer.end()

    assert controller.session.local_final_text == "one two three"
    assert controller.state == SessionState.READY
    assert recognizer.stopped == 1


def test_fragments_after_end_are_ignored() -> None:
    recognizer = FakeRecognizer()
    controller = make_controller(recognizer=recognizer, auto_transcribe=False)

    controller.start_recording()
    recognizer.emit(RecognitionKind.FINAL, "kept")
    controller.stop_recording()
    recognizer.end()
    recognizer.emit(RecognitionKind.FINAL, " late")

    assert controller.session.local_final_text == "kept"


def test_without_recognizer_finalizes_on_capture_stop() -> None:
    controller = make_controller(auto_transcribe=False)

    controller.start_recording()
    controller.stop_recording()

    assert controller.state == SessionState.READY
    assert controller.session.local_final_text == ""
    assert controller.session.audio_artifact == WAV


def test_user_gated_transcription() -> None:
    client = FakeTranscriptionClient()
    controller = make_controller(transcription_client=client, auto_transcribe=False)

    controller.start_recording()
    controller.stop_recording()
    assert controller.state == SessionState.READY
    assert client.calls == []

    controller.transcribe()

    assert controller.state == SessionState.READY
    assert controller.session.remote_text == "hi there"
    with pytest.raises(InvalidStateError):
        controller.transcribe()


def test_endpoint_failure_moves_to_failed_and_keeps_artifacts() -> None:
    recognizer = FakeRecognizer(end_on_stop=True)
    client = FakeTranscriptionClient()
    client.errors.append(EndpointUnavailableError(500, "overloaded"))
    errors: list[tuple[str, str]] = []

    controller = make_controller(
        recognizer=recognizer,
        transcription_client=client,
        on_error=lambda c, m: errors.append((c, m)),
    )
    controller.start_recording()
    recognizer.emit(RecognitionKind.FINAL, "hello")
    controller.stop_recording()

    session = controller.session
    assert controller.state == SessionState.FAILED
    assert session.error_code == ENDPOINT_UNAVAILABLE
    assert "500" in session.error and "overloaded" in session.error
    assert session.failed_operation is Operation.TRANSCRIBE
    assert session.local_final_text == "hello"
    assert session.audio_artifact == WAV
    assert session.remote_text is None
    assert errors[0][0] == ENDPOINT_UNAVAILABLE
    assert "500" in errors[0][1]


def test_retry_re_enters_failed_operation() -> None:
    client = FakeTranscriptionClient()
    client.errors.append(EndpointUnavailableError(503, "loading"))
    controller = make_controller(transcription_client=client)

    controller.start_recording()
    controller.stop_recording()
    assert controller.state == SessionState.FAILED

    controller.retry()

    assert controller.state == SessionState.READY
    assert controller.session.remote_text == "hi there"
    assert controller.session.error is None
    assert len(client.calls) == 2


def test_retry_outside_failed_raises() -> None:
    controller = make_controller()
    with pytest.raises(InvalidStateError):
        controller.retry()


def test_missing_credentials_is_reported_as_configuration_error() -> None:
    client = FakeTranscriptionClient()
    client.errors.append(MissingCredentialsError())
    errors: list[tuple[str, str]] = []
    controller = make_controller(transcription_client=client, on_error=lambda c, m: errors.append((c, m)))

    controller.start_recording()
    controller.stop_recording()

    assert controller.state == SessionState.FAILED
    assert errors[0][0] == MISSING_CREDENTIALS
    assert "Settings" in errors[0][1]


def test_stale_remote_result_never_touches_new_session() -> None:
    runner = DeferredRunner()
    client = FakeTranscriptionClient(text="old result")
    controller = make_controller(transcription_client=client, runner=runner)

    controller.start_recording()
    controller.stop_recording()
    assert controller.state == SessionState.REMOTE_PROCESSING
    first_id = controller.session.session_id

    controller.record_new()
    controller.start_recording()
    second = controller.session
    assert second.session_id != first_id

    runner.run_all()

    assert controller.state == SessionState.RECORDING
    assert second.remote_text is None


def test_stale_remote_failure_is_dropped_after_new_session_finishes() -> None:
    runner = DeferredRunner()
    client = FakeTranscriptionClient()
    client.errors.append(EndpointUnavailableError(500, "overloaded"))
    errors: list[tuple[str, str]] = []
    controller = make_controller(
        transcription_client=client,
        runner=runner,
        auto_transcribe=True,
        on_error=lambda c, m: errors.append((c, m)),
    )

    controller.start_recording()
    controller.stop_recording()
    stale_job = runner.jobs.pop()

    controller.start_recording()  # implicit record new
    controller.stop_recording()
    assert controller.state == SessionState.REMOTE_PROCESSING

    stale_job()

    assert controller.state == SessionState.REMOTE_PROCESSING
    assert controller.session.error is None
    assert errors == []


def test_improve_uses_remote_text_and_applies_corrections() -> None:
    client = FakeTranscriptionClient(text="a glass of wader", improved="a glass of Wader please")
    controller = make_controller(transcription_client=client, corrections={"wader": "water"})

    controller.start_recording()
    controller.stop_recording()
    controller.improve()

    session = controller.session
    assert client.calls[-1] == ("improve", "a glass of water")
    assert session.remote_text == "a glass of water"
    assert session.improved_text == "a glass of water please"
    assert session.display_text == "a glass of water please"
    assert controller.state == SessionState.READY


def test_improve_failure_keeps_prior_text() -> None:
    client = FakeTranscriptionClient()
    controller = make_controller(transcription_client=client)

    controller.start_recording()
    controller.stop_recording()
    client.errors.append(EndpointUnavailableError(502, "bad gateway"))
    controller.improve()

    assert controller.state == SessionState.FAILED
    assert controller.session.failed_operation is Operation.IMPROVE
    assert controller.session.remote_text == "hi there"


def test_synthesize_sets_audio_once() -> None:
    synth = FakeSynthesisClient()
    controller = make_controller(transcription_client=FakeTranscriptionClient(), synthesis_client=synth)

    controller.start_recording()
    controller.stop_recording()
    controller.synthesize()

    assert synth.calls == ["hi there"]
    assert controller.session.synthesized_audio.mime_type == "audio/flac"
    assert controller.state == SessionState.READY
    with pytest.raises(InvalidStateError):
        controller.synthesize()


def test_synthesize_with_no_text_fails_before_call() -> None:
    synth = FakeSynthesisClient()
    controller = make_controller(synthesis_client=synth, auto_transcribe=False)

    controller.start_recording()
    controller.stop_recording()

    with pytest.raises(InvalidInputError):
        controller.synthesize()
    assert synth.calls == []
    assert controller.state == SessionState.READY


def test_operations_rejected_while_recording() -> None:
    controller = make_controller(transcription_client=FakeTranscriptionClient())
    controller.start_recording()

    with pytest.raises(InvalidStateError):
        controller.transcribe()


def test_capture_permission_denied_stays_idle() -> None:
    capture = FakeCapture(fail_with=PermissionDeniedError("denied by user"))
    recognizer = FakeRecognizer()
    errors: list[tuple[str, str]] = []
    controller = make_controller(capture=capture, recognizer=recognizer, on_error=lambda c, m: errors.append((c, m)))

    controller.start_recording()

    assert controller.state == SessionState.IDLE
    assert controller.session is None
    assert recognizer.started == 0
    assert errors[0][0] == PERMISSION_DENIED


def test_recognizer_start_failure_releases_capture() -> None:
    capture = FakeCapture()
    errors: list[tuple[str, str]] = []
    controller = make_controller(
        capture=capture,
        recognizer=FakeRecognizer(fail_start=True),
        on_error=lambda c, m: errors.append((c, m)),
    )

    controller.start_recording()

    assert controller.state == SessionState.IDLE
    assert capture.aborts == 1
    assert capture.handle is None
    assert errors[0][0] == RECOGNIZER_START_FAILED


def test_recognizer_errors_are_not_fatal_until_degraded() -> None:
    recognizer = FakeRecognizer()
    errors: list[tuple[str, str]] = []
    controller = make_controller(
        recognizer=recognizer,
        max_recognizer_errors=2,
        auto_transcribe=False,
        on_error=lambda c, m: errors.append((c, m)),
    )

    controller.start_recording()
    recognizer.emit(RecognitionKind.ERROR, message="glitch")
    assert controller.state == SessionState.RECORDING
    assert errors == []
    assert controller.session.recognizer_degraded is False

    recognizer.emit(RecognitionKind.ERROR, message="glitch again")
    recognizer.emit(RecognitionKind.ERROR, message="and again")

    assert controller.state == SessionState.RECORDING
    assert controller.session.recognizer_degraded is True
    assert [code for code, _ in errors] == [RECOGNIZER_ERROR]


def test_record_new_while_recording_releases_once() -> None:
    capture = FakeCapture()
    recognizer = FakeRecognizer()
    controller = make_controller(capture=capture, recognizer=recognizer)

    controller.start_recording()
    controller.record_new()
    controller.record_new()

    assert controller.state == SessionState.IDLE
    assert controller.session is None
    assert capture.releases == 1
    assert recognizer.stopped == 1


def test_late_recognizer_end_after_record_new_is_dropped() -> None:
    recognizer = FakeRecognizer()
    controller = make_controller(recognizer=recognizer, auto_transcribe=False)

    controller.start_recording()
    old_callback = recognizer.on_event
    controller.stop_recording()
    controller.record_new()
    controller.start_recording()

    old_callback(RecognitionEvent(kind=RecognitionKind.FINAL.value, text="stale"))
    old_callback(RecognitionEvent(kind=RecognitionKind.END.value))

    assert controller.state == SessionState.RECORDING
    assert controller.session.local_fragments == []


def test_start_stop_idempotent() -> None:
    capture = FakeCapture()
    controller = make_controller(capture=capture, auto_transcribe=False)

    controller.start_recording()
    controller.start_recording()  # should be no-op
    controller.stop_recording()
    controller.stop_recording()  # should be no-op

    assert capture.starts == 1
    assert capture.stops == 1
    assert controller.state == SessionState.READY


def test_start_from_ready_resets_session() -> None:
    controller = make_controller(transcription_client=FakeTranscriptionClient())

    controller.start_recording()
    controller.stop_recording()
    first = controller.session
    controller.start_recording()

    assert controller.state == SessionState.RECORDING
    assert controller.session is not first
    assert controller.session.remote_text is None
    assert controller.session.audio_artifact is None


def test_shutdown_releases_resources() -> None:
    capture = FakeCapture()
    recognizer = FakeRecognizer()
    controller = make_controller(capture=capture, recognizer=recognizer)

    controller.start_recording()
    controller.shutdown()

    assert controller.state == SessionState.IDLE
    assert capture.aborts == 1
    assert recognizer.stopped == 1


def test_finalize_timeout_uses_accumulated_fragments() -> None:
    recognizer = FakeRecognizer()
    done = threading.Event()
    controller = make_controller(
        recognizer=recognizer,
        auto_transcribe=False,
        finalize_timeout_s=0.05,
        on_state_change=lambda f, t: done.set() if t == SessionState.READY else None,
    )

    controller.start_recording()
    recognizer.emit(RecognitionKind.FINAL, "partial only")
    controller.stop_recording()

    assert done.wait(timeout=2.0)
    assert controller.session.local_final_text == "partial only"
    assert controller.session.recognizer_degraded is True


def test_default_runner_completes_in_background() -> None:
    done = threading.Event()
    controller = SessionController(
        capture=FakeCapture(),
        transcription_client=FakeTranscriptionClient(),
        finalize_timeout_s=None,
        on_state_change=lambda f, t: done.set() if t == SessionState.READY else None,
    )

    controller.start_recording()
    controller.stop_recording()

    assert done.wait(timeout=2.0)
    deadline = time.time() + 1.0
    while controller.session.remote_text is None and time.time() < deadline:
        time.sleep(0.01)
    assert controller.session.remote_text == "hi there"


def test_live_recognizer_keeps_audio_queued_at_stop() -> None:
    capture = TailCapture([b"three ", b"four"])
    ready = threading.Event()
    with scripted_dashscope():
        controller = make_controller(
            capture=capture,
            recognizer=DashscopeStreamingRecognizer(api_key="test-key"),
            auto_transcribe=False,
            on_state_change=lambda f, t: ready.set() if t == SessionState.READY else None,
        )
        controller.start_recording()
        capture.queue.put(_frame(b"one "))
        capture.queue.put(_frame(b"two "))
        controller.stop_recording()

        assert ready.wait(timeout=3.0)

    assert controller.session.local_final_text == "one two three four"
    assert controller.session.recognizer_degraded is False


def test_record_again_while_previous_recognizer_is_flushing() -> None:
    capture = TailCapture([b"first"])
    errors: list[tuple[str, str]] = []
    ready = threading.Event()
    with scripted_dashscope(flush_delay_s=0.5):
        controller = make_controller(
            capture=capture,
            recognizer=DashscopeStreamingRecognizer(api_key="test-key"),
            auto_transcribe=False,
            on_error=lambda code, message: errors.append((code, message)),
            on_state_change=lambda f, t: ready.set() if t == SessionState.READY else None,
        )
        controller.start_recording()
        controller.stop_recording()
        time.sleep(0.1)
        controller.record_new()
        controller.start_recording()

        assert controller.state == SessionState.RECORDING
        assert errors == []

        # The first run's late end event belongs to a discarded session.
        time.sleep(0.6)
        assert controller.state == SessionState.RECORDING
        assert controller.session.local_final_text is None

        capture.tail = [b"second"]
        controller.stop_recording()
        assert ready.wait(timeout=3.0)

    assert controller.session.local_final_text == "second"
