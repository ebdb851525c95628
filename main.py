"""Application entrypoint."""

from __future__ import annotations

import logging
import sys
from typing import Callable

from clipboard_service import ClipboardService
from config import JsonConfigStore
from corrections import add_correction
from errors import VoiceScribeError
from hotkey import ToggleHotkeyAdapter
from models import SessionState
from overlay import OverlayWindow
from player import SoundDevicePlayer
from recognizer import build_local_recognizer
from recorder import SoundDeviceRecorder
from session_controller import SessionController
from synthesis_client import HuggingFaceSynthesisClient
from transcription_client import HuggingFaceTranscriptionClient

try:
    from PySide6.QtCore import QObject, Signal, QSize
    from PySide6.QtGui import QAction, QIcon, QPixmap, QPainter, QColor, QBrush
    from PySide6.QtWidgets import QApplication, QInputDialog, QMenu, QMessageBox, QSystemTrayIcon
except Exception as exc:  # pragma: no cover
    raise SystemExit(f"PySide6 is required to run the desktop app: {exc}")

logger = logging.getLogger(__name__)


def _create_icon(color: str = "#888888", size: int = 22) -> QIcon:
    """Generate a simple circular tray icon with the given color."""
    pixmap = QPixmap(QSize(size, size))
    pixmap.fill(QColor(0, 0, 0, 0))
    painter = QPainter(pixmap)
    painter.setRenderHint(QPainter.Antialiasing, True)
    painter.setBrush(QBrush(QColor(color)))
    painter.setPen(QColor(color))
    painter.drawEllipse(2, 2, size - 4, size - 4)
    painter.end()
    return QIcon(pixmap)


ICON_IDLE = "#888888"
ICON_RECORDING = "#FF4444"
ICON_BUSY = "#4488FF"
ICON_READY = "#44BB66"
ICON_ERROR = "#FF8800"

STATE_LABELS = {
    SessionState.IDLE: "Ready to record",
    SessionState.RECORDING: "Recording...",
    SessionState.FINALIZING: "Finishing recording...",
    SessionState.REMOTE_PROCESSING: "Transcribing...",
    SessionState.IMPROVING: "Improving accuracy...",
    SessionState.SYNTHESIZING: "Synthesizing audio...",
    SessionState.READY: "Done",
    SessionState.FAILED: "Failed",
}


class UIBridge(QObject):
    partial_signal = Signal(str)
    error_signal = Signal(str, str)  # code, message
    state_signal = Signal(str, str)  # from_state, to_state


def build_clients(
    config: JsonConfigStore,
) -> tuple[HuggingFaceTranscriptionClient, HuggingFaceSynthesisClient]:
    token = config.get_api_token()
    transcription = HuggingFaceTranscriptionClient(
        api_token=token,
        transcribe_url=config.get_transcribe_url(),
        improve_url=config.get_improve_url(),
    )
    synthesis = HuggingFaceSynthesisClient(api_token=token, synthesize_url=config.get_synthesize_url())
    return transcription, synthesis


class App:
    def __init__(self) -> None:
        self.app = QApplication(sys.argv)
        self.app.setQuitOnLastWindowClosed(False)
        self.config_store = JsonConfigStore()
        self.overlay = OverlayWindow()
        self.player = SoundDevicePlayer()
        self.clipboard = ClipboardService()
        self.ui = UIBridge()
        self.ui.partial_signal.connect(self._on_partial_ui)
        self.ui.error_signal.connect(self._on_error_ui)
        self.ui.state_signal.connect(self._on_state_change_ui)

        transcription, synthesis = build_clients(self.config_store)
        self.controller = SessionController(
            capture=SoundDeviceRecorder(),
            recognizer=build_local_recognizer(
                api_key=self.config_store.get_dashscope_api_key(),
                enabled=self.config_store.get_live_captions(),
            ),
            transcription_client=transcription,
            synthesis_client=synthesis,
            auto_transcribe=self.config_store.get_auto_transcribe(),
            corrections=self.config_store.get_corrections(),
            on_state_change=self._on_state_change,
            on_partial=self._on_partial,
            on_error=self._on_error,
        )
        self.hotkey = ToggleHotkeyAdapter(hotkey_name=self.config_store.get_hotkey())

        self.tray = QSystemTrayIcon()
        self.tray.setIcon(_create_icon(ICON_IDLE))
        self.tray.setToolTip("Voice Scribe: Ready")
        self._actions: dict[str, QAction] = {}
        self._setup_menu()
        self._refresh_actions()
        self.tray.show()

    def _setup_menu(self) -> None:
        menu = QMenu()
        self._add_action(menu, "record", "Record / Stop", self._toggle_recording)
        self._add_action(menu, "transcribe", "Transcribe", lambda: self._guard(self.controller.transcribe))
        self._add_action(menu, "improve", "Improve Accuracy", lambda: self._guard(self.controller.improve))
        self._add_action(menu, "synthesize", "Synthesize with AI", lambda: self._guard(self.controller.synthesize))
        self._add_action(menu, "play_original", "Play Original Recording", self._play_original)
        self._add_action(menu, "play_synth", "Play Synthesized Audio", self._play_synthesized)
        self._add_action(menu, "copy", "Copy Transcription", self._copy_transcription)
        self._add_action(menu, "retry", "Retry", lambda: self._guard(self.controller.retry))
        self._add_action(menu, "record_new", "Record New", self._record_new)

        menu.addSeparator()
        settings = menu.addMenu("Settings")
        self._add_action(settings, "token", "Set API Token", self._set_api_token)
        self._add_action(settings, "dashscope", "Set Live Caption Key", self._set_dashscope_key)
        captions = self._add_action(settings, "captions", "Live Captions", self._toggle_live_captions)
        captions.setCheckable(True)
        captions.setChecked(self.config_store.get_live_captions())
        for name in ("transcribe", "improve", "synthesize"):
            self._add_action(
                settings,
                f"url_{name}",
                f"Set {name.capitalize()} Endpoint",
                lambda checked=False, n=name: self._set_endpoint_url(n),
            )
        auto = self._add_action(settings, "auto", "Transcribe Automatically", self._toggle_auto_transcribe)
        auto.setCheckable(True)
        auto.setChecked(self.controller.auto_transcribe)
        self._add_action(settings, "hotkey", "Set Hotkey", self._set_hotkey)
        self._add_action(settings, "correction", "Add Word Correction", self._add_correction)

        menu.addSeparator()
        self._add_action(menu, "quit", "Quit", self.quit)
        self._menu = menu
        self.tray.setContextMenu(menu)

    def _add_action(self, menu: QMenu, key: str, label: str, slot: Callable[[], None]) -> QAction:
        action = QAction(label, menu)
        action.triggered.connect(slot)
        menu.addAction(action)
        self._actions[key] = action
        return action

    def _refresh_actions(self) -> None:
        state = self.controller.state
        session = self.controller.session
        settled = state in (SessionState.READY, SessionState.FAILED)
        self._actions["transcribe"].setEnabled(settled and session is not None and session.remote_text is None)
        self._actions["improve"].setEnabled(settled and session is not None and session.improved_text is None)
        self._actions["synthesize"].setEnabled(
            settled and session is not None and session.synthesized_audio is None and bool(session.display_text)
        )
        self._actions["play_original"].setEnabled(session is not None and session.audio_artifact is not None)
        self._actions["play_synth"].setEnabled(session is not None and session.synthesized_audio is not None)
        self._actions["copy"].setEnabled(session is not None and bool(session.display_text))
        self._actions["retry"].setEnabled(state == SessionState.FAILED)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def _set_api_token(self) -> None:
        value, ok = QInputDialog.getText(None, "API Token", "Hugging Face API token")
        if not ok:
            return
        self.config_store.set_api_token(value)
        self.controller.replace_clients(*build_clients(self.config_store))
        QMessageBox.information(None, "Saved", "API token saved and applied.")

    def _set_dashscope_key(self) -> None:
        value, ok = QInputDialog.getText(None, "Live Captions", "DashScope API key")
        if not ok:
            return
        self.config_store.set_dashscope_api_key(value)
        QMessageBox.information(None, "Saved", "Key saved. Restart app to apply.")

    def _toggle_live_captions(self) -> None:
        self.config_store.set_live_captions(self._actions["captions"].isChecked())
        QMessageBox.information(None, "Saved", "Live captions setting saved. Restart app to apply.")

    def _set_endpoint_url(self, name: str) -> None:
        value, ok = QInputDialog.getText(None, "Endpoint", f"{name.capitalize()} endpoint URL")
        if not ok:
            return
        self.config_store.set_endpoint_url(name, value.strip())
        self.controller.replace_clients(*build_clients(self.config_store))

    def _toggle_auto_transcribe(self) -> None:
        enabled = self._actions["auto"].isChecked()
        self.config_store.set_auto_transcribe(enabled)
        self.controller.auto_transcribe = enabled

    def _set_hotkey(self) -> None:
        value, ok = QInputDialog.getText(
            None, "Hotkey", "Use pynput key format, e.g. Key.alt_r"
        )
        if not ok or not value:
            return
        self.config_store.set_hotkey(value)
        QMessageBox.information(None, "Saved", "Hotkey saved. Restart app to apply.")

    def _add_correction(self) -> None:
        incorrect, ok = QInputDialog.getText(None, "Personalize", "Word the app gets wrong (e.g. wader)")
        if not ok:
            return
        correct, ok = QInputDialog.getText(None, "Personalize", "Correct word (e.g. water)")
        if not ok:
            return
        try:
            corrections = add_correction(self.config_store.get_corrections(), incorrect, correct)
        except VoiceScribeError as exc:
            QMessageBox.warning(None, "Missing Fields", exc.user_message())
            return
        self.config_store.set_corrections(corrections)
        self.controller.set_corrections(corrections)
        QMessageBox.information(
            None, "Correction Added", f'"{incorrect.strip()}" will now be replaced with "{correct.strip()}".'
        )

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _guard(self, action: Callable[[], None]) -> None:
        try:
            action()
        except VoiceScribeError as exc:
            self.overlay.show_error(exc.user_message())

    def _toggle_recording(self) -> None:
        if self.controller.state == SessionState.RECORDING:
            self.controller.stop_recording()
        else:
            self.player.stop()
            self.controller.start_recording()

    def _record_new(self) -> None:
        self.player.stop()
        self.controller.record_new()
        self.overlay.hide_with_delay(0)

    def _play_original(self) -> None:
        session = self.controller.session
        if session is not None and session.audio_artifact is not None:
            self._guard(lambda: self.player.play(session.audio_artifact))

    def _play_synthesized(self) -> None:
        session = self.controller.session
        if session is not None and session.synthesized_audio is not None:
            self._guard(lambda: self.player.play(session.synthesized_audio))

    def _copy_transcription(self) -> None:
        session = self.controller.session
        if session is None:
            return
        result = self.clipboard.copy_text(session.display_text)
        if result.success:
            self.tray.showMessage("Voice Scribe", "Transcription copied.")
        else:
            self.overlay.show_error(f"Copy failed: {result.reason}")

    # ------------------------------------------------------------------
    # Callbacks (called from worker threads → emit signals for UI thread)
    # ------------------------------------------------------------------

    def _on_state_change(self, from_state: SessionState, to_state: SessionState) -> None:
        self.ui.state_signal.emit(from_state.value, to_state.value)

    def _on_partial(self, text: str) -> None:
        self.ui.partial_signal.emit(text)

    def _on_error(self, code: str, message: str) -> None:
        self.ui.error_signal.emit(code, message)

    # ------------------------------------------------------------------
    # UI thread handlers (safe for Qt)
    # ------------------------------------------------------------------

    def _on_partial_ui(self, text: str) -> None:
        if self.controller.state == SessionState.RECORDING:
            self.overlay.set_text(text or "🎙️ Listening...")

    def _on_error_ui(self, code: str, message: str) -> None:
        hint = "Retry or Record New from the tray menu." if self.controller.state == SessionState.FAILED else ""
        self.overlay.show_error(message, hint=hint, hide_after_ms=None if hint else 4000)

    def _on_state_change_ui(self, from_state: str, to_state: str) -> None:
        state = SessionState(to_state)
        self.tray.setToolTip(f"Voice Scribe: {STATE_LABELS[state]}")
        session = self.controller.session
        if state == SessionState.RECORDING:
            self.tray.setIcon(_create_icon(ICON_RECORDING))
            hint = "" if self.controller.has_recognizer else "Live captions are off."
            self.overlay.set_text("🎙️ Listening...", hint)
        elif state in (
            SessionState.FINALIZING,
            SessionState.REMOTE_PROCESSING,
            SessionState.IMPROVING,
            SessionState.SYNTHESIZING,
        ):
            self.tray.setIcon(_create_icon(ICON_BUSY))
            self.overlay.set_text(STATE_LABELS[state])
        elif state == SessionState.READY and session is not None:
            self.tray.setIcon(_create_icon(ICON_READY))
            if session.improved_text is not None:
                source = "improved"
            elif session.remote_text is not None:
                source = "AI transcription"
            else:
                source = "live captions"
            self.overlay.show_transcript(session.display_text, source, "Copy, Improve or Synthesize from the tray menu.")
            if SessionState(from_state) == SessionState.SYNTHESIZING:
                self._play_synthesized()
        elif state == SessionState.FAILED:
            self.tray.setIcon(_create_icon(ICON_ERROR))
        elif state == SessionState.IDLE:
            self.tray.setIcon(_create_icon(ICON_IDLE))
        self._refresh_actions()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> int:
        try:
            self.hotkey.start(on_toggle=self._toggle_recording)
        except Exception as exc:
            logger.warning("Hotkey disabled: %s", exc)
            self.overlay.show_error(f"Hotkey disabled: {exc}")
        return self.app.exec()

    def quit(self) -> None:
        self.hotkey.stop()
        self.player.stop()
        self.controller.shutdown()
        self.app.quit()


def main() -> int:
    config = JsonConfigStore()
    logging.basicConfig(
        level=getattr(logging, config.get_log_level(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = App()
    return app.run()


if __name__ == "__main__":
    raise SystemExit(main())
