"""Clipboard copy for the finished transcription."""

from __future__ import annotations

import logging

from models import CopyResult

try:
    import pyperclip
except Exception:  # pragma: no cover
    pyperclip = None  # type: ignore

logger = logging.getLogger(__name__)


class ClipboardService:
    def copy_text(self, text: str) -> CopyResult:
        if not text.strip():
            return CopyResult(success=False, reason="empty text")
        if pyperclip is None:
            return CopyResult(success=False, reason="clipboard dependency missing")
        try:
            pyperclip.copy(text)
        except pyperclip.PyperclipException as exc:
            logger.warning("Clipboard copy failed: %s", exc)
            return CopyResult(success=False, reason=str(exc))
        return CopyResult(success=True, reason="ok")
