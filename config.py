"""Simple JSON-based config store."""

from __future__ import annotations

import json
import os
from pathlib import Path

DEFAULT_TRANSCRIBE_URL = "https://api-inference.huggingface.co/models/openai/whisper-large-v3"
DEFAULT_SYNTHESIZE_URL = "https://api-inference.huggingface.co/models/facebook/mms-tts-eng"
TOKEN_ENV_VARS = ("HUGGING_FACE_API_TOKEN", "HUGGINGFACE_API_KEY")


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "voice_scribe" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    # -- secrets --

    def get_api_token(self) -> str:
        data = self._read_all()
        token = str(data.get("api_token", ""))
        if token:
            return token
        for name in TOKEN_ENV_VARS:
            value = os.getenv(name, "")
            if value:
                return value
        return ""

    def set_api_token(self, token: str) -> None:
        self._set("api_token", token)

    def get_dashscope_api_key(self) -> str:
        data = self._read_all()
        return str(data.get("dashscope_api_key", "")) or os.getenv("DASHSCOPE_API_KEY", "")

    def set_dashscope_api_key(self, key: str) -> None:
        self._set("dashscope_api_key", key)

    # -- endpoints --

    def get_transcribe_url(self) -> str:
        return str(self._read_all().get("transcribe_url") or DEFAULT_TRANSCRIBE_URL)

    def get_improve_url(self) -> str:
        return str(self._read_all().get("improve_url", ""))

    def get_synthesize_url(self) -> str:
        return str(self._read_all().get("synthesize_url") or DEFAULT_SYNTHESIZE_URL)

    def set_endpoint_url(self, name: str, url: str) -> None:
        if name not in ("transcribe", "improve", "synthesize"):
            raise ValueError(f"unknown endpoint: {name}")
        self._set(f"{name}_url", url)

    # -- behavior --

    def get_auto_transcribe(self) -> bool:
        return bool(self._read_all().get("auto_transcribe", True))

    def set_auto_transcribe(self, enabled: bool) -> None:
        self._set("auto_transcribe", bool(enabled))

    def get_live_captions(self) -> bool:
        return bool(self._read_all().get("live_captions", True))

    def set_live_captions(self, enabled: bool) -> None:
        self._set("live_captions", bool(enabled))

    def get_hotkey(self) -> str:
        data = self._read_all()
        return str(data.get("hotkey", "Key.alt_r"))

    def set_hotkey(self, hotkey: str) -> None:
        self._set("hotkey", hotkey)

    def get_log_level(self) -> str:
        return str(self._read_all().get("log_level", "INFO")).upper()

    # -- personalization --

    def get_corrections(self) -> dict[str, str]:
        raw = self._read_all().get("corrections", {})
        if not isinstance(raw, dict):
            return {}
        return {str(k): str(v) for k, v in raw.items()}

    def set_corrections(self, corrections: dict[str, str]) -> None:
        self._set("corrections", dict(corrections))

    def _set(self, key: str, value: object) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
