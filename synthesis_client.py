"""Remote text-to-speech over a Hugging Face style inference endpoint."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from errors import InvalidInputError, UnexpectedResponseShapeError
from http_endpoint import DEFAULT_TIMEOUT_S, InferenceEndpoint
from models import AudioArtifact

logger = logging.getLogger(__name__)

DEFAULT_AUDIO_MIME = "audio/flac"


class HuggingFaceSynthesisClient:
    def __init__(
        self,
        api_token: str,
        synthesize_url: str,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._endpoint = InferenceEndpoint(
            synthesize_url, api_token, timeout_s=timeout_s, http_client=http_client
        )

    def synthesize(self, text: str) -> AudioArtifact:
        if not text or not text.strip():
            raise InvalidInputError("text to synthesize is empty")
        self._endpoint.ensure_credentials()
        logger.info("Synthesizing %d chars", len(text))
        resp = self._endpoint.post(json={"inputs": text})
        if not resp.content:
            raise UnexpectedResponseShapeError("synthesis response has no audio")
        mime = resp.headers.get("content-type", "").split(";")[0].strip()
        if not mime.startswith("audio/"):
            mime = DEFAULT_AUDIO_MIME
        return AudioArtifact(data=resp.content, mime_type=mime)

    def close(self) -> None:
        self._endpoint.close()
