"""Remote transcription over a Hugging Face style inference endpoint.

Audio is sent as raw binary: the request body is the artifact's bytes and
``Content-Type`` is its MIME type.  The improvement pass sends JSON with the
audio as a base64 data URI next to the original transcription.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from errors import UnexpectedResponseShapeError
from http_endpoint import DEFAULT_TIMEOUT_S, InferenceEndpoint
from models import AudioArtifact

logger = logging.getLogger(__name__)

TEXT_FIELDS = ("text", "generated_text")


def extract_transcription(payload: Any) -> str:
    """Pull the transcription out of a decoded JSON response.

    Accepts ``{"text": ...}``, ``{"generated_text": ...}`` or a one-element
    list wrapping either.
    """
    if isinstance(payload, list) and len(payload) == 1:
        payload = payload[0]
    if isinstance(payload, dict):
        for name in TEXT_FIELDS:
            value = payload.get(name)
            if isinstance(value, str):
                return value
    raise UnexpectedResponseShapeError(
        f"expected one of {', '.join(TEXT_FIELDS)} in response, got {type(payload).__name__}"
    )


def _json_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError as exc:
        raise UnexpectedResponseShapeError(f"response is not JSON: {resp.text[:200]}") from exc


class HuggingFaceTranscriptionClient:
    def __init__(
        self,
        api_token: str,
        transcribe_url: str,
        improve_url: str = "",
        timeout_s: float = DEFAULT_TIMEOUT_S,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        client = http_client or httpx.Client(timeout=timeout_s)
        self._transcribe = InferenceEndpoint(transcribe_url, api_token, http_client=client)
        self._improve = InferenceEndpoint(improve_url or transcribe_url, api_token, http_client=client)

    def transcribe(self, artifact: AudioArtifact) -> str:
        self._transcribe.ensure_credentials()
        logger.info("Transcribing %d bytes of %s", artifact.size, artifact.mime_type)
        resp = self._transcribe.post(
            headers={"Content-Type": artifact.mime_type},
            content=artifact.data,
        )
        return extract_transcription(_json_body(resp)).strip()

    def improve(self, artifact: AudioArtifact, original_text: str) -> str:
        self._improve.ensure_credentials()
        logger.info("Requesting improved transcription (%d chars)", len(original_text))
        resp = self._improve.post(
            json={
                "audioDataUri": artifact.data_uri,
                "originalTranscription": original_text,
            },
        )
        payload = _json_body(resp)
        value = payload.get("improvedTranscription") if isinstance(payload, dict) else None
        if not isinstance(value, str):
            raise UnexpectedResponseShapeError("response is missing improvedTranscription")
        return value.strip()

    def close(self) -> None:
        self._transcribe.close()
