"""Bearer-token POST helper shared by the remote speech clients.

Uses a synchronous ``httpx.Client``; calls run on worker threads started by
the session controller, never on the UI thread.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from errors import EndpointUnavailableError, MissingCredentialsError, NetworkError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 60.0


class InferenceEndpoint:
    """One remote inference URL plus the token used to call it."""

    def __init__(
        self,
        url: str,
        api_token: str,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self._api_token = api_token
        self._client = http_client or httpx.Client(timeout=timeout_s)

    def ensure_credentials(self) -> None:
        """Fail before any network traffic when the token is missing."""
        if not self._api_token or not self._api_token.strip():
            raise MissingCredentialsError()

    def post(self, headers: Optional[dict[str, str]] = None, **kwargs: Any) -> httpx.Response:
        """POST to the endpoint and return the successful response.

        Raises:
            MissingCredentialsError: no token configured.
            EndpointUnavailableError: non-2xx status, with status and body.
            NetworkError: transport failure or timeout.
        """
        self.ensure_credentials()
        all_headers = {"Authorization": f"Bearer {self._api_token}"}
        if headers:
            all_headers.update(headers)
        try:
            resp = self._client.post(self.url, headers=all_headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"request to {self.url} timed out") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"request to {self.url} failed: {exc}") from exc

        if not resp.is_success:
            body = resp.text
            logger.error("Inference endpoint %s returned %d: %s", self.url, resp.status_code, body)
            raise EndpointUnavailableError(resp.status_code, body)
        return resp

    def close(self) -> None:
        self._client.close()
