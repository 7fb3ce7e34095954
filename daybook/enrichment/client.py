"""
HTTP client for the hosted transcription/extraction service.

Only one call is needed: asking the service to (re)process a recording. The
service answers immediately; completion is observed by polling the recording
row (see ProcessingWatcher), never through this client.
"""
from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlparse

import httpx

from ..errors import EnrichmentError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
TRANSCRIBE_PATH = "/api/voice/transcribe"
_LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


def validate_api_url(api_url: str) -> str:
    """Normalized URL. Raises ValueError for plain HTTP to a non-local host."""
    url = api_url.rstrip("/")
    # Bearer tokens are never sent in cleartext to a remote host
    if not url.startswith("https://"):
        host = urlparse(url).hostname or ""
        if host not in _LOCAL_HOSTS:
            raise ValueError(
                f"Enrichment API URL must use HTTPS (got {url}). "
                "Use localhost for local development."
            )
    return url


class EnrichmentClient:
    """Async EnrichmentService over HTTP."""

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_url = validate_api_url(api_url)

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = httpx.AsyncClient(
            base_url=self._api_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @property
    def api_url(self) -> str:
        return self._api_url

    async def request_reprocess(self, recording_id: str, audio_url: str) -> None:
        """POST {entry_id, audio_url} to the transcribe endpoint."""
        payload = {"entry_id": recording_id, "audio_url": audio_url}
        try:
            resp = await self._client.post(TRANSCRIBE_PATH, json=payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise EnrichmentError(
                f"Reprocess rejected: {e.response.status_code} {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise EnrichmentError(f"Reprocess request failed: {e}") from e
        logger.info(f"Reprocess requested for recording {recording_id}")

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "EnrichmentClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
