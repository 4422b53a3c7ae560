import json
import logging
import os
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

# ----- Config -----
RELAY_ENDPOINT = os.getenv("CELEBRA_RELAY_URL", "http://127.0.0.1:5000/api/gemini")
DEFAULT_TIMEOUT = float(os.getenv("CELEBRA_RELAY_TIMEOUT", "60"))


class RelayError(Exception):
    """The relay could not be reached or answered with a non-2xx status."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RelayClient:
    """Async client for the ``/api/gemini`` relay."""

    def __init__(
        self,
        endpoint: str = RELAY_ENDPOINT,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint = endpoint
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def send(self, payload: dict) -> Any:
        """POST ``payload`` and return the decoded JSON body (or raw text)."""
        try:
            resp = await self._client.post(self.endpoint, json=payload)
        except httpx.HTTPError as exc:
            raise RelayError(f"Network error: {exc}") from exc

        text = resp.text
        if not resp.is_success:
            logger.debug("Relay answered %s: %s", resp.status_code, text[:500])
            raise RelayError(f"HTTP {resp.status_code} — {text}", status=resp.status_code)

        try:
            return json.loads(text)
        except ValueError:
            return text

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "RelayClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
