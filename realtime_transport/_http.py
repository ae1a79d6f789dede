# =============================================================================
# Realtime Transport -- HTTP Client Handling
# =============================================================================
#
# httpx.AsyncClient ownership for the push-stream and polling adapters.  An
# injected client is borrowed and never closed; otherwise the adapter
# creates one lazily and closes it when the adapter is destroyed.
# =============================================================================

from __future__ import annotations

from typing import Mapping

import httpx


def auth_headers(token: str, headers: Mapping[str, str] | None = None) -> dict[str, str]:
    """Custom *headers* plus a bearer ``Authorization`` header when *token* is set."""
    merged = dict(headers or {})
    if token:
        merged["Authorization"] = f"Bearer {token}"
    return merged


class HTTPClientOwner:
    def __init__(
        self,
        client: httpx.AsyncClient | None,
        *,
        with_credentials: bool,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._with_credentials = with_credentials

    def http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        if not self._with_credentials:
            # cookies are only sent when credentials are requested
            self._client.cookies.clear()
        return self._client

    async def aclose(self) -> None:
        client, self._client = self._client, None
        if client is not None and self._owns_client:
            await client.aclose()
