from __future__ import annotations

from typing import Any

import httpx

from vocab_relay.app.core.errors import APIError, UpstreamError


class ExternalDataClient:
    """Passthrough GET to a keyed third-party endpoint; the key stays server-side."""

    def __init__(self, url: str, api_key: str, timeout_seconds: int = 30, client: httpx.AsyncClient | None = None):
        self.url = url
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    @property
    def configured(self) -> bool:
        return bool(self.url and self.api_key)

    async def fetch(self) -> Any:
        if not self.configured:
            raise APIError(
                code="UPSTREAM_NOT_CONFIGURED",
                message="External data source is not configured",
                status_code=503,
            )
        try:
            response = await self._client.get(self.url, params={"key": self.api_key})
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            # Never echo the upstream body: it may contain the key.
            raise UpstreamError(exc.response.status_code, "External data request failed") from exc
        except httpx.ConnectError as exc:
            raise UpstreamError(503, "External data source is unreachable") from exc
        except httpx.TimeoutException as exc:
            raise UpstreamError(504, "External data request timed out") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(502, "External data request failed") from exc
        except ValueError as exc:
            raise UpstreamError(502, "External data source returned invalid JSON") from exc

    async def aclose(self) -> None:
        await self._client.aclose()
