from __future__ import annotations

import json
from typing import Any

import httpx

from vocab_relay.app.core.errors import APIError, UpstreamError
from vocab_relay.app.providers.types import ProviderHealth


def _parse_retry_after(response: httpx.Response) -> float | None:
    header = response.headers.get("Retry-After")
    if header:
        try:
            return max(0.0, float(header))
        except ValueError:
            pass

    # Gemini reports the delay as RetryInfo, e.g. {"retryDelay": "12s"}
    try:
        details = response.json().get("error", {}).get("details", [])
    except (ValueError, AttributeError):
        return None
    for item in details:
        delay = item.get("retryDelay") if isinstance(item, dict) else None
        if isinstance(delay, str) and delay.endswith("s"):
            try:
                return max(0.0, float(delay[:-1]))
            except ValueError:
                continue
    return None


def _upstream_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return response.reason_phrase or "Upstream request failed"


class GeminiProvider:
    """Client for the Generative Language ``generateContent`` endpoint."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str,
        timeout_seconds: int = 60,
        client: httpx.AsyncClient | None = None,
    ):
        self.provider_id = "gemini"
        self.display_name = "Google Gemini"
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._client = client or httpx.AsyncClient(timeout=self.timeout_seconds)

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self.api_key}

    def _ensure_configured(self) -> None:
        if not self.api_key:
            raise APIError(
                code="UPSTREAM_NOT_CONFIGURED",
                message="Upstream API key is not configured",
                status_code=503,
            )

    def _map_error(self, exc: Exception) -> UpstreamError:
        if isinstance(exc, httpx.HTTPStatusError):
            response = exc.response
            retry_after = _parse_retry_after(response) if response.status_code == 429 else None
            return UpstreamError(response.status_code, _upstream_message(response), retry_after)
        if isinstance(exc, httpx.ConnectError):
            return UpstreamError(503, "Upstream API is unreachable")
        if isinstance(exc, httpx.TimeoutException):
            return UpstreamError(504, "Upstream request timed out")
        return UpstreamError(502, "Upstream communication failed")

    def build_request(self, prompt: str, response_schema: dict) -> dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": response_schema,
            },
        }

    async def generate_json(self, prompt: str, response_schema: dict) -> Any:
        """Send one ``generateContent`` call and return the decoded JSON answer."""
        self._ensure_configured()
        try:
            response = await self._client.post(
                f"{self.base_url}/models/{self.model}:generateContent",
                headers=self._headers(),
                json=self.build_request(prompt, response_schema),
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise self._map_error(exc) from exc
        except ValueError as exc:
            raise UpstreamError(502, "Upstream returned invalid JSON") from exc

        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise UpstreamError(502, "Upstream returned no candidate text") from exc
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise UpstreamError(502, "Upstream candidate is not valid JSON") from exc

    async def healthcheck(self) -> ProviderHealth:
        if not self.api_key:
            return ProviderHealth(ok=False, detail="Upstream API key is not configured")
        try:
            response = await self._client.get(
                f"{self.base_url}/models/{self.model}", headers=self._headers()
            )
            response.raise_for_status()
            return ProviderHealth(ok=True)
        except httpx.HTTPError as exc:
            return ProviderHealth(ok=False, detail=self._map_error(exc).message)

    async def aclose(self) -> None:
        await self._client.aclose()
