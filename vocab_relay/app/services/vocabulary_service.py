from __future__ import annotations

import asyncio
from typing import Any

from pydantic import ValidationError

from vocab_relay.app.core.errors import APIError, UpstreamError
from vocab_relay.app.core.logging import get_logger
from vocab_relay.app.domain.schemas import (
    VOCABULARY_RESPONSE_SCHEMA,
    VocabularyRequest,
    VocabularyResponse,
    build_vocabulary_prompt,
)
from vocab_relay.app.providers.base import Provider
from vocab_relay.app.providers.external_data import ExternalDataClient
from vocab_relay.app.services.retry import RateLimitedCaller
from vocab_relay.app.services.throttle import ThrottleState

logger = get_logger(__name__)


class VocabularyService:
    """Builds vocabulary prompts and relays them through the paced caller."""

    def __init__(
        self,
        provider: Provider,
        caller: RateLimitedCaller,
        max_words: int = 20,
        external_data: ExternalDataClient | None = None,
        external_caller: RateLimitedCaller | None = None,
    ):
        self.provider = provider
        self.caller = caller
        self.max_words = max_words
        self.external_data = external_data
        # Each downstream target is paced by its own throttle.
        self.external_caller = external_caller or RateLimitedCaller(ThrottleState(), caller.policy)

    async def generate(
        self, request: VocabularyRequest, cancel: asyncio.Event | None = None
    ) -> VocabularyResponse:
        if len(request.words) > self.max_words:
            raise APIError(
                code="TOO_MANY_WORDS",
                message=f"At most {self.max_words} words per request",
            )

        prompt = build_vocabulary_prompt(request)

        async def call_upstream() -> Any:
            return await self.provider.generate_json(prompt, VOCABULARY_RESPONSE_SCHEMA)

        payload = await self.caller.execute(call_upstream, cancel=cancel)
        if isinstance(payload, dict) and "words" in payload:
            payload = payload["words"]

        try:
            result = VocabularyResponse(words=payload)
        except ValidationError as exc:
            logger.warning("Upstream payload did not match schema", data={"errors": exc.error_count()})
            raise UpstreamError(502, "Upstream returned an unexpected payload") from exc

        logger.info("Generated vocabulary entries", data={"words": len(result.words)})
        return result

    async def fetch_external_data(self, cancel: asyncio.Event | None = None) -> Any:
        if self.external_data is None:
            raise APIError(
                code="UPSTREAM_NOT_CONFIGURED",
                message="External data source is not configured",
                status_code=503,
            )
        return await self.external_caller.execute(self.external_data.fetch, cancel=cancel)
