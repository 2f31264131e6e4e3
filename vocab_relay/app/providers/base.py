from __future__ import annotations

from typing import Any, Protocol

from vocab_relay.app.providers.types import ProviderHealth


class Provider(Protocol):
    provider_id: str
    display_name: str

    async def generate_json(self, prompt: str, response_schema: dict) -> Any:
        ...

    async def healthcheck(self) -> ProviderHealth:
        ...
