from __future__ import annotations

import asyncio
import contextlib
from typing import AsyncIterator

from fastapi import Request

from vocab_relay.app.services.vocabulary_service import VocabularyService

DISCONNECT_POLL_SECONDS = 0.5


def get_vocabulary_service(request: Request) -> VocabularyService:
    return request.app.state.vocabulary_service


async def _watch_disconnect(request: Request, event: asyncio.Event) -> None:
    while not event.is_set():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)
        if await request.is_disconnected():
            event.set()


async def client_disconnect(request: Request) -> AsyncIterator[asyncio.Event]:
    """Yield an event that is set once the client goes away."""
    event = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, event))
    try:
        yield event
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
