from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, Request

from vocab_relay.app.api.deps import client_disconnect, get_vocabulary_service
from vocab_relay.app.domain.schemas import ErrorResponse, VocabularyRequest, VocabularyResponse
from vocab_relay.app.services.vocabulary_service import VocabularyService

router = APIRouter(prefix="/api", tags=["vocabulary"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    429: {"model": ErrorResponse, "description": "Upstream quota exhausted after retries"},
    502: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


@router.post("/vocabulary", response_model=VocabularyResponse, responses=ERROR_RESPONSES)
async def generate_vocabulary(
    request: Request,
    body: VocabularyRequest,
    service: VocabularyService = Depends(get_vocabulary_service),
    cancel: asyncio.Event = Depends(client_disconnect),
):
    # Kept for the error handlers' log context.
    request.state.json_body = body.model_dump()
    return await service.generate(body, cancel=cancel)


@router.get("/data", responses=ERROR_RESPONSES)
async def external_data(
    service: VocabularyService = Depends(get_vocabulary_service),
    cancel: asyncio.Event = Depends(client_disconnect),
):
    return await service.fetch_external_data(cancel=cancel)
