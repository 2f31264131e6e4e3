from fastapi import APIRouter, Depends

from vocab_relay.app.api.deps import get_vocabulary_service
from vocab_relay.app.services.vocabulary_service import VocabularyService

router = APIRouter()

VERSION = "0.1.0"


@router.get("/health")
def health():
    """Constant-time health check without upstream verification."""
    return {"status": "healthy"}


@router.get("/health/upstream")
async def health_upstream(service: VocabularyService = Depends(get_vocabulary_service)):
    """Check that the upstream API accepts our key and model."""
    result = await service.provider.healthcheck()
    return result.__dict__


@router.get("/version")
async def version():
    return {"version": VERSION}
