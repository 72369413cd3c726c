"""Search routes."""

from fastapi import APIRouter, Depends

from ...service import IndexService
from ...storage.base import SearchFilters
from ..deps import get_service
from ..schemas import SearchRequest, SearchResponse

router = APIRouter()


@router.post("/search", response_model=SearchResponse)
async def search(request: SearchRequest, service: IndexService = Depends(get_service)):
    filters = None
    if request.extensions or request.languages:
        filters = SearchFilters(extensions=request.extensions, languages=request.languages)
    return await service.search(
        request.query,
        limit=request.limit,
        min_similarity=request.min_similarity,
        filters=filters,
        return_context=request.return_context,
    )
