"""API endpoint for similarity search over indexed documents.

``GET /indexer/search`` embeds the question, searches one collection with
the default category filter (or none, with ``all_categories``) and
returns the ranked hits along with the de-duplicated source filenames
for citation.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from docindex.ingest import get_service
from docindex.models import SearchResponse
from docindex.retrieval import DEFAULT_CATEGORIES, unique_sources
from docindex.service import IndexService

query_router = APIRouter(prefix="/indexer", tags=["search"])


@query_router.get("/search", response_model=SearchResponse)
async def search(
    q: str = Query(..., min_length=1),
    collection: Optional[str] = Query(None),
    file_id: Optional[int] = Query(None),
    user_id: Optional[int] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=100),
    all_categories: bool = Query(False),
    service: IndexService = Depends(get_service),
) -> SearchResponse:
    if not q.strip():
        raise HTTPException(status_code=422, detail="Query must not be blank")
    name = collection or service.settings.artifacts_collection
    hits = await service.retrieval.search(
        name,
        q,
        categories=None if all_categories else DEFAULT_CATEGORIES,
        limit=limit,
        file_id=file_id,
        user_id=user_id,
    )
    return SearchResponse(collection=name, results=hits, sources=unique_sources(hits))
