# backend/konarae/api/v1/routers/search.py
"""
Search API Router for hybrid semantic + keyword search.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from ....core.search.pg_search_service import pg_search_service
from ....core.shared.database_service import database_service

logger = logging.getLogger("konarae.api.search")

router = APIRouter(prefix="/search", tags=["search"])


class HybridSearchRequest(BaseModel):
    """Search request with query and optional tuning."""

    query_text: str = Field(..., min_length=1, max_length=500, description="Search query")
    source_type: Optional[str] = Field(None, description="Restrict to one source type")
    match_threshold: Optional[float] = Field(
        None, ge=0.0, le=1.0, description="Minimum combined score"
    )
    match_count: Optional[int] = Field(None, ge=1, le=100, description="Maximum results")
    semantic_weight: Optional[float] = Field(
        None, ge=0.0, le=1.0, description="Weight of the semantic score (0-1)"
    )


class SearchHitResponse(BaseModel):
    id: str
    source_type: str
    source_id: str
    content: str
    similarity: float
    keyword_score: float
    combined_score: float
    chunk_metadata: Dict[str, Any] = Field(default_factory=dict)


class HybridSearchResponse(BaseModel):
    query_text: str
    total: int
    hits: List[SearchHitResponse]


@router.post("/hybrid", response_model=HybridSearchResponse)
async def hybrid_search(request: HybridSearchRequest):
    try:
        async with database_service.get_session() as session:
            hits = await pg_search_service.hybrid_search(
                session,
                request.query_text,
                source_type=request.source_type,
                match_threshold=request.match_threshold,
                match_count=request.match_count,
                semantic_weight=request.semantic_weight,
            )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Hybrid search failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Search failed")

    return HybridSearchResponse(
        query_text=request.query_text,
        total=len(hits),
        hits=[SearchHitResponse(**hit.__dict__) for hit in hits],
    )
