"""Semantic search over a user's document chunks."""

import time
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from ..logger import logger
from .models import SearchHit, SearchType

MIN_QUERY_LENGTH = 3
MAX_QUERY_LENGTH = 500


class InvalidQueryError(ValueError):
    pass


class SearchError(RuntimeError):
    """Raised when neither the enhanced nor the basic lookup could run."""

    pass


class SearchOptions(BaseModel):
    search_type: SearchType = SearchType.SEMANTIC
    max_results: int = Field(default=10, ge=1, le=50)
    similarity_threshold: float = Field(default=0.7, ge=0, le=1)
    content_types: list[str] | None = None
    required_tags: list[str] | None = None

    @field_validator("content_types", "required_tags", mode="after")
    @classmethod
    def drop_empty(cls, v: list[str] | None) -> list[str] | None:
        if not v:
            return None
        cleaned = [item.strip().lower() for item in v if item and item.strip()]
        return cleaned or None


class SearchResponse(BaseModel):
    query_id: UUID
    results: list[SearchHit]
    total_results: int
    response_time_ms: int
    search_path: Literal["enhanced", "basic"]
    degraded: bool = False


def validate_query(query_text: str) -> str:
    query_text = (query_text or "").strip()
    if not MIN_QUERY_LENGTH <= len(query_text) <= MAX_QUERY_LENGTH:
        raise InvalidQueryError(
            f"Query must be between {MIN_QUERY_LENGTH} and {MAX_QUERY_LENGTH} characters"
        )
    return query_text


class SearchEngine:
    """Embeds queries, records them and looks up the closest chunks.

    The filtered lookup runs first; if it fails, the unfiltered lookup
    serves the request and the response is marked degraded. Keyword and
    hybrid requests are recorded as asked but run the semantic lookup.
    """

    def __init__(self, store, embedder):
        self.store = store
        self.embedder = embedder

    def search(
        self,
        query_text: str,
        user_id: UUID,
        options: SearchOptions | None = None,
    ) -> SearchResponse:
        """Run a search for a user.

        Raises:
            InvalidQueryError: If the query length is out of range.
            EmbeddingError: If the query could not be embedded.
            SearchError: If both lookups failed.
        """
        query_text = validate_query(query_text)
        options = options or SearchOptions()
        start = time.perf_counter()

        query_embedding = self.embedder.embed_one(query_text)

        filters = {
            "content_types": options.content_types,
            "required_tags": options.required_tags,
        }
        query = self.store.insert_search_query(
            user_id,
            query_text,
            query_embedding,
            options.search_type,
            options.similarity_threshold,
            options.max_results,
            search_metadata={"requested_type": options.search_type.value, **filters},
        )

        search_path = "enhanced"
        enhanced_error = None
        try:
            results = self.store.enhanced_similarity_search(
                query_embedding,
                user_id,
                similarity_threshold=options.similarity_threshold,
                max_results=options.max_results,
                content_types=options.content_types,
                required_tags=options.required_tags,
            )
        except Exception as e:
            enhanced_error = str(e)
            search_path = "basic"
            logger.warn(
                "enhanced search failed, falling back to basic search",
                query_id=str(query.id),
                error=enhanced_error,
            )
            try:
                results = self.store.similarity_search(
                    query_embedding,
                    user_id,
                    similarity_threshold=options.similarity_threshold,
                    max_results=options.max_results,
                )
            except Exception as basic_error:
                logger.error(
                    "basic search failed",
                    query_id=str(query.id),
                    error=str(basic_error),
                )
                raise SearchError(
                    f"Search failed: {enhanced_error}; fallback failed: {basic_error}"
                ) from basic_error

        results = [
            hit.model_copy(update={"rank_position": rank}) for rank, hit in enumerate(results, 1)
        ]
        degraded = enhanced_error is not None
        response_time_ms = int(round((time.perf_counter() - start) * 1000))

        search_metadata = {
            "requested_type": options.search_type.value,
            "executed_type": SearchType.SEMANTIC.value,
            "search_path": search_path,
            "degraded": degraded,
            **filters,
        }
        if enhanced_error is not None:
            search_metadata["enhanced_error"] = enhanced_error

        self.store.update_search_query_results(
            query.id, len(results), response_time_ms, search_metadata
        )
        self.store.insert_search_results(query.id, results)

        logger.info(
            "search completed",
            query_id=str(query.id),
            user_id=str(user_id),
            search_path=search_path,
            degraded=degraded,
            results_count=len(results),
            duration_ms=response_time_ms,
        )
        return SearchResponse(
            query_id=query.id,
            results=results,
            total_results=len(results),
            response_time_ms=response_time_ms,
            search_path=search_path,
            degraded=degraded,
        )
