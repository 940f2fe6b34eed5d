"""Hybrid similarity search over thread chunks.

Combines two independent signals for a query thread:

- vector search per query chunk (k = limit * 4), scored by best chunk
- keyword lookup over chunk keyword terms, scored with the adaptive S-curve

and fuses them with normalized weights. The query thread never appears in
its own results. When the query has no keywords the keyword lookup is
skipped, so the fused score is only the weighted vector signal.
"""

import logging
from typing import List, Optional

from src.common.config import SimilarityDefaults
from src.similarity.models import (
    ChunkHit,
    KeywordChunkMatch,
    SearchDebugInfo,
    SimilarityOptions,
    SimilarityQuery,
    SimilarityResult,
    SimilarThread,
)
from src.similarity.scoring import (
    build_candidates,
    canonicalize_keywords,
    keyword_terms,
    match_keywords,
    normalize_weights,
    rank_candidates,
)
from src.similarity.vector_store import VectorStore

logger = logging.getLogger(__name__)

CANDIDATE_MULTIPLIER = 4


class SimilarityEngine:
    def __init__(self, vector_store: VectorStore, defaults: Optional[SimilarityDefaults] = None):
        self.vector_store = vector_store
        self.defaults = defaults or SimilarityDefaults()

    def find_similar(
        self,
        query: SimilarityQuery,
        options: Optional[SimilarityOptions] = None,
    ) -> SimilarityResult:
        """Rank threads similar to ``query``.

        Raises:
            ValueError: If the weights are invalid.
            VectorStoreError: If Qdrant cannot be queried.
        """
        options = options or SimilarityOptions.resolve(self.defaults)
        weights = normalize_weights(options.vector_weight, options.keyword_weight)
        k = options.limit * CANDIDATE_MULTIPLIER

        vector_hits: List[ChunkHit] = []
        for vector in query.vectors:
            if not vector:
                continue
            vector_hits.extend(
                self.vector_store.search(
                    vector,
                    query.organization_id,
                    exclude_thread_id=query.entity_id,
                    limit=k,
                    score_threshold=options.score_threshold,
                )
            )

        keywords = canonicalize_keywords(query.keywords)
        keyword_hits: List[KeywordChunkMatch] = []
        if keywords:
            payloads = self.vector_store.scroll_by_keywords(
                keyword_terms(keywords),
                query.organization_id,
                exclude_thread_id=query.entity_id,
                limit=k * CANDIDATE_MULTIPLIER,
            )
            for payload in payloads:
                matched = match_keywords(keywords, payload.keywords)
                if matched:
                    keyword_hits.append(
                        KeywordChunkMatch(
                            thread_id=payload.thread_id,
                            chunk_index=payload.chunk_index,
                            matched_keywords=matched,
                            total_keywords=len(keywords),
                            payload=payload,
                        )
                    )

        candidates, midpoint = build_candidates(
            vector_hits,
            keyword_hits,
            weights,
            steepness=options.keyword_steepness,
        )
        ranked = rank_candidates(
            candidates.values(),
            query_id=query.entity_id,
            cutoff_score=options.cutoff_score,
            min_score=options.min_score,
            limit=options.limit,
        )

        results = [
            SimilarThread(
                thread_id=c.thread_id,
                score=c.score,
                vector_score=c.vector_score,
                keyword_score=c.keyword_score,
                vector_chunk_count=c.vector.chunk_count if c.vector else 0,
                vector_distribution=c.vector.distribution if c.vector else [],
                keyword_match_ratio=c.keyword.match_ratio if c.keyword else 0.0,
                matched_keywords=c.keyword.matched_keywords if c.keyword else [],
                payload=c.payload,
            )
            for c in ranked
        ]

        debug = SearchDebugInfo(
            parameters=options.model_dump(),
            query_keywords=keywords,
            vector_hit_count=len(vector_hits),
            keyword_chunk_count=len(keyword_hits),
            candidate_count=len(candidates),
            keyword_midpoint=midpoint if keywords else None,
            keyword_search_skipped=not keywords,
        )
        logger.info(
            "Similarity search finished",
            extra={
                "thread_id": query.entity_id,
                "vector_hits": debug.vector_hit_count,
                "keyword_chunks": debug.keyword_chunk_count,
                "candidates": debug.candidate_count,
                "results": len(results),
            },
        )
        return SimilarityResult(query_id=query.entity_id, results=results, debug=debug)

    def find_similar_by_id(
        self,
        thread_id: str,
        organization_id: str,
        options: Optional[SimilarityOptions] = None,
    ) -> Optional[SimilarityResult]:
        """Search with the chunks already stored for ``thread_id``; None if it is not indexed."""
        chunks = self.vector_store.get_entity_chunks(thread_id, organization_id)
        if not chunks:
            return None

        summary_chunks = [c for c in chunks if c.payload.source == "summary"]
        keyword_source = summary_chunks or chunks
        keywords: List[str] = []
        for chunk in keyword_source:
            keywords.extend(chunk.payload.keywords)

        query = SimilarityQuery(
            entity_id=thread_id,
            organization_id=organization_id,
            vectors=[c.vector for c in chunks if c.vector],
            keywords=keywords,
        )
        return self.find_similar(query, options)
