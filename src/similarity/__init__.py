"""Hybrid similarity engine for support threads.

Fuses a vector signal (best matching chunk) with a keyword signal (adaptive
S-curve over keyword match ratio) to rank similar threads. Used by the
find-similar processor and, through its ranking, by duplicate detection.

Modules:
    models: ThreadChunkPayload schema, query/options/result models
    scoring: pure scoring, fusion and ranking functions
    vector_store: Qdrant boundary with payload validation
    engine: SimilarityEngine.find_similar / find_similar_by_id
"""
