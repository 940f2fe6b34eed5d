"""Scoring functions for hybrid (vector + keyword) similarity.

Pure functions, no I/O:

- Vector signal: per-chunk score is ``1 - distance``; a thread spanning many
  chunks takes its best chunk (max) and keeps the full distribution.
- Keyword signal: ``match_ratio = matched / query_keywords`` mapped through a
  logistic S-curve ``1 / (1 + e^(-steepness * (ratio - midpoint)))``. The
  midpoint adapts per query: ``clamp(max_ratio * 0.8, 0.25, 0.5)``.
- Fusion: weights are normalized to sum to 1; a missing signal scores 0.
- Ranking: sort by fused score, keep scores at or above ``cutoff_score`` and
  ``min_score``, drop the query thread, truncate to ``limit``.
"""

import math
import re
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np

from src.similarity.models import (
    ChunkHit,
    KeywordAggregate,
    KeywordChunkMatch,
    SimilarityCandidate,
    VectorAggregate,
)

DEFAULT_STEEPNESS = 10.0
MIDPOINT_FLOOR = 0.25
MIDPOINT_CEILING = 0.5
MIDPOINT_FACTOR = 0.8

_TOKEN_RE = re.compile(r"[a-z0-9]+(?:[._\-][a-z0-9]+)*")

STOPWORDS = frozenset(
    """
    a about above after again all also am an and any are as at be because been before being
    below between both but by can cannot could did do does doing down during each few for from
    further get got had has have having he her here hers him his how i if in into is it its
    just me more most my no nor not now of off on once only or other our ours out over own
    please same she should so some such than thank thanks that the their theirs them then there
    these they this those through to too under until up us very was we were what when where
    which while who whom why will with would you your yours hi hello hey
    """.split()
)


# ---------------------------------------------------------------------------
# Vector signal
# ---------------------------------------------------------------------------


def cosine_similarity(vec_a: np.ndarray, vec_b: np.ndarray) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero magnitude."""
    norm_a = np.linalg.norm(vec_a)
    norm_b = np.linalg.norm(vec_b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / (norm_a * norm_b))


def normalize_embedding(embedding: Sequence[float]) -> List[float]:
    """Scale an embedding to unit length; zero vectors are returned unchanged."""
    array = np.asarray(embedding, dtype=np.float64)
    norm = np.linalg.norm(array)
    if norm == 0:
        return array.tolist()
    return (array / norm).tolist()


def vector_score(distance: float) -> float:
    return 1.0 - distance


def aggregate_vector_chunks(scores: Iterable[float]) -> VectorAggregate:
    """Best chunk wins; chunk count and descending distribution are kept."""
    distribution = sorted((float(s) for s in scores), reverse=True)
    if not distribution:
        return VectorAggregate(score=0.0, chunk_count=0, distribution=[])
    return VectorAggregate(score=distribution[0], chunk_count=len(distribution), distribution=distribution)


# ---------------------------------------------------------------------------
# Keyword signal
# ---------------------------------------------------------------------------


def canonical_keyword(keyword: str) -> str:
    return " ".join(keyword.lower().split())


def canonicalize_keywords(keywords: Iterable[str]) -> List[str]:
    """Lowercase, collapse whitespace, drop empties and duplicates (order kept)."""
    seen: Dict[str, None] = {}
    for keyword in keywords:
        canonical = canonical_keyword(keyword)
        if canonical:
            seen.setdefault(canonical, None)
    return list(seen)


def tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall(text.lower())


def keyword_terms(keywords: Iterable[str]) -> List[str]:
    """Canonical phrases plus their tokens, the values indexed for keyword lookup."""
    terms: Dict[str, None] = {}
    for keyword in canonicalize_keywords(keywords):
        terms.setdefault(keyword, None)
        for token in tokenize(keyword):
            terms.setdefault(token, None)
    return list(terms)


def extract_keywords(text: str, max_keywords: int = 20) -> List[str]:
    """Most frequent non-stopword tokens of ``text``, first occurrence breaking ties."""
    counts: Dict[str, int] = {}
    for token in tokenize(text):
        if len(token) < 3 or token in STOPWORDS or token.isdigit():
            continue
        counts[token] = counts.get(token, 0) + 1
    ranked = sorted(counts, key=lambda token: -counts[token])
    return ranked[:max_keywords]


def match_keywords(query_keywords: Sequence[str], chunk_keywords: Iterable[str]) -> List[str]:
    """Query keywords found in a chunk.

    A keyword matches when the chunk carries it verbatim (after
    canonicalization) or carries every one of its tokens.
    """
    chunk_set: Set[str] = set(canonicalize_keywords(chunk_keywords))
    chunk_tokens: Set[str] = set()
    for keyword in chunk_set:
        chunk_tokens.update(tokenize(keyword))

    matched = []
    for keyword in query_keywords:
        if keyword in chunk_set:
            matched.append(keyword)
            continue
        tokens = tokenize(keyword)
        if tokens and all(token in chunk_tokens for token in tokens):
            matched.append(keyword)
    return matched


def keyword_match_ratio(matched_count: int, total_keywords: int) -> float:
    if total_keywords <= 0:
        return 0.0
    return matched_count / total_keywords


def s_curve(match_ratio: float, steepness: float = DEFAULT_STEEPNESS, midpoint: float = MIDPOINT_CEILING) -> float:
    """Logistic mapping of a match ratio onto (0, 1)."""
    exponent = -steepness * (match_ratio - midpoint)
    # math.exp overflows past ~709.
    if exponent > 700:
        return 0.0
    return 1.0 / (1.0 + math.exp(exponent))


def adaptive_midpoint(match_ratios: Iterable[float]) -> float:
    """``clamp(max_ratio * 0.8, 0.25, 0.5)``; 0.25 when nothing matched."""
    best = max(match_ratios, default=0.0)
    return min(max(best * MIDPOINT_FACTOR, MIDPOINT_FLOOR), MIDPOINT_CEILING)


def aggregate_keyword_chunks(
    matches: Sequence[KeywordChunkMatch],
    steepness: float = DEFAULT_STEEPNESS,
    midpoint: float = MIDPOINT_CEILING,
) -> KeywordAggregate:
    """Score a thread by its best keyword chunk; matched keywords are unioned."""
    if not matches:
        return KeywordAggregate(score=0.0, match_ratio=0.0)

    best = max(matches, key=lambda m: m.match_ratio)
    union: Dict[str, None] = {}
    for match in matches:
        for keyword in match.matched_keywords:
            union.setdefault(keyword, None)

    return KeywordAggregate(
        score=s_curve(best.match_ratio, steepness, midpoint),
        match_ratio=best.match_ratio,
        matched_keywords=list(union),
        chunk_count=len(matches),
    )


# ---------------------------------------------------------------------------
# Fusion and ranking
# ---------------------------------------------------------------------------


def normalize_weights(vector_weight: float, keyword_weight: float) -> Tuple[float, float]:
    """Scale the two weights to sum to 1.

    Raises:
        ValueError: If a weight is negative or both are zero.
    """
    if vector_weight < 0 or keyword_weight < 0:
        raise ValueError("Similarity weights must be non-negative")
    total = vector_weight + keyword_weight
    if total <= 0:
        raise ValueError("vector_weight and keyword_weight cannot both be zero")
    return vector_weight / total, keyword_weight / total


def fuse_scores(vector: float, keyword: float, weights: Tuple[float, float]) -> float:
    w_vector, w_keyword = normalize_weights(*weights)
    return vector * w_vector + keyword * w_keyword


def build_candidates(
    vector_hits: Sequence[ChunkHit],
    keyword_matches: Sequence[KeywordChunkMatch],
    weights: Tuple[float, float],
    steepness: float = DEFAULT_STEEPNESS,
) -> Tuple[Dict[str, SimilarityCandidate], float]:
    """Group hits per thread, score both signals and fuse them.

    Returns:
        Candidates keyed by thread id, and the keyword midpoint used.
    """
    # Several query vectors may hit the same chunk; keep its best score.
    best_chunk: Dict[Tuple[str, int], ChunkHit] = {}
    for hit in vector_hits:
        key = (hit.thread_id, hit.chunk_index)
        if key not in best_chunk or hit.distance < best_chunk[key].distance:
            best_chunk[key] = hit

    hits_by_thread: Dict[str, List[ChunkHit]] = {}
    for hit in best_chunk.values():
        hits_by_thread.setdefault(hit.thread_id, []).append(hit)

    matches_by_thread: Dict[str, List[KeywordChunkMatch]] = {}
    for match in keyword_matches:
        matches_by_thread.setdefault(match.thread_id, []).append(match)

    midpoint = adaptive_midpoint(match.match_ratio for match in keyword_matches)

    candidates: Dict[str, SimilarityCandidate] = {}
    for thread_id in set(hits_by_thread) | set(matches_by_thread):
        candidate = SimilarityCandidate(thread_id=thread_id)

        hits = hits_by_thread.get(thread_id)
        if hits:
            candidate.vector = aggregate_vector_chunks(vector_score(hit.distance) for hit in hits)
            top_hit = min(hits, key=lambda hit: (hit.distance, hit.chunk_index))
            candidate.payload = top_hit.payload

        matches = matches_by_thread.get(thread_id)
        if matches:
            candidate.keyword = aggregate_keyword_chunks(matches, steepness, midpoint)
            if candidate.payload is None:
                candidate.payload = max(matches, key=lambda m: (m.match_ratio, -m.chunk_index)).payload

        candidate.score = fuse_scores(candidate.vector_score, candidate.keyword_score, weights)
        candidates[thread_id] = candidate

    return candidates, midpoint


def rank_candidates(
    candidates: Iterable[SimilarityCandidate],
    *,
    query_id: Optional[str] = None,
    cutoff_score: float = 0.3,
    min_score: float = 0.0,
    limit: int = 10,
) -> List[SimilarityCandidate]:
    """Filter and order fused candidates.

    Both thresholds are inclusive. Ties are broken by thread id so the
    ranking is deterministic.
    """
    floor = max(cutoff_score, min_score)
    kept = [c for c in candidates if c.thread_id != query_id and c.score >= floor]
    kept.sort(key=lambda c: (-c.score, c.thread_id))
    return kept[:limit]
