"""External model providers used by pipeline processors.

Modules:
    gemini_client: structured JSON generation with google-genai
    embedding_client: Vertex AI text embeddings, unit-normalized and cached

Both clients run every call through src.common.retry.with_retry and enforce
a per-request timeout; a timeout surfaces as an error for that thread only.
"""
