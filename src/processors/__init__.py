"""Thread enrichment processors.

Turn plan of the default registry:

    turn 1: embed-messages, suggest-labels, suggest-status, summarize
    turn 2: embed
    turn 3: find-similar
    turn 4: suggest-duplicates

Modules:
    prompt_templates: Gemini prompts and response schemas
    chunks: ThreadChunkPayload builders shared by the embed processors
    summarize, embed, embed_messages, find_similar,
    suggest_duplicates, suggest_labels, suggest_status: processor definitions
    registration: PipelineServices and build_default_registry()
"""
