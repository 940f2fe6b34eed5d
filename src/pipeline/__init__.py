"""Thread enrichment pipeline core.

Shared Utilities (from src/common/):
    - config: load_pipeline_settings(), PipelineSettings
    - firestore: get_firestore_client(), pipeline collection names
    - locks: KeyedLock for optional per-key serialization
    - logging: structured skip/run decisions

Modules:
    models: ProcessorResult variants, job options, run summaries, job records
    context: JobContext, the per-run output store
    registry: ProcessorDefinition base class and ProcessorRegistry scheduler
    idempotency: Firestore-backed content-hash store
    persistence: JobRepository for pipeline_jobs
    orchestrator: PipelineOrchestrator, the turn-based executor
"""
