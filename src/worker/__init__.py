"""HTTP entrypoint for the thread enrichment pipeline (Cloud Run).

Modules:
    models: request and response bodies
    main: FastAPI app with /health, /pipeline/run and /pipeline/jobs/{job_id}
"""
