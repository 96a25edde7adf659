"""
PKB Services Package.

Business logic and data access for the CRM's fact / relationship / followup
(FRF) extraction pipeline.

Example:
    from pkb.services.frf_pipeline import run_frf_pipeline
    from pkb.services.fact_store import get_fact_store

Key service modules:
- communication_store: Contacts and ingested communications
- fact_store: Facts, conflict tracking, extracted-fact commit
- fact_dedup: Embedding-based duplicate detection
- relationship_store: Relationships and reciprocal inference
- followup_store: Followups and the content-detected followup gate
- frf_batching: Overlapping batch windows and transcript formatting
- frf_extraction: Claude extraction client
- frf_pipeline: Run orchestration (single-flight, retry, failure isolation)
- frf_scheduler: Cron trigger
"""
