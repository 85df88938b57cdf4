"""
Experience Hub Hybrid Retrieval Engine

Semantic + lexical search over troubleshooting experiences.

Modules:
    embeddings  — Embedding providers and the canonical embedding text builder
    indexer     — Embedding lifecycle: ensure / clear / refresh / batch backfill
    lexical     — Keyword and free-text lexical scoring
    similarity  — Cosine similarity ranking over stored embeddings
    search      — Hybrid query handler with graceful degradation
    tasks       — Celery tasks for background embedding generation
    exceptions  — Error taxonomy shared by the modules above
"""
