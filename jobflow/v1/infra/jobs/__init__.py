"""
Database-backed host queue for idempotent jobs.

This package provides the default ``queue`` adapter's backend:
- Postgres-backed queue with heartbeats and visibility timeout
- Batches that enqueue a callback job once every member succeeded
- Deduplication on the staged job id
- Retry with backoff, dead-lettering of configuration errors
"""
