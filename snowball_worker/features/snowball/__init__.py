"""
Snowball distribution feature package.

This vertical slice keeps every layer of viral list growth co-located:
domain models, CSV ingestion, quality scoring, the reputation cache,
fan-out planning, growth tracking, persistence and the job handlers.
"""
