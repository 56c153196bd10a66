"""
Core modules for Token Audit.

This package contains the collection engine: rate limiting, data sources,
collection with retry, aggregation, archival and the service lifecycle.
"""
