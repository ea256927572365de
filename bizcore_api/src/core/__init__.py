"""
Core application utilities for settings, logging and FastAPI dependencies.

This package provides:
- Application-level settings and the query engine configuration derived from them
- Context-enriched logging (correlation id, tenant, actor)
- Bearer token decoding
- Dependency helpers (tenant extraction, security context, tenant-scoped DB session,
  query engine wiring)
"""
