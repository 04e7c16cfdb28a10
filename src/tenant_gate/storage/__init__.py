"""Persistence: ORM models, repositories and the tenant-scoped façade."""
