"""tenant-gate: multi-tenant access control and request governance."""

__version__ = "0.1.0"
