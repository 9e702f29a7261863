"""Multi-tenant account hierarchy engine."""

__version__ = "1.0.0"
