"""Ops bridge: canonical booking reconciliation plus signed event ingest."""

__version__ = "1.0.0"
