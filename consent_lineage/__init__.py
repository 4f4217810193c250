"""Consent lineage synchronization: client library and sync server."""

__version__ = "1.0.0"
