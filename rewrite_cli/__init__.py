"""Rewrite CLI: resolve, ingest, transform and patch a source tree."""

__version__ = "0.4.0"
