"""Newsweave: content ingestion, enrichment workflows and topic clustering."""

__version__ = "0.1.0"
