"""Ingestion: feed polling, URL normalization, deduplication and upgrades."""
