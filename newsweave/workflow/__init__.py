"""Checkpointed enrichment workflows driven by queue messages."""
