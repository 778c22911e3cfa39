"""LLM completion service clients."""
