"""Core utilities: settings, logging, database, models and repositories."""
