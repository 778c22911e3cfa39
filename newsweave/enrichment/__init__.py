"""Item enrichment: AI analysis, platform processors, embeddings, highlights."""
