"""mnemos.search — Embeddings, vector index, text tokenization and retrieval."""
