"""GraphRAG knowledge service over markdown documentation."""
