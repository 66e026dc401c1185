"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Markdown parsing with front matter, headings, links and code blocks
- Document chunking with overlap
- Concept extraction
- FAISS vector storage
- Indexing into the knowledge graph
- Graph-enriched retrieval and answer synthesis
"""
