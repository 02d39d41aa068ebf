"""
Financial News RAG Pipeline

Ingests financial news articles, deduplicates them by content identity,
indexes their embeddings in an approximate-nearest-neighbor vector store,
and answers questions with retrieval-augmented generation.
"""

__version__ = "0.1.0"
