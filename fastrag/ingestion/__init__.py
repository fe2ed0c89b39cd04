"""Connectors, chunking and indexing for FastRAG ingestion."""
