"""Ingestion pipeline: batch loading, vectorization and progress."""
