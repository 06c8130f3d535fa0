"""Hybrid watchlist search."""
