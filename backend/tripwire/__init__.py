"""Tripwire: hybrid sanctions and PEP watchlist screening."""
