"""Name normalization and scoring for watchlist matching.

Provides identifier and name normalization, Jaro-Winkler based name
scoring against primary names and aliases, metadata agreement, and the
hybrid score used to rank screening candidates.
"""
