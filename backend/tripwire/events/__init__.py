"""Per-search live event fan-out."""
