"""Clients for the external embedding API and nearest-neighbor index."""
