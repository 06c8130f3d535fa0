"""Client for the external job (thread) service."""
