"""Settings and formula sources."""
