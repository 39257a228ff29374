"""Core domain: models, services, persistence, configuration."""
