"""Core utilities: configuration, logging, errors and parsing."""
