"""Core infrastructure: configuration, errors, logging and persistence."""
