"""Command line interface for the mailflow automation engine."""
