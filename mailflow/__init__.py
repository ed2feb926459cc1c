"""Email-driven automation engine: agents, trigger rules and action pipelines."""

__version__ = "1.0.0"
