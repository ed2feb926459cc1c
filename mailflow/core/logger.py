"""
Centralized logging setup for the automation engine.

Both the standard library and structlog are routed through the same stream so
scheduler, poller and pipeline events come out in one consistent format.
"""

import sys
import logging
import structlog


_configured = False

NOISY_LOGGERS = [
    'urllib3',
    'aiohttp.access',
    'googleapiclient.discovery',
    'googleapiclient.discovery_cache',
    'google.auth.transport.requests',
    'google_auth_httplib2',
    'google.auth',
    'httpx',
    'aiosqlite',
]


def configure_logging(level: str = "INFO", format_type: str = "dev", force: bool = False) -> None:
    """Configure stdlib logging and structlog processors.

    Args:
        level: Minimum log level name.
        format_type: ``dev`` for the console renderer, ``json`` for JSON lines.
        force: Reconfigure even if logging was already set up.
    """
    global _configured
    if _configured and not force:
        return

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(message)s',
        stream=sys.stderr,
        force=True
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]

    if format_type == "dev":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    silence_noisy_loggers()
    _configured = True


def silence_noisy_loggers() -> None:
    """Raise third-party client loggers to WARNING."""
    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)
