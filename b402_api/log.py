"""
Structured logging setup shared by the server and client entry points
"""

import logging

import structlog


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Configure structlog with ISO timestamps and a console or JSON renderer"""
    renderer = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        cache_logger_on_first_use=False,
    )
