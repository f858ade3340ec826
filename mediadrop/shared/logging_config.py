"""Shared logging configuration for mediadrop."""

import logging

from mediadrop.shared.config import settings


def configure_logging(component: str = "mediadrop") -> logging.Logger:
    """Configure logging based on debug setting.

    Args:
        component: Name of the component for the logger (e.g., 'mediadrop.server')

    Returns:
        Configured logger instance.
    """
    log_level = logging.DEBUG if settings.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    # Suppress noisy third-party loggers (even in debug mode)
    for name in ("PIL", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)

    if not settings.debug:
        logging.getLogger("werkzeug").setLevel(logging.WARNING)

    return logging.getLogger(component)
