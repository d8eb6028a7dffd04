"""Process-wide logging setup."""

import logging

from app.config import get_settings


def setup_logging(level: str | None = None) -> None:
    """Configure root logging once per process.

    Args:
        level: Logging level name (defaults to settings.log_level)
    """
    if level is None:
        level = get_settings().log_level
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
