"""Setup logging utility for the vibescan utils package."""

import logging
from datetime import datetime
from pathlib import Path

from rich.logging import RichHandler

from .common import console


def setup_logging(config, level: str = None) -> logging.Logger:
    """Set up logging configuration.

    Args:
        config: Settings object with logging settings.
        level: Optional level overriding the configured one.

    Returns:
        Configured logger instance.
    """
    level = (level or config.logging.level).upper()

    handlers = [
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_time=False
        )
    ]

    if config.logging.file_path:
        log_path = Path(config.logging.file_path.format(
            date=datetime.now().strftime("%Y%m%d")
        ))
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(config.logging.format))
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, level),
        format="%(message)s",
        handlers=handlers,
        force=True
    )

    # aiohttp access chatter is not useful at INFO
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    return logging.getLogger("vibescan")
