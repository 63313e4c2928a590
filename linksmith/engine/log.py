"""Logging setup shared by the CLI and embedding applications."""

import sys
from pathlib import Path
from typing import Optional, Union

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def setup_logging(level: str = "INFO",
                  log_file: Optional[Union[str, Path]] = None,
                  rotation: str = "1 day",
                  retention: str = "7 days") -> None:
    """Replace the default loguru sink with a stderr sink and an optional rotating file."""
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level.upper())

    if log_file is not None:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path,
            rotation=rotation,
            retention=retention,
            level="DEBUG"
        )
