"""Logger configuration for the Kwilt completion engine.

The engine only ever logs through `loguru.logger` and never installs sinks on
import. The host application calls `configure_logging()` once at startup
(it is exported as `kwilt.configure_logging`) to route those records to
stderr and, when `LOG_FILE` is set, to a rotating file.
"""

import sys
from pathlib import Path

from loguru import logger

from kwilt.config.settings import Settings, settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level> {extra}"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message} {extra}"


def setup_logger(
    level: str = "INFO",
    log_file: str | None = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
) -> None:
    """Configure loguru logger with console and optional file output.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file. If None, only console logging.
        rotation: Log rotation size (e.g., "10 MB", "1 day")
        retention: Log retention period (e.g., "7 days", "1 month")
    """
    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level, colorize=True)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path,
            format=FILE_FORMAT,
            level=level,
            rotation=rotation,
            retention=retention,
            compression="zip",
        )

    logger.info(f"Logger initialized with level={level}")


def configure_logging(config: Settings | None = None) -> None:
    """Startup hook for host applications.

    Args:
        config: Settings to read LOG_LEVEL / LOG_FILE from. Defaults to the
            environment-driven module settings.
    """
    config = config or settings
    setup_logger(level=config.log_level, log_file=config.log_file)
