"""Logging configuration and utilities."""

import logging
import sys
from pathlib import Path
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from typing import Optional


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logger(
    name: str = "energy_indexer",
    level: int = logging.INFO,
    log_dir: Optional[str] = None,
    log_filename: Optional[str] = None
) -> logging.Logger:
    """
    Configure and return the package logger with daily rotation support.

    Child loggers created with ``logging.getLogger(__name__)`` inside the
    package propagate to this logger, so one call configures every module.

    Args:
        name: Logger name
        level: Logging level
        log_dir: Log directory path (relative to project root, optional)
        log_filename: Base log filename without extension (optional, defaults to date format YYYY-MM-DD)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Clear existing handlers to allow reconfiguration
    if logger.handlers:
        logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_dir:
        # core -> energy_indexer -> project root
        root_dir = Path(__file__).parent.parent.parent
        log_path = Path(log_dir)
        if not log_path.is_absolute():
            log_path = root_dir / log_dir
        log_path.mkdir(parents=True, exist_ok=True)

        if log_filename:
            log_file = log_path / f"{log_filename}.log"
        else:
            log_file = log_path / f"{datetime.now().strftime('%Y-%m-%d')}.log"

        # Rotate at midnight, keep 30 days
        file_handler = TimedRotatingFileHandler(
            filename=str(log_file),
            when='midnight',
            interval=1,
            backupCount=30,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        file_handler.suffix = "%Y-%m-%d"

        logger.addHandler(file_handler)

        logger.info(f"Logging to file: {log_file.absolute()}")

    return logger


def setup_logger_from_config(config: dict) -> logging.Logger:
    """
    Configure the package logger from the ``logging`` config section.

    Args:
        config: Full configuration dictionary

    Returns:
        Configured logger instance
    """
    log_config = config.get('logging', {})
    level_name = str(log_config.get('level', 'INFO')).upper()
    return setup_logger(
        level=getattr(logging, level_name, logging.INFO),
        log_dir=log_config.get('log_dir'),
        log_filename=log_config.get('log_filename'),
    )


# Global logger instance (default configuration)
log = setup_logger()
