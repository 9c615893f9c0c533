"""
Logging configuration for mtools.

Two streams are configured: diagnostic logging on the root logger, and the
``mtools.report`` logger which carries the user-facing lines of both tools.
Report lines go to stdout and, when an output file is given, are mirrored
into it line for line.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

from .config import LoggingConfig

REPORT_LOGGER_NAME = 'mtools.report'


def setup_logging(config: LoggingConfig, level: int = logging.INFO,
                  output_mirror: Optional[Path] = None) -> None:
    """Setup logging configuration."""
    # Create formatter
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Setup root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Clear existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Console handler
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # File handler (if configured)
    if config.file:
        try:
            log_path = Path(config.file)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                log_path,
                maxBytes=config.max_size * 1024 * 1024,  # Convert MB to bytes
                backupCount=config.backup_count
            )
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

        except Exception as e:
            logging.warning(f"Failed to setup file logging: {e}")

    setup_report_logging(output_mirror)

    # Set specific logger levels
    logging.getLogger('mtools').setLevel(level)

    # Reduce noise from third-party libraries
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('requests').setLevel(logging.WARNING)
    logging.getLogger('influxdb_client').setLevel(logging.WARNING)


def setup_report_logging(output_mirror: Optional[Path] = None) -> logging.Logger:
    """Route report lines to stdout and optionally mirror them to a file.

    The mirror file is truncated. Failing to open it is a fatal OSError.
    """
    report_logger = get_report_logger()
    report_logger.setLevel(logging.INFO)
    report_logger.propagate = False

    for handler in report_logger.handlers[:]:
        report_logger.removeHandler(handler)
        handler.close()

    plain = logging.Formatter('%(message)s')

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(plain)
    report_logger.addHandler(stdout_handler)

    if output_mirror is not None:
        mirror_handler = logging.FileHandler(output_mirror, mode='w')
        mirror_handler.setFormatter(plain)
        report_logger.addHandler(mirror_handler)

    return report_logger


def get_report_logger() -> logging.Logger:
    """Logger for user-facing report lines."""
    return logging.getLogger(REPORT_LOGGER_NAME)
