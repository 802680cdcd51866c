import sys
import logging
from pathlib import Path
from typing import Optional
from logging.handlers import RotatingFileHandler


class SubprocessLogFilter(logging.Filter):
    """
    This filter identifies logs coming from the subprocess loggers
    and keeps them out of the supervisor's own outputs.
    """
    def filter(self, record):
        # The 'proc.' prefix is used by the log router for app output
        return not record.name.startswith('proc.')


class MainFormatter(logging.Formatter):
    """A custom formatter to handle regular logs and raw subprocess logs."""

    def format(self, record):
        # If the log is from a subprocess, just return the raw message.
        if record.name.startswith('proc.'):
            return record.getMessage()

        original_format = self._style._fmt
        self._style._fmt = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'
        formatted_message = super().format(record)
        self._style._fmt = original_format
        return formatted_message


def setup_logging(console_level: int = logging.INFO, log_path: Optional[Path] = None,
                  max_bytes: int = 10 * 1024 * 1024, backup_count: int = 3) -> None:
    """
    Configures the root logger for procwarden.
    This sets up a console handler and, when a path is given, a size-capped
    file handler for the supervisor's own log. Existing handlers are cleared
    to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    :param log_path: Optional path of the supervisor log file.
    :param max_bytes: Size at which the supervisor log file rolls over.
    :param backup_count: Number of rolled supervisor log files to keep.
    """
    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    if root_logger.hasHandlers():
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    # --- Supervisor File Handler ---
    if log_path is None:
        return
    try:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(MainFormatter())
        file_handler.addFilter(SubprocessLogFilter())
        root_logger.addHandler(file_handler)
    except OSError as e:
        root_logger.error(f"Failed to initialize supervisor log file '{log_path}': {e}. File logging disabled.")
