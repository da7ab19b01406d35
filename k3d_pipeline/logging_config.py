"""Logging configuration for the provisioning pipeline."""

import logging
import re
import sys
from pathlib import Path

FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

# Libraries that log every request or packet at INFO/DEBUG
QUIET_LIBRARIES = ("paramiko", "urllib3", "kubernetes")

# key=value or key: value pairs whose value must not reach a log
SECRET_PATTERN = re.compile(
    r"((?:password|passwd|secret|token|client-key-data|aws_secret_access_key)[\w.-]*\s*[=:]\s*)"
    r"(\"[^\"]*\"|'[^']*'|[^\s,]+)",
    re.IGNORECASE,
)


class RedactingFilter(logging.Filter):
    """Masks secret values in chart overrides, kubeconfigs and environment dumps."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = SECRET_PATTERN.sub(r"\1***", message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(level: str = "INFO", log_file: Path | None = None, verbose: bool = False) -> None:
    """Configure logging for the application.

    The console only shows warnings unless verbose; the log file, when given,
    always records every command at DEBUG.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        verbose: If True, set level to DEBUG
    """
    if verbose:
        level = "DEBUG"

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if log_file else getattr(logging, level.upper()))
    root_logger.handlers.clear()
    redact = RedactingFilter()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(
        logging.Formatter(FILE_FORMAT if verbose else CONSOLE_FORMAT, datefmt="%H:%M:%S")
    )
    console_handler.addFilter(redact)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
        except OSError as e:
            logging.warning(f"Failed to create log file handler: {e}")
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
            file_handler.addFilter(redact)
            root_logger.addHandler(file_handler)

    for name in QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance (typically for __name__)."""
    return logging.getLogger(name)
