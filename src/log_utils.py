"""
Logging utilities for the MarkLogic Cluster Upgrade Orchestrator.
"""

import logging
import sys
from typing import Optional

TEXT_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
# Structured single-line format understood by Cloud Logging
JSON_FORMAT = '{"severity": "%(levelname)s", "message": "%(message)s", "timestamp": "%(asctime)s", "logger": "%(name)s"}'


def setup_logging(
    verbose: bool = False,
    log_file: Optional[str] = "marklogic-upgrade.log",
    json_format: bool = False,
) -> logging.Logger:
    """
    Set up logging configuration.

    Args:
        verbose: Enable verbose (DEBUG) logging
        log_file: Path to log file, or None to log to stdout only
        json_format: Emit one JSON object per line instead of plain text

    Returns:
        Logger instance
    """
    level = logging.DEBUG if verbose else logging.INFO

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format=JSON_FORMAT if json_format else TEXT_FORMAT,
        handlers=handlers,
    )

    # google-auth and urllib3 are chatty at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("google.auth").setLevel(logging.WARNING)

    return logging.getLogger(__name__)
