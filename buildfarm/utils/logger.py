"""Logging configuration for buildfarm."""

import logging
import sys

NOISY_LOGGERS = ("kubernetes", "urllib3", "httpx", "httpcore", "google", "aiodocker")


def setup_logging(level: str = "INFO", format_type: str = "text") -> None:
    """
    Setup logging configuration.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: "text" for human-readable lines, "json" for structured lines
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if format_type == "json":
        log_format = '{"time":"%(asctime)s","level":"%(levelname)s","name":"%(name)s","message":"%(message)s"}'
    else:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Client libraries log every request at INFO
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
