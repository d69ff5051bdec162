#!/usr/bin/env python3
"""Shared logging setup for the command-line entry points."""

import logging
from datetime import datetime
from pathlib import Path

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_console_logging() -> logging.Logger:
    """Console-only logging, used before an output directory is known."""
    logger = logging.getLogger("neurotbss")
    logger.setLevel(logging.INFO)

    if not any(type(h) is logging.StreamHandler for h in logger.handlers):
        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(ch)

    return logger


def setup_logging(output_dir: Path, name: str = "tbss") -> logging.Logger:
    """Configure logging to both file and console."""
    log_dir = Path(output_dir) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"{name}_{timestamp}.log"

    logger = setup_console_logging()

    # Avoid duplicate handlers on repeated calls
    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        fh = logging.FileHandler(log_file)
        fh.setLevel(logging.INFO)
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(fh)

    return logging.getLogger(f"neurotbss.{name}")
