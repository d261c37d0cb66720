"""Logging setup for the command line tools. Library modules only call getLogger."""

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def setup_logging(verbose: bool = False, log_file: Path = None) -> logging.Logger:
    """Configure the root logger with a stdout handler and an optional file handler."""
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_file))
        except OSError as e:
            print(f"Warning: cannot write log file {log_file}: {e}")

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    # SQLAlchemy is chatty at INFO when echo is on
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)

    return logging.getLogger("roadsense")
