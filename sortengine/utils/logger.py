import logging
import os
import sys
from logging.handlers import RotatingFileHandler


def setup_logger(name="sortengine", log_dir=None):
    """
    Configure a logger writing to a rotating file and stderr.
    Never stdout: stdout carries the host message protocol.
    """
    if log_dir is None:
        log_dir = os.environ.get(
            "SORTENGINE_LOG_DIR",
            os.path.join(os.path.expanduser("~"), ".sortengine", "logs"),
        )
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, "engine.log")

    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)

    # Re-running setup must not stack duplicate handlers
    if logger.handlers:
        return logger

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Max 5MB, keep 3 backups
    file_handler = RotatingFileHandler(
        log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    return logger


logger = setup_logger()
