# logger.py - logging setup shared by the web app, the CLI and the scheduler process
import os
import logging
from logging.handlers import RotatingFileHandler

LOG_FORMAT = "%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]"

# Settlement units run on pool threads; keep the thread name in the line
SETTLEMENT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


def setup_logger(name, log_file=None, level=logging.INFO, log_dir="logs", fmt=SETTLEMENT_LOG_FORMAT):
    """Rotating file log for ``name`` and its children; console too outside production."""
    os.makedirs(log_dir, exist_ok=True)
    log_file = log_file or os.path.join(log_dir, f"{name}.log")

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(level)

    file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=10, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(fmt))
    file_handler.setLevel(level)
    logger.addHandler(file_handler)

    if os.environ.get("FLASK_ENV") != "production":
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(logging.Formatter("%(name)s - %(levelname)s - %(message)s"))
        logger.addHandler(console_handler)

    return logger
