import logging
import os
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(run_log_path: str, logger_name: str = None, level=logging.INFO):
    """
    Configure root logging to stream to stdout and write to run_log_path.
    Returns a logger (named if provided, else root) and a formatter to reuse
    for any additional per-file handlers.
    """
    log_dir = os.path.dirname(run_log_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Clear existing handlers (avoid duplicates in reruns/tests)
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
        h.close()

    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(stream=sys.stdout)
    stream_handler.setFormatter(formatter)
    file_handler = logging.FileHandler(run_log_path)
    file_handler.setFormatter(formatter)

    root_logger.addHandler(stream_handler)
    root_logger.addHandler(file_handler)

    if logger_name:
        return logging.getLogger(logger_name), formatter
    return root_logger, formatter


def get_logger(logger, default_name: str) -> logging.Logger:
    """Return the injected logger, or a module logger when none was passed."""
    return logger if logger is not None else logging.getLogger(default_name)
