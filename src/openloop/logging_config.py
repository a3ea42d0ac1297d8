# openloop/logging_config.py
import logging
import os
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s"

# Chatty third-party loggers, kept at WARNING unless debugging
NOISY_LOGGERS = ("asyncio", "aiohttp.access", "aiohttp.client")


def setup_logging(level: str | None = None, log_file: str | None = None) -> logging.Logger:
    """
    Configure the root logger for a run.

    Logs go to stdout, and also to ``log_file`` when given. ``level`` falls
    back to ``OPENLOOP_LOG_LEVEL`` and then INFO.
    """
    level = (level or os.getenv("OPENLOOP_LOG_LEVEL") or "INFO").upper()
    logger = logging.getLogger()
    logger.setLevel(level)

    if logger.hasHandlers():
        logger.handlers.clear()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
        logger.info(f"Logging to file: {log_file}")

    if level != "DEBUG":
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    def handle_exception(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return
        logger.error("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = handle_exception

    return logger
