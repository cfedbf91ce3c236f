"""
Logging setup for the mail panel backend.

Console output always; a rotating log file when MAILPANEL_LOG_FILE is set.
"""
import logging
import logging.handlers
from pathlib import Path
from typing import Optional

MAX_LOG_SIZE = 10 * 1024 * 1024
BACKUP_COUNT = 5

_NOISY_LOGGERS = ("urllib3", "requests", "imaplib", "smtplib", "cryptography", "multipart")


def setup_logging(debug: bool = False, log_file: Optional[str] = None) -> None:
    level = logging.DEBUG if debug else logging.INFO
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    formatter = logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=str(path),
            maxBytes=MAX_LOG_SIZE,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info("Logging configured (level=%s)", logging.getLevelName(level))


__all__ = ["setup_logging"]
