import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 5


def setup_logging(level: str = "INFO", log_dir: Optional[str] = None) -> None:
    """
    Configures the root logger for the worker process.

    Console output always; when log_dir is given, also a rotating worker.log
    and an errors.log that only receives ERROR and above.
    """
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    root = logging.getLogger()
    root.setLevel(level.upper())

    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

        main_file = RotatingFileHandler(
            os.path.join(log_dir, "worker.log"),
            maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8",
        )
        main_file.setFormatter(formatter)
        root.addHandler(main_file)

        errors_file = RotatingFileHandler(
            os.path.join(log_dir, "errors.log"),
            maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8",
        )
        errors_file.setLevel(logging.ERROR)
        errors_file.setFormatter(formatter)
        root.addHandler(errors_file)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
