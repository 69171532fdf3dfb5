import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from ..config.config import settings

AUDIT_LOGGER_NAME = "attendify.audit"
LOG_FORMAT = "%(asctime)s - [%(name)s] - %(levelname)s - %(message)s"


def _rotating_handler(path: Path) -> RotatingFileHandler:
    # Rolls over to app.log.1, app.log.2, ... once the file passes 5 MB.
    handler = RotatingFileHandler(
        path,
        maxBytes=5*1024*1024,  # 5 MB
        backupCount=5
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def setup_logging():
    """
    Sets up application-wide logging.

    Logs go both to the console (for development) and to a rotating file
    (for production). Verification attempts are additionally written to a
    separate audit.log through the ``attendify.audit`` logger, so the attempt
    trail can be shipped and retained independently of the application log.
    """
    log_dir = Path(settings.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger()
    logger.setLevel(logging.INFO)

    # Drop handlers installed by uvicorn and friends so our format wins.
    if logger.hasHandlers():
        logger.handlers.clear()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(stdout_handler)
    logger.addHandler(_rotating_handler(log_dir / "app.log"))

    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    audit_logger.setLevel(logging.INFO)
    for handler in list(audit_logger.handlers):
        audit_logger.removeHandler(handler)
    audit_logger.addHandler(_rotating_handler(log_dir / "audit.log"))
