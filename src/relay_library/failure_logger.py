import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

from .error_handler import ClassifiedError, mask_credential

FAILURE_LOGGER_NAME = "relay_library.failures"


class JsonFormatter(logging.Formatter):
    """Renders each record as one JSON object per line."""

    def format(self, record):
        payload = record.msg if isinstance(record.msg, dict) else {"message": record.getMessage()}
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            **payload,
        }
        return json.dumps(log_record, default=str)


def configure_failure_logger(logs_dir: Optional[Union[str, Path]] = None) -> logging.Logger:
    """
    Sets up a dedicated JSON logger for failed upstream calls.

    Records go to ``<logs_dir>/failures.log`` and never propagate to the
    console handlers of the application. Calling this twice is harmless.
    """
    logger = logging.getLogger(FAILURE_LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    if logs_dir is None:
        if not logger.handlers:
            logger.addHandler(logging.NullHandler())
        return logger

    log_dir = Path(logs_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        handler = RotatingFileHandler(
            log_dir / "failures.log",
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=2,
            encoding="utf-8",
        )
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)

    return logger


def log_failure(
    credential_id: str,
    provider: str,
    model: str,
    attempt: int,
    error: BaseException,
    classified: Optional[ClassifiedError] = None,
):
    """Logs a structured record for a failed upstream call."""
    raw_response = getattr(error, "body", None)
    if raw_response is None and hasattr(error, "response"):
        raw_response = getattr(error.response, "text", None)

    log_data = {
        "credential": mask_credential(credential_id),
        "provider": provider,
        "model": model,
        "attempt_number": attempt,
        "error_type": type(error).__name__,
        "error_message": str(error)[:500],
        "category": classified.category.value if classified else None,
        "status_code": classified.status_code if classified else None,
        "raw_response": raw_response[:2000] if isinstance(raw_response, str) else None,
    }
    logging.getLogger(FAILURE_LOGGER_NAME).error(log_data)
