# src/credential_orchestrator/failure_logger.py

import logging
import json
from logging.handlers import RotatingFileHandler
import os
from datetime import datetime, timezone
from typing import Optional

from .error_handler import ClassifiedError, mask_credential
from .models import AcquisitionSession

# Module-level state for resilience
_file_handler: Optional[RotatingFileHandler] = None
_handler_dir: Optional[str] = None
_fallback_mode = False


class JsonFormatter(logging.Formatter):
    def format(self, record):
        # The message is already a dict, so we just format it as a JSON string
        return json.dumps(record.msg, default=str)


def _create_file_handler(log_dir: str) -> Optional[RotatingFileHandler]:
    """Create file handler with directory auto-recreation."""
    global _file_handler, _handler_dir, _fallback_mode

    try:
        os.makedirs(log_dir, exist_ok=True)
        handler = RotatingFileHandler(
            os.path.join(log_dir, "failures.log"),
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=2,
            encoding="utf-8",
        )
        handler.setFormatter(JsonFormatter())
    except OSError as e:
        logging.warning(f"Cannot create failure log file handler: {e}")
        _fallback_mode = True
        return None

    if _file_handler is not None:
        _file_handler.close()
    _file_handler = handler
    _handler_dir = log_dir
    _fallback_mode = False
    return handler


def _get_failure_logger(log_dir: str) -> logging.Logger:
    """Returns the dedicated JSON logger, (re)creating its file handler when needed."""
    logger = logging.getLogger("credential_orchestrator.failures")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    if _file_handler is None or _fallback_mode or _handler_dir != log_dir:
        handler = _create_file_handler(log_dir)
        logger.handlers.clear()
        logger.addHandler(handler if handler else logging.NullHandler())
    return logger


# The main library logger for concise, propagated messages
main_lib_logger = logging.getLogger("credential_orchestrator")


def _error_chain(error: Optional[BaseException]):
    chain = []
    visited = set()
    current = error
    while current is not None and id(current) not in visited:
        visited.add(id(current))
        chain.append({"type": type(current).__name__, "message": str(current)[:2000]})
        current = current.__cause__ or current.__context__
        if len(chain) > 5:
            break
    return chain


def log_failure(session: AcquisitionSession, error: ClassifiedError, log_dir: str = "logs"):
    """
    Logs a detailed failure record to ``<log_dir>/failures.log`` and a concise
    summary to the library logger.

    Only masked hints of codes and secrets are written.
    """
    cause = error.original_cause
    detailed_log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "session_id": session.id,
        "provider_id": session.provider_id,
        "strategy": session.strategy.value,
        "display_name": session.display_name,
        "kind": error.kind.value,
        "retryable": error.retryable,
        "status_code": error.status_code,
        "retry_after": error.retry_after,
        "user_code_ending": mask_credential(session.user_facing_code) if session.user_facing_code else None,
        "error_type": type(cause).__name__ if cause is not None else None,
        "error_message": str(cause)[:5000] if cause is not None else None,
        "error_chain": _error_chain(cause) or None,
    }

    summary_message = (
        f"Acquisition session {session.id} for '{session.provider_id}' "
        f"({session.strategy.value}) failed: {error.kind.value}. See failures.log for details."
    )

    failure_logger = _get_failure_logger(log_dir)
    try:
        failure_logger.error(detailed_log_data)
    except (OSError, ValueError) as e:
        global _fallback_mode
        _fallback_mode = True
        # File logging failed - log to console instead
        logging.error(f"Failed to write to failures.log: {e}")
        logging.error(f"Failure summary: {summary_message}")

    main_lib_logger.error(summary_message)
