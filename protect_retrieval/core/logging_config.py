"""
Structured JSON Logging Configuration

Provides centralized logging configuration with:
- JSON formatted output for machine parsing
- Retrieval ID tracking via contextvars, so every log line of one
  retrieval call can be correlated
- Flattening of controller-supplied text (event links, page errors) so it
  cannot forge log lines
- Optional file rotation when a log directory is configured
"""
import contextvars
import logging
import logging.handlers
import os
from datetime import datetime, timezone
from typing import Optional

from pythonjsonlogger import jsonlogger

from protect_retrieval.core.config import settings

# Context variable for retrieval ID propagation
retrieval_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'retrieval_id', default=None
)

# Extra fields whose values originate from the controller or the browser
CONTROLLER_FIELDS = ("error_message", "event_local_link", "url", "reason", "suggested_filename")

MAX_LOG_VALUE_LENGTH = 2000

# (file name, max bytes, backups, minimum level)
LOG_FILES = (
    ("retrieval.log", 50 * 1024 * 1024, 5, None),
    ("error.log", 10 * 1024 * 1024, 3, logging.ERROR),
)


def sanitize_log_value(value) -> str:
    """
    Flatten a value for safe logging.

    CR/LF become spaces and overlong values (full page text, stack dumps from
    the Playwright driver) are truncated.
    """
    if not isinstance(value, str):
        value = str(value)

    flattened = value.replace('\r\n', ' ').replace('\n', ' ').replace('\r', ' ')
    if len(flattened) > MAX_LOG_VALUE_LENGTH:
        flattened = flattened[:MAX_LOG_VALUE_LENGTH] + '...[truncated]'
    return flattened


class RetrievalIdFilter(logging.Filter):
    """
    Logging filter that adds retrieval_id to all log records.

    Each orchestrated retrieval sets its own ID; concurrent retrievals run in
    separate asyncio tasks and therefore see separate context values.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.retrieval_id = retrieval_id_var.get() or "-"
        return True


class SanitizingFilter(logging.Filter):
    """Runs the message, its string args and controller fields through sanitize_log_value."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = sanitize_log_value(record.msg)

        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                sanitize_log_value(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )

        for name in CONTROLLER_FIELDS:
            value = getattr(record, name, None)
            if isinstance(value, str):
                setattr(record, name, sanitize_log_value(value))

        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter that adds standard fields to all log entries.

    Output format:
    {
        "timestamp": "2025-11-23T10:30:00.000Z",
        "level": "INFO",
        "message": "Browser session released",
        "module": "browser_session",
        "retrieval_id": "uuid-here",
        "logger": "protect_retrieval.services.browser_session",
        ...extra fields...
    }
    """

    def add_fields(
        self,
        log_record: dict,
        record: logging.LogRecord,
        message_dict: dict
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        if not log_record.get('timestamp'):
            log_record['timestamp'] = datetime.now(timezone.utc).isoformat()

        log_record['level'] = record.levelname
        log_record['module'] = record.module
        log_record['logger'] = record.name
        log_record['retrieval_id'] = getattr(record, 'retrieval_id', '-')

        if record.funcName:
            log_record['function'] = record.funcName

        if 'message' not in log_record:
            log_record['message'] = record.getMessage()


def _configure_handler(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(RetrievalIdFilter())
    handler.addFilter(SanitizingFilter())
    return handler


def setup_logging(
    log_level: Optional[str] = None,
    log_dir: Optional[str] = None,
) -> logging.Logger:
    """
    Configure logging with JSON format.

    Args:
        log_level: Override log level (default from settings.LOG_LEVEL)
        log_dir: Directory for rotating log files (default settings.LOG_DIR;
            console only when neither is set)

    Returns:
        Root logger configured for the library
    """
    level = getattr(logging, (log_level or settings.LOG_LEVEL).upper(), logging.INFO)
    directory = log_dir or settings.LOG_DIR
    formatter = CustomJsonFormatter('%(timestamp)s %(level)s %(name)s %(message)s')

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(_configure_handler(logging.StreamHandler(), level, formatter))

    if directory:
        os.makedirs(directory, exist_ok=True)
        for filename, max_bytes, backups, min_level in LOG_FILES:
            handler = logging.handlers.RotatingFileHandler(
                os.path.join(directory, filename),
                maxBytes=max_bytes,
                backupCount=backups,
                encoding='utf-8'
            )
            root_logger.addHandler(_configure_handler(handler, min_level or level, formatter))

    # Playwright's driver logs every protocol message at DEBUG
    logging.getLogger('playwright').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)

    return root_logger


def set_retrieval_id(retrieval_id: Optional[str]) -> contextvars.Token:
    """
    Set the retrieval ID for the current context.

    Returns:
        Token that can be used to reset the context
    """
    return retrieval_id_var.set(retrieval_id)


def get_retrieval_id() -> Optional[str]:
    return retrieval_id_var.get()


def clear_retrieval_id(token: contextvars.Token) -> None:
    """Reset the retrieval ID context using the token from set_retrieval_id."""
    retrieval_id_var.reset(token)
