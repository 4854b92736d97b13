"""
Structured Logging for Service Bus Explorer

JSON log lines carrying the entity, receiver and lock context passed as keyword
arguments, a per-operation correlation id held in a context variable (so it
follows the purge, monitor and search tasks an operation starts), and redaction of
bearer tokens and SAS credentials before anything reaches a handler.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import contextvars
import json
import logging
import re
import time
import traceback
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Dict, Iterator, Optional


REDACTED = '***REDACTED***'

_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'sbexplorer_correlation_id', default=None
)

# Attributes every LogRecord has; anything else on a record came from ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', None, None))) | {'message', 'asctime'}

_SECRET_PATTERNS = (
    (re.compile(r'(Authorization:\s+)(?:Bearer\s+)?\S+', re.IGNORECASE), r'\1' + REDACTED),
    (re.compile(r'(Bearer\s+)[A-Za-z0-9\-_.~+/]+=*', re.IGNORECASE), r'\1' + REDACTED),
    (re.compile(r'(SharedAccessSignature\s+)\S+', re.IGNORECASE), r'\1' + REDACTED),
    (re.compile(r'(SharedAccessSignature=)[^;&]+', re.IGNORECASE), r'\1' + REDACTED),
    (re.compile(r'(SharedAccessKey=)[^;]+', re.IGNORECASE), r'\1' + REDACTED),
    (re.compile(r'(sig=)[^;&\s]+', re.IGNORECASE), r'\1' + REDACTED),
    # Bare JWTs, e.g. a CBS token echoed in an error description
    (re.compile(r'\beyJ[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]*'), REDACTED),
)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


@contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """
    Run a block under a correlation id.

    Without an explicit id the enclosing scope's id is kept, so nested
    operations (resend calling send, for instance) log under the outer one.
    """
    current = _correlation_id.get()
    value = correlation_id or current or uuid.uuid4().hex
    token = _correlation_id.set(value)
    try:
        yield value
    finally:
        _correlation_id.reset(token)


def redact(text: str) -> str:
    """Mask credentials embedded in ``text``."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class SensitiveDataFilter(logging.Filter):
    """Redacts credentials from the message and string extras of each record."""

    SENSITIVE_FIELDS = frozenset({'token', 'bearer_token', 'access_token', 'sas_token'})

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)
        for key, value in list(vars(record).items()):
            if key in _RECORD_ATTRS or key.startswith('_') or not value:
                continue
            if key in self.SENSITIVE_FIELDS:
                setattr(record, key, REDACTED)
            elif isinstance(value, str):
                setattr(record, key, redact(value))
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: fixed fields first, then the extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'ts': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        correlation_id = get_correlation_id()
        if correlation_id:
            entry['correlation_id'] = correlation_id
        entry.update(
            (key, value) for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith('_')
        )
        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, tb = record.exc_info
            entry['exception'] = {
                'type': exc_type.__name__,
                'message': str(exc),
                'traceback': ''.join(traceback.format_exception(exc_type, exc, tb)),
            }
        return json.dumps(entry, default=str)


class StructuredLogger:
    """
    Logger taking context as keyword arguments.

    Keywords become ``extra`` fields on the record; ``None`` values are
    dropped so optional context (a lock token, a sequence number) can be passed
    unconditionally.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def log(self, level: int, message: str, exc_info: bool = False, **context: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        extra = {k: v for k, v in context.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra=extra)

    def debug(self, message: str, **context: Any) -> None:
        self.log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self.log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self.log(logging.WARNING, message, **context)

    def error(self, message: str, exc_info: bool = False, **context: Any) -> None:
        self.log(logging.ERROR, message, exc_info=exc_info, **context)

    def log_operation(self, operation: str, entity_path: str, **context: Any) -> None:
        """Completed entity operation, at info."""
        self.info(f"{operation} on {entity_path}", operation=operation,
                  entity_path=entity_path, **context)

    def log_lock_operation(self, operation: str, entity_path: str,
                           lock_token: Optional[str] = None, **context: Any) -> None:
        """Registry or settlement step for one lock token, at debug."""
        self.debug(f"{operation} lock {lock_token} on {entity_path}", operation=operation,
                   entity_path=entity_path, lock_token=lock_token, **context)

    def log_error(self, operation: str, error_type: str, error_message: str, **context: Any) -> None:
        self.error(f"{operation} failed: {error_message}", operation=operation,
                   error_type=error_type, error_message=error_message, **context)


def track_operation_time(logger: StructuredLogger, operation: str):
    """
    Decorate a coroutine function so every call runs in a correlation scope
    and logs its duration: at debug on success, at error on failure.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            with correlation_scope():
                started = time.perf_counter()
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    logger.error(f"{operation} failed", operation=operation,
                                 duration_ms=round((time.perf_counter() - started) * 1000, 2),
                                 error_type=type(e).__name__, error_message=str(e))
                    raise
                logger.debug(f"{operation} completed", operation=operation,
                             duration_ms=round((time.perf_counter() - started) * 1000, 2))
                return result
        return wrapper
    return decorator


def configure_logging(level: str = "INFO", json_format: bool = True,
                      log_file: Optional[str] = None) -> None:
    """
    Replace the root handlers with a stderr handler (and optionally a file).

    Args:
        level: Log level name for the root and ``sbexplorer`` loggers
        json_format: JSON lines when True, a plain text layout otherwise
        log_file: Optional file receiving the same records as stderr
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    formatter = StructuredFormatter() if json_format else logging.Formatter(
        '%(asctime)s %(levelname)-8s %(name)s: %(message)s'
    )

    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(SensitiveDataFilter())
        root.addHandler(handler)
    root.setLevel(log_level)
    logging.getLogger('sbexplorer').setLevel(log_level)
