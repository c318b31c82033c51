"""JSON structured logging with mandatory fields and PII redaction."""
import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Optional

from backend.core.config import settings

# Thread-local storage for context
import threading
_context = threading.local()

_RESERVED_ATTRS = frozenset(
    (
        'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
        'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
        'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
        'processName', 'process', 'message', 'taskName',
    )
)


class JSONFormatter(logging.Formatter):
    """JSON formatter with mandatory fields and PII redaction."""

    def __init__(self):
        super().__init__()
        # Raw invoice text regularly carries bank details and contact data
        self.iban_pattern = re.compile(r'\b([A-Z]{2}\d{2}(?:\s?[A-Z0-9]{4}){3,7}(?:\s?[A-Z0-9]{1,3})?)\b')
        self.email_pattern = re.compile(r'(\b\S+@\S+\.\S+\b)')

    def _redact_pii(self, text: str) -> str:
        """Redact PII from text."""
        if not isinstance(text, str):
            return text
        text = self.iban_pattern.sub(self._mask_iban, text)
        text = self.email_pattern.sub(self._mask_email, text)
        return text

    def _mask_iban(self, match) -> str:
        """Mask IBAN: show country code, mask the rest."""
        iban = match.group(1).replace(" ", "")
        return iban[:2] + "*" * (len(iban) - 2)

    def _mask_email(self, match) -> str:
        """Mask email: show first char of user, keep domain."""
        email = match.group(1)
        if "@" not in email:
            return email
        user, domain = email.split("@", 1)
        if len(user) <= 1:
            masked_user = "*"
        else:
            masked_user = user[0] + "*" * (len(user) - 1)
        return f"{masked_user}@{domain}"

    def format(self, record):
        """Format log record as JSON with mandatory fields and PII redaction."""
        log_entry = {
            'trace_id': getattr(_context, 'trace_id', None) or 'unknown',
            'vendor': getattr(_context, 'vendor', None) or 'unknown',
            'invoice_id': getattr(_context, 'invoice_id', None),
            'level': record.levelname.lower(),
            'logger': record.name,
            'msg': self._redact_pii(record.getMessage()),
            'ts_utc': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
        }

        if record.exc_info:
            log_entry['exc_info'] = self.formatException(record.exc_info)

        # Extra fields passed via logger.info(..., extra={...})
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            if isinstance(value, str):
                value = self._redact_pii(value)
            log_entry[key] = value

        return json.dumps(log_entry, default=str)


def set_trace_id(trace_id: Optional[str]) -> None:
    """Set trace ID for current thread context."""
    _context.trace_id = trace_id


def set_invoice_context(vendor: Optional[str], invoice_id: Optional[str]) -> None:
    """Bind vendor and invoice id to log records of the current thread."""
    _context.vendor = vendor
    _context.invoice_id = invoice_id


def clear_context() -> None:
    for attr in ('trace_id', 'vendor', 'invoice_id'):
        if hasattr(_context, attr):
            delattr(_context, attr)


def init_logging(level: Optional[str] = None) -> None:
    """Initialize JSON logging with mandatory fields."""
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, (level or settings.log_level).upper(), logging.INFO))

    # Remove existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    # stderr keeps stdout free for JSON pipeline output of the CLIs
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get logger with JSON formatting."""
    return logging.getLogger(name)
