"""
Logging utilities for safe log output.

Provider URLs carry credentials (query parameters for the player API,
path segments for live stream URLs), and channel names come straight
from untrusted playlists. The LogRecord factory installed here escapes
line breaks in log arguments and masks credentials before a record is
formatted.

Install once at startup via install_safe_logging().
"""

import logging
import re

_ORIGINAL_FACTORY = logging.getLogRecordFactory()

REDACTED = "***"

_QUERY_SECRET_RE = re.compile(r"(?i)([?&](?:username|password)=)[^&#\s]*")
_LIVE_PATH_RE = re.compile(r"(?i)(/(?:live|movie|series|timeshift)/)[^/\s]+/[^/\s]+/")


def redact_url(value: str) -> str:
    """Mask provider credentials embedded in a URL."""
    value = _QUERY_SECRET_RE.sub(lambda m: m.group(1) + REDACTED, value)
    return _LIVE_PATH_RE.sub(lambda m: f"{m.group(1)}{REDACTED}/{REDACTED}/", value)


def _sanitize_value(value):
    """Escape line breaks and mask credentials in a string log argument."""
    if isinstance(value, str):
        value = value.replace('\r\n', '\\r\\n').replace('\r', '\\r').replace('\n', '\\n')
        if "://" in value:
            value = redact_url(value)
    return value


def _safe_record_factory(*args, **kwargs):
    record = _ORIGINAL_FACTORY(*args, **kwargs)
    if record.args:
        if isinstance(record.args, dict):
            record.args = {k: _sanitize_value(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(_sanitize_value(a) for a in record.args)
    elif isinstance(record.msg, str) and "://" in record.msg:
        # f-string messages arrive pre-formatted with no args
        record.msg = redact_url(record.msg)
    return record


def install_safe_logging():
    """
    Install a global LogRecord factory that sanitizes all log arguments.

    Call once during application startup, before any logging occurs.
    """
    logging.setLogRecordFactory(_safe_record_factory)
