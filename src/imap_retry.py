"""
IMAP Retry Logic

Transparent retry wrapper for the backup connection. Servers such as
Microsoft 365 answer "NO [UNAVAILABLE] Server Busy" under load; those
responses are retried with exponential backoff instead of failing a message.
"""

from __future__ import annotations

import time

TRANSIENT_PATTERNS = (b"UNAVAILABLE", b"Server Busy", b"try again", b"THROTTLED")

# Commands the backup issues that are safe to repeat and return (typ, data)
RETRYABLE_METHODS = frozenset({"uid", "select", "list", "noop"})


def _is_transient_error(data):
    """Check if IMAP response data contains transient error patterns."""
    for item in data or []:
        if isinstance(item, tuple):
            item = item[0]
        if isinstance(item, str):
            item = item.encode("utf-8", errors="ignore")
        if isinstance(item, bytes) and any(pattern in item for pattern in TRANSIENT_PATTERNS):
            return True
    return False


class ConnectionProxy:
    """Wraps an imaplib connection and retries transient NO/BAD responses.

    Attribute access is forwarded to the wrapped connection. Methods listed in
    RETRYABLE_METHODS are retried up to max_retries attempts, waiting
    initial_wait * 2**attempt seconds between attempts.
    """

    def __init__(self, conn, max_retries=3, initial_wait=5, log_fn=None, sleep_fn=time.sleep):
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        if initial_wait < 0:
            raise ValueError(f"initial_wait must be >= 0, got {initial_wait}")
        self._conn = conn
        self._max_retries = max_retries
        self._initial_wait = initial_wait
        self._log_fn = log_fn
        self._sleep_fn = sleep_fn

    @property
    def wrapped(self):
        return self._conn

    def __getattr__(self, name):
        attr = getattr(self._conn, name)
        if name not in RETRYABLE_METHODS or not callable(attr):
            return attr

        def wrapper(*args, **kwargs):
            result = None
            for attempt in range(self._max_retries):
                result = attr(*args, **kwargs)
                if not isinstance(result, tuple) or len(result) < 2:
                    return result
                typ, data = result[0], result[1]
                if typ == "OK" or not _is_transient_error(data):
                    return result
                if attempt + 1 < self._max_retries:
                    wait = self._initial_wait * (2**attempt)
                    if self._log_fn is not None:
                        self._log_fn(
                            f"Server busy on {name.upper()}, retrying in {wait}s "
                            f"(attempt {attempt + 1}/{self._max_retries})"
                        )
                    self._sleep_fn(wait)
            return result

        return wrapper
