"""
Tests for imap_retry.py

Tests cover:
- Transient error detection
- ConnectionProxy transparent proxying
- Retry with exponential backoff on transient errors
- Pass-through for non-retryable methods and non-transient errors
"""

import os
import sys
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

import imap_retry
from imap_retry import ConnectionProxy

BUSY = ("NO", [b"[UNAVAILABLE] Server Busy"])


class TestIsTransientError:
    def test_patterns(self):
        assert imap_retry._is_transient_error([b"[UNAVAILABLE] Server Busy"])
        assert imap_retry._is_transient_error([b"please try again later"])
        assert imap_retry._is_transient_error(["[THROTTLED]"])
        assert imap_retry._is_transient_error([(b"[UNAVAILABLE]", b"literal")])

    def test_not_transient(self):
        assert not imap_retry._is_transient_error([b"[AUTHENTICATIONFAILED]"])
        assert not imap_retry._is_transient_error([None])
        assert not imap_retry._is_transient_error(None)


class TestConnectionProxy:
    def _proxy(self, conn, **kwargs):
        self.sleeps = []
        return ConnectionProxy(conn, initial_wait=1, sleep_fn=self.sleeps.append, **kwargs)

    def test_attributes_forwarded(self):
        conn = MagicMock()
        conn.state = "SELECTED"
        proxy = self._proxy(conn)
        assert proxy.state == "SELECTED"
        assert proxy.wrapped is conn

    def test_retries_transient_then_succeeds(self):
        conn = MagicMock()
        conn.uid.side_effect = [BUSY, BUSY, ("OK", [b"1 2"])]
        log = []
        proxy = self._proxy(conn, log_fn=log.append)

        assert proxy.uid("SEARCH", None, "ALL") == ("OK", [b"1 2"])
        assert conn.uid.call_count == 3
        assert self.sleeps == [1, 2]
        assert len(log) == 2

    def test_gives_up_after_max_retries(self):
        conn = MagicMock()
        conn.select.return_value = BUSY
        proxy = self._proxy(conn, max_retries=2)

        assert proxy.select('"INBOX"') == BUSY
        assert conn.select.call_count == 2
        assert self.sleeps == [1]

    def test_non_transient_not_retried(self):
        conn = MagicMock()
        conn.select.return_value = ("NO", [b"[NONEXISTENT] Unknown mailbox"])
        proxy = self._proxy(conn)

        assert proxy.select('"Missing"')[0] == "NO"
        assert conn.select.call_count == 1

    def test_login_not_retried(self):
        conn = MagicMock()
        conn.login.return_value = BUSY
        proxy = self._proxy(conn)

        proxy.login("user", "pass")
        assert conn.login.call_count == 1
        assert self.sleeps == []

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            ConnectionProxy(MagicMock(), max_retries=0)
        with pytest.raises(ValueError):
            ConnectionProxy(MagicMock(), initial_wait=-1)
