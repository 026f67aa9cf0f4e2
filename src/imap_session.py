"""
IMAP Session Management

ImapSession wraps one stateful imaplib connection and exposes the handful of
operations the backup needs. Protocol failures are translated into the
exceptions from imap_errors so callers can tell fatal errors (connection,
authentication) from per-mailbox and per-message ones.
"""

from __future__ import annotations

import imaplib
import socket
import ssl

import imap_common
import imap_oauth2
import imap_retry
from imap_errors import ImapAuthError, ImapConnectionError, MailboxAccessError, MessageFetchError

# BODY.PEEK does not set \Seen; RFC822 is a plain read and does.
FETCH_FLAGS = "(FLAGS)"
FETCH_HEADERS = "(BODY.PEEK[HEADER])"
FETCH_MESSAGE = "(RFC822)"


def quote_mailbox(name):
    """Quote a mailbox name for use as an IMAP astring."""
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _describe(typ, data):
    parts = []
    for item in data or []:
        if isinstance(item, bytes):
            parts.append(item.decode("utf-8", errors="ignore"))
        elif item is not None:
            parts.append(str(item))
    return f"{typ} {' '.join(parts)}".strip()


class ImapSession:
    """A single IMAP connection for one backup run.

    Use `ImapSession.open(config, reporter)` to connect and log in, or call
    `connect()` and `login()` separately.
    """

    def __init__(self, config, reporter=None):
        self.config = config
        self.reporter = reporter or imap_common.Reporter(config.verbosity)
        self._conn = None
        self.selected = None

    @classmethod
    def open(cls, config, reporter=None):
        session = cls(config, reporter)
        session.connect()
        try:
            session.login()
        except (ImapAuthError, ImapConnectionError):
            session.logout()
            raise
        return session

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.logout()
        return False

    @property
    def connection(self):
        if self._conn is None:
            raise ImapConnectionError("Not connected")
        return self._conn

    def _create_connection(self, host, port, use_ssl):
        if use_ssl:
            return imaplib.IMAP4_SSL(
                host, port, ssl_context=ssl.create_default_context(), timeout=self.config.timeout
            )
        return imaplib.IMAP4(host, port, timeout=self.config.timeout)

    def connect(self):
        """Open the network connection. Raises ImapConnectionError."""
        try:
            host, port, use_ssl = self.config.endpoint()
        except ValueError as e:
            raise ImapConnectionError(str(e)) from e

        try:
            raw = self._create_connection(host, port, use_ssl)
        except socket.gaierror as e:
            raise ImapConnectionError(f"Cannot resolve host {host}: {e}") from e
        except (OSError, imaplib.IMAP4.error) as e:
            raise ImapConnectionError(f"Cannot connect to {host}:{port}: {e}") from e

        if self.config.debug:
            raw.debug = self.config.debug
        self._conn = imap_retry.ConnectionProxy(
            raw,
            max_retries=self.config.max_retries,
            initial_wait=self.config.retry_wait,
            log_fn=self.reporter.warn,
        )
        self.reporter.detail(f"Connected to {host}:{port} ({'TLS' if use_ssl else 'plain'})")

    def login(self):
        """Authenticate with a password or an OAuth2 token. Raises ImapAuthError."""
        conn = self.connection
        user = self.config.user
        try:
            if self.config.oauth2_client_id:
                token = imap_oauth2.acquire_token(
                    self.config.host,
                    self.config.oauth2_client_id,
                    user,
                    self.config.oauth2_client_secret,
                    print_fn=self.reporter.info,
                )
                auth_string = imap_oauth2.build_xoauth2_string(user, token)
                conn.authenticate("XOAUTH2", lambda _: auth_string.encode())
            else:
                conn.login(user, self.config.password)
        except imaplib.IMAP4.error as e:
            raise ImapAuthError(f"Login failed for {user}: {e}") from e
        except OSError as e:
            raise ImapConnectionError(f"Connection lost during login: {e}") from e
        self.reporter.detail(f"Logged in as {user}")

    def logout(self):
        if self._conn is None:
            return
        try:
            self._conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass
        self._conn = None
        self.selected = None

    def list_mailboxes(self):
        """Return the selectable mailbox names in server order."""
        try:
            typ, data = self.connection.list()
        except (imaplib.IMAP4.error, OSError) as e:
            raise ImapConnectionError(f"LIST failed: {e}") from e
        if typ != "OK":
            raise ImapConnectionError(f"LIST failed: {_describe(typ, data)}")

        names = []
        for entry in data or []:
            if entry is None:
                continue
            if isinstance(entry, tuple):
                # Literal mailbox name: (b'(\\HasNoChildren) "/" {5}', b'Inbox')
                entry = entry[0].rsplit(b"{", 1)[0] + b'"' + entry[1] + b'"'
            if not imap_common.is_selectable_folder(entry):
                continue
            names.append(imap_common.normalize_folder_name(entry))
        return names

    def select_mailbox(self, name, readonly=False):
        """
        Select a mailbox. Returns its UIDVALIDITY (int) or None if the server
        did not report one. Raises MailboxAccessError.
        """
        try:
            typ, data = self.connection.select(quote_mailbox(name), readonly=readonly)
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxAccessError(name, e) from e
        if typ != "OK":
            raise MailboxAccessError(name, _describe(typ, data))
        self.selected = name

        _, values = self.connection.response("UIDVALIDITY")
        for value in values or []:
            if value is None:
                continue
            if isinstance(value, bytes):
                value = value.decode("ascii", errors="ignore")
            value = str(value).strip()
            if value.isascii() and value.isdigit():
                return int(value)
        return None

    def search_all_uids(self):
        """UID SEARCH ALL in the selected mailbox, as ascending ints."""
        try:
            typ, data = self.connection.uid(imap_common.CMD_SEARCH, None, "ALL")
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxAccessError(self.selected, f"UID SEARCH failed: {e}") from e
        if typ != "OK":
            raise MailboxAccessError(self.selected, f"UID SEARCH failed: {_describe(typ, data)}")
        return sorted(set(imap_common.parse_uid_list(data)))

    def _uid_fetch(self, uid, items, what):
        try:
            typ, data = self.connection.uid(imap_common.CMD_FETCH, str(uid), items)
        except (imaplib.IMAP4.error, OSError) as e:
            raise MessageFetchError(uid, what, e) from e
        if typ != "OK" or not data or data[0] is None:
            raise MessageFetchError(uid, what, _describe(typ, data) or "no data")
        return data

    def fetch_flags(self, uid):
        return imap_common.parse_fetch_flags(self._uid_fetch(uid, FETCH_FLAGS, "flags"))

    def fetch_headers(self, uid):
        literal = imap_common.extract_literal(self._uid_fetch(uid, FETCH_HEADERS, "headers"))
        if literal is None:
            raise MessageFetchError(uid, "headers", "empty response")
        return literal

    def fetch_raw_message(self, uid):
        literal = imap_common.extract_literal(self._uid_fetch(uid, FETCH_MESSAGE, "message"))
        if not literal:
            raise MessageFetchError(uid, "message", "empty content")
        return literal

    def set_flag(self, uid, flag, add=True):
        """UID STORE a single flag. Returns True on success."""
        op = imap_common.OP_ADD_FLAGS if add else imap_common.OP_REMOVE_FLAGS
        try:
            typ, _ = self.connection.uid(imap_common.CMD_STORE, str(uid), op, f"({flag})")
        except (imaplib.IMAP4.error, OSError):
            return False
        return typ == "OK"
