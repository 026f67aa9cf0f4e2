"""
Shared pytest fixtures and utilities for the IMAP backup tests.
"""

import os
import sys
from email.message import EmailMessage

import pytest

# Ensure src/tools are in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../tools")))

from backup_config import BackupConfig
from imap_common import VERBOSITY_VERBOSE
from imap_errors import MailboxAccessError, MessageFetchError
from mock_imap_server import start_server_thread


def build_message(
    subject="Test",
    sender="Alice <alice@example.com>",
    date="Mon, 02 Jan 2023 10:00:00 +0000",
    body="Hello",
    attachments=None,
):
    """Build raw RFC822 bytes. attachments: list of (filename, bytes, maintype/subtype)."""
    msg = EmailMessage()
    msg["Subject"] = subject
    if sender is not None:
        msg["From"] = sender
    if date is not None:
        msg["Date"] = date
    msg["Message-ID"] = f"<{abs(hash((subject, sender, date)))}@test>"
    msg.set_content(body)
    for filename, payload, mime in attachments or []:
        maintype, subtype = mime.split("/", 1)
        msg.add_attachment(payload, maintype=maintype, subtype=subtype, filename=filename)
    return msg.as_bytes().replace(b"\r\n", b"\n").replace(b"\n", b"\r\n")


@pytest.fixture
def single_mock_server():
    """
    Creates a mock IMAP server. Returns (server, port); shut down after the test.
    """
    servers = []

    def _create(initial_data=None):
        server, port = start_server_thread(0, initial_data)
        servers.append(server)
        return server, port

    yield _create

    for server in servers:
        server.shutdown()
        server.server_close()


def make_config(dest_path, port=None, **overrides):
    """BackupConfig pointing at a local plain-text mock server."""
    values = {
        "host": "localhost",
        "user": "user",
        "password": "pass",
        "port": port,
        "use_ssl": False,
        "dest_path": str(dest_path),
        "timeout": 5,
        "assume_yes": True,
        "verbosity": VERBOSITY_VERBOSE,
        "retry_wait": 0,
    }
    values.update(overrides)
    return BackupConfig(**values)


class FakeSession:
    """In-memory stand-in for ImapSession.

    folders: {name: {uid: {"content": bytes, "flags": set}}}. Fetching the
    full message adds \\Seen, as a real server does.
    """

    def __init__(self, folders, uidvalidity=None):
        self.folders = folders
        self.uidvalidity = uidvalidity or {}
        self.selected = None
        self.calls = []
        self.fail = {}  # (operation, uid) -> reason
        self.unselectable = set()

    def list_mailboxes(self):
        return list(self.folders)

    def select_mailbox(self, name, readonly=False):
        self.calls.append(("select", name))
        if name not in self.folders or name in self.unselectable:
            raise MailboxAccessError(name, "NO [NONEXISTENT] Folder not found")
        self.selected = name
        return self.uidvalidity.get(name, 1)

    def search_all_uids(self):
        self.calls.append(("search", self.selected))
        return sorted(self.folders[self.selected])

    def _message(self, uid, what):
        self.calls.append((what, uid))
        if (what, uid) in self.fail:
            raise MessageFetchError(uid, what, self.fail[(what, uid)])
        return self.folders[self.selected][uid]

    def fetch_flags(self, uid):
        return set(self._message(uid, "flags")["flags"])

    def fetch_headers(self, uid):
        return self._message(uid, "headers")["content"].split(b"\r\n\r\n", 1)[0] + b"\r\n\r\n"

    def fetch_raw_message(self, uid):
        msg = self._message(uid, "message")
        msg["flags"].add("\\Seen")
        return msg["content"]

    def set_flag(self, uid, flag, add=True):
        self.calls.append(("store", uid))
        flags = self.folders[self.selected][uid]["flags"]
        if add:
            flags.add(flag)
        else:
            flags.discard(flag)
        return True

    def fetched_uids(self):
        return [uid for what, uid in self.calls if what == "message"]


def server_flags(server, folder, uid):
    for m in server.folders[folder]:
        if m["uid"] == uid:
            return set(m["flags"])
    raise KeyError(uid)


__all__ = [
    "FakeSession",
    "build_message",
    "make_config",
    "server_flags",
    "single_mock_server",
]
