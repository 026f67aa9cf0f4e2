"""UID ledger.

Persists, per mailbox, the set of UIDs already backed up, so later runs only
fetch new messages. Each mailbox gets a plain text file with one UID per line:

    {ledger_dir}/{sanitized_mailbox}.uids
    {ledger_dir}/{sanitized_mailbox}.uidvalidity

Saves are full rewrites through a temporary file and os.replace, so an
interrupted save leaves the previous ledger intact. A ledger with unparsable
lines is copied aside before anything can overwrite it.
"""

from __future__ import annotations

import os
import shutil
import time

import imap_common
from imap_errors import CorruptLedgerError

LEDGER_SUFFIX = ".uids"
UIDVALIDITY_SUFFIX = ".uidvalidity"


def sanitize_mailbox_key(mailbox_key: str) -> str:
    """Filesystem-safe form of a mailbox name: path separators become '_'."""
    return mailbox_key.replace("/", "_").replace("\\", "_")


def _timestamp() -> str:
    return time.strftime("%Y%m%d-%H%M%S")


def _atomic_write(path: str, text: str) -> None:
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


class UidLedger:
    """Durable record of processed UIDs, one file per mailbox."""

    def __init__(self, ledger_dir: str, reporter: imap_common.Reporter | None = None):
        self.ledger_dir = ledger_dir
        self.reporter = reporter or imap_common.Reporter()

    def path_for(self, mailbox_key: str) -> str:
        return os.path.join(self.ledger_dir, sanitize_mailbox_key(mailbox_key) + LEDGER_SUFFIX)

    def _uidvalidity_path(self, mailbox_key: str) -> str:
        return os.path.join(self.ledger_dir, sanitize_mailbox_key(mailbox_key) + UIDVALIDITY_SUFFIX)

    def _set_aside(self, path: str, label: str, *, move: bool) -> str:
        aside = f"{path}.{label}-{_timestamp()}"
        counter = 1
        while os.path.exists(aside):
            aside = f"{path}.{label}-{_timestamp()}-{counter}"
            counter += 1
        if move:
            os.replace(path, aside)
        else:
            shutil.copy2(path, aside)
        return aside

    def load(self, mailbox_key: str) -> set[int]:
        """
        Return the processed UIDs for a mailbox; empty if no ledger exists.

        Malformed lines are dropped with a warning: the original file is
        copied to `<ledger>.corrupt-<timestamp>` and the cleaned set is
        written back.

        Raises:
            CorruptLedgerError: the file exists but cannot be read or decoded.
        """
        path = self.path_for(mailbox_key)
        try:
            with open(path, encoding="utf-8") as f:
                lines = f.read().splitlines()
        except FileNotFoundError:
            return set()
        except (OSError, UnicodeDecodeError) as e:
            raise CorruptLedgerError(path, e) from e

        uids = set()
        bad_lines = []
        for lineno, line in enumerate(lines, 1):
            value = line.strip()
            if not value:
                continue
            if value.isascii() and value.isdigit():
                uids.add(int(value))
            else:
                bad_lines.append(lineno)

        if bad_lines:
            aside = self._set_aside(path, "corrupt", move=False)
            shown = ", ".join(str(n) for n in bad_lines[:5])
            more = "" if len(bad_lines) <= 5 else f" (+{len(bad_lines) - 5} more)"
            self.reporter.warn(
                f"Ignored {len(bad_lines)} malformed line(s) in {path} (line {shown}{more}); "
                f"original kept at {aside}"
            )
            self.save(mailbox_key, uids)
        return uids

    def save(self, mailbox_key: str, uids) -> str:
        """Overwrite the ledger with the complete, de-duplicated UID set."""
        os.makedirs(self.ledger_dir, exist_ok=True)
        path = self.path_for(mailbox_key)
        text = "".join(f"{uid}\n" for uid in sorted({int(u) for u in uids}))
        _atomic_write(path, text)
        return path

    def quarantine(self, mailbox_key: str) -> str | None:
        """Move an unreadable ledger out of the way. Returns the new path."""
        path = self.path_for(mailbox_key)
        if not os.path.exists(path):
            return None
        return self._set_aside(path, "corrupt", move=True)

    def load_uidvalidity(self, mailbox_key: str) -> int | None:
        try:
            with open(self._uidvalidity_path(mailbox_key), encoding="utf-8") as f:
                value = f.read().strip()
        except (FileNotFoundError, UnicodeDecodeError):
            return None
        return int(value) if value.isascii() and value.isdigit() else None

    def save_uidvalidity(self, mailbox_key: str, uidvalidity: int) -> None:
        os.makedirs(self.ledger_dir, exist_ok=True)
        _atomic_write(self._uidvalidity_path(mailbox_key), f"{int(uidvalidity)}\n")

    def reset(self, mailbox_key: str) -> str | None:
        """Start a new UID epoch: the current ledger is moved to `<ledger>.stale-<timestamp>`."""
        path = self.path_for(mailbox_key)
        if not os.path.exists(path):
            return None
        return self._set_aside(path, "stale", move=True)
