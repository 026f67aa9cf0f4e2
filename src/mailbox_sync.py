"""
Mailbox Synchronization

Incremental backup of one mailbox. The remote UID set is compared with the
ledger of UIDs already backed up; only the difference is fetched, in ascending
UID order, and the ledger is rewritten once at the end of the mailbox.

Messages that are already on disk but missing from the ledger (for example
after a run was killed before the ledger save) are detected by their artifact
path and folded back into the ledger without being fetched again.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

import imap_common
from imap_errors import ArtifactWriteError, CorruptLedgerError, MailboxAccessError, MessageFetchError
from message_materializer import MessageMetadata
from uid_ledger import sanitize_mailbox_key


@dataclass(frozen=True)
class Mailbox:
    name: str

    @property
    def sanitized_name(self) -> str:
        return sanitize_mailbox_key(self.name)


@dataclass
class ReconcileReport:
    mailbox: str
    remote_total: int = 0
    fetched: int = 0
    skipped: int = 0
    already_present: int = 0
    failed: int = 0
    error: str | None = None
    uidvalidity_reset: bool = False
    failed_uids: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and self.failed == 0


def compute_uids_to_fetch(remote_uids, processed_uids) -> list[int]:
    """UIDs present on the server but not in the ledger, ascending."""
    return sorted(set(remote_uids) - set(processed_uids))


def _is_unread(flags) -> bool:
    return imap_common.FLAG_SEEN.lower() not in {f.lower() for f in flags}


def _check_uidvalidity(mailbox, uidvalidity, ledger, report, reporter):
    """Reset the ledger when the server started a new UID epoch. Returns True if the value must be saved."""
    if uidvalidity is None:
        return False
    stored = ledger.load_uidvalidity(mailbox.name)
    if stored is None:
        return True
    if stored == uidvalidity:
        return False
    aside = ledger.reset(mailbox.name)
    report.uidvalidity_reset = True
    reporter.warn(
        f"[{mailbox.name}] UIDVALIDITY changed ({stored} -> {uidvalidity}); "
        f"previous ledger moved to {aside or '(none)'}, all messages will be re-checked"
    )
    return True


def _load_processed(mailbox, ledger, reporter):
    try:
        return ledger.load(mailbox.name)
    except CorruptLedgerError as e:
        aside = ledger.quarantine(mailbox.name)
        reporter.warn(f"[{mailbox.name}] {e}; moved to {aside}, starting from an empty ledger")
        return set()


def _backup_message(uid, mailbox, session, materializer, target_dir, processed, report, reporter):
    unread = False
    content_fetched = False
    try:
        # Flags first: fetching the body marks the message \Seen on most servers
        unread = _is_unread(session.fetch_flags(uid))
        metadata = MessageMetadata.from_headers(uid, session.fetch_headers(uid))
        path = materializer.artifact_path(metadata, target_dir)
        if os.path.exists(path):
            processed.add(uid)
            report.already_present += 1
            reporter.detail(f"[{mailbox.name}] EXISTS | {os.path.basename(path)[:60]}")
            return

        raw_email = session.fetch_raw_message(uid)
        content_fetched = True
        result = materializer.materialize(raw_email, metadata, target_dir)
    except (MessageFetchError, ArtifactWriteError) as e:
        report.failed += 1
        report.failed_uids.append(uid)
        reporter.error(f"[{mailbox.name}] {e}")
        return
    finally:
        # Any content fetch, including one that lost the race to an existing artifact, set \Seen
        if content_fetched and unread and not session.set_flag(uid, imap_common.FLAG_SEEN, add=False):
            reporter.warn(f"[{mailbox.name}] Could not restore unread state of UID {uid}")

    processed.add(uid)
    filename = os.path.basename(result.path)
    if result.saved:
        report.fetched += 1
        reporter.detail(f"[{mailbox.name}] SAVED  | {filename[:60]}")
        if result.attachments:
            reporter.detail(f"[{mailbox.name}]   + {len(result.attachments)} attachment(s)")
    else:
        report.already_present += 1
        reporter.detail(f"[{mailbox.name}] EXISTS | {filename[:60]}")


def _commit(mailbox, ledger, processed, original, uidvalidity, save_uidvalidity, report, reporter):
    try:
        if processed != original:
            ledger.save(mailbox.name, processed)
        if save_uidvalidity:
            ledger.save_uidvalidity(mailbox.name, uidvalidity)
    except OSError as e:
        report.error = f"Could not save ledger for '{mailbox.name}': {e}"
        reporter.error(report.error)


def reconcile_mailbox(mailbox, session, ledger, materializer, target_dir, reporter=None) -> ReconcileReport:
    """
    Back up the messages of `mailbox` that the ledger does not know yet.

    A mailbox that cannot be selected or searched is reported in
    `ReconcileReport.error`; a message that cannot be fetched or written is
    counted in `failed` and left out of the ledger so the next run retries it.
    Neither stops the caller from continuing with other mailboxes.
    """
    reporter = reporter or imap_common.Reporter()
    report = ReconcileReport(mailbox.name)

    try:
        uidvalidity = session.select_mailbox(mailbox.name)
        remote_uids = session.search_all_uids()
    except MailboxAccessError as e:
        report.error = str(e)
        reporter.error(f"Skipping {mailbox.name}: {e}")
        return report

    save_uidvalidity = _check_uidvalidity(mailbox, uidvalidity, ledger, report, reporter)
    processed = _load_processed(mailbox, ledger, reporter)
    original = set(processed)

    to_fetch = compute_uids_to_fetch(remote_uids, processed)
    report.remote_total = len(remote_uids)
    report.skipped = len(remote_uids) - len(to_fetch)

    if not remote_uids:
        reporter.info(f"Folder {mailbox.name} is empty.")
    elif report.skipped:
        reporter.info(f"Skipping {report.skipped} emails (already backed up).")

    try:
        if to_fetch:
            reporter.info(f"Downloading {len(to_fetch)} new emails...")
        elif remote_uids:
            reporter.info(f"Folder {mailbox.name} is up to date.")
        for uid in to_fetch:
            _backup_message(uid, mailbox, session, materializer, target_dir, processed, report, reporter)
    finally:
        _commit(mailbox, ledger, processed, original, uidvalidity, save_uidvalidity, report, reporter)

    return report
