"""
IMAP Backup Orchestration

Runs the incremental backup over the selected mailboxes, one after another on
a single connection, and aggregates the per-mailbox reports.

Layout produced under the destination path:

    {dest}/{sanitized mailbox}/{date}_{sender}_{uid}.eml
    {dest}/attachments/{date}_{sender}_{uid}.eml/{attachment}
    {dest}/.ledger/{sanitized mailbox}.uids
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

import imap_common
import mailbox_sync
from mailbox_sync import Mailbox, ReconcileReport
from message_materializer import MessageMaterializer
from uid_ledger import UidLedger


@dataclass
class BackupSummary:
    reports: list[ReconcileReport] = field(default_factory=list)

    @property
    def fetched(self) -> int:
        return sum(r.fetched for r in self.reports)

    @property
    def skipped(self) -> int:
        return sum(r.skipped for r in self.reports)

    @property
    def already_present(self) -> int:
        return sum(r.already_present for r in self.reports)

    @property
    def failed(self) -> int:
        return sum(r.failed for r in self.reports)

    @property
    def mailbox_errors(self) -> list[ReconcileReport]:
        return [r for r in self.reports if r.error]

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.reports)


def run_backup(mailbox_names, session, config, reporter=None, ledger=None, materializer=None) -> BackupSummary:
    """Back up each mailbox in the given order and return the aggregated summary."""
    reporter = reporter or imap_common.Reporter(config.verbosity)
    ledger = ledger or UidLedger(config.ledger_path, reporter)
    materializer = materializer or MessageMaterializer(config.attachments_path, reporter)

    summary = BackupSummary()
    seen_dirs = {}
    total = len(mailbox_names)
    for index, name in enumerate(mailbox_names, 1):
        mailbox = Mailbox(name)
        reporter.info(f"--- Processing Folder [{index}/{total}]: {name} ---")

        other = seen_dirs.setdefault(mailbox.sanitized_name, name)
        if other != name:
            reporter.warn(f"'{name}' and '{other}' share the local name '{mailbox.sanitized_name}'")

        target_dir = os.path.join(config.dest_path, mailbox.sanitized_name)
        try:
            os.makedirs(target_dir, exist_ok=True)
        except OSError as e:
            report = ReconcileReport(name, error=f"Error creating directory {target_dir}: {e}")
            reporter.error(report.error)
            summary.reports.append(report)
            continue

        report = mailbox_sync.reconcile_mailbox(mailbox, session, ledger, materializer, target_dir, reporter)
        summary.reports.append(report)
    return summary


def print_summary(summary, reporter) -> None:
    reporter.info("")
    reporter.info("--- Backup Summary ---")
    width = max((len(r.mailbox) for r in summary.reports), default=0)
    for report in summary.reports:
        if report.error and not report.remote_total:
            reporter.error(f"{report.mailbox:<{width}} : {report.error}")
            continue
        line = (
            f"{report.mailbox:<{width}} : {report.fetched} saved, {report.skipped} skipped, "
            f"{report.already_present} already on disk, {report.failed} failed"
        )
        if report.failed or report.error:
            reporter.error(line + (f" ({report.error})" if report.error else ""))
        else:
            reporter.info(line)
    reporter.info(
        f"Total: {summary.fetched} saved, {summary.skipped} skipped, "
        f"{summary.already_present} already on disk, {summary.failed} failed "
        f"in {len(summary.reports)} folder(s)"
    )
