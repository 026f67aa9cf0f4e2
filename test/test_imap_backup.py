"""
Tests for imap_backup.py

End-to-end runs against the mock IMAP server through a real ImapSession.

Tests cover:
- Incremental backup: a second run fetches only the new message
- Existing artifacts are never rewritten (mtimes unchanged)
- Ledger decides: deleted local files are not refetched
- Idempotence when nothing changed
- Recovery after a run interrupted before the ledger save
- Mailbox order, unselectable mailboxes, summary output
- Attachments of same-named artifacts in two mailboxes both kept
"""

import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

import imap_backup
from conftest import build_message, make_config, server_flags
from imap_common import VERBOSITY_NORMAL, Reporter
from imap_session import ImapSession
from uid_ledger import UidLedger


def msg(n):
    return build_message(subject=f"Email {n}", sender=f"sender{n}@example.com", body=f"Body {n}")


def run(config, mailboxes=("INBOX",)):
    reporter = Reporter(config.verbosity)
    with ImapSession.open(config, reporter) as session:
        return imap_backup.run_backup(list(mailboxes), session, config, reporter)


def fetch_commands(server):
    return [c for c in server.commands if c.startswith("UID FETCH") and "RFC822" in c]


def snapshot(directory):
    return {
        name: os.stat(os.path.join(directory, name)).st_mtime_ns
        for name in os.listdir(directory)
        if name.endswith(".eml")
    }


class TestIncremental:
    def test_second_run_fetches_only_new_message(self, single_mock_server, tmp_path):
        server, port = single_mock_server({"INBOX": [msg(1), msg(2), msg(3)]})
        config = make_config(tmp_path, port)

        first = run(config)
        inbox = tmp_path / "INBOX"
        before = snapshot(inbox)
        assert first.fetched == 3
        assert len(before) == 3

        server.add_message("INBOX", msg(4))
        server.commands.clear()
        second = run(config)

        assert second.fetched == 1
        assert second.skipped == 3
        assert fetch_commands(server) == ["UID FETCH 4 (RFC822)"]
        after = snapshot(inbox)
        assert len(after) == 4
        for name, mtime in before.items():
            assert after[name] == mtime
        assert UidLedger(config.ledger_path).load("INBOX") == {1, 2, 3, 4}

    def test_deleted_local_file_not_refetched(self, single_mock_server, tmp_path):
        server, port = single_mock_server({"INBOX": [msg(1), msg(2)]})
        config = make_config(tmp_path, port)
        run(config)

        (tmp_path / "INBOX" / "2023-01-02_sender1@example.com_1.eml").unlink()
        server.commands.clear()
        summary = run(config)

        assert fetch_commands(server) == []
        assert summary.fetched == 0
        assert summary.skipped == 2
        assert not (tmp_path / "INBOX" / "2023-01-02_sender1@example.com_1.eml").exists()

    def test_idempotent_when_nothing_changed(self, single_mock_server, tmp_path):
        server, port = single_mock_server({"INBOX": [msg(1), msg(2)]})
        config = make_config(tmp_path, port)
        run(config)
        ledger_file = tmp_path / ".ledger" / "INBOX.uids"
        ledger_before = ledger_file.read_bytes()
        files_before = snapshot(tmp_path / "INBOX")

        server.commands.clear()
        summary = run(config)

        assert summary.fetched == 0
        assert [c for c in server.commands if c.startswith("UID FETCH")] == []
        assert ledger_file.read_bytes() == ledger_before
        assert snapshot(tmp_path / "INBOX") == files_before

    def test_recovers_after_interrupted_run(self, single_mock_server, tmp_path):
        """Files written by a run killed before the ledger save are recognized, not refetched."""
        server, port = single_mock_server({"INBOX": [msg(1), msg(2), msg(3)]})
        config = make_config(tmp_path, port)
        run(config)
        os.remove(os.path.join(config.ledger_path, "INBOX.uids"))

        server.commands.clear()
        summary = run(config)

        assert fetch_commands(server) == []
        assert summary.already_present == 3
        assert UidLedger(config.ledger_path).load("INBOX") == {1, 2, 3}


class TestFlags:
    def test_unread_messages_stay_unread(self, single_mock_server, tmp_path):
        server, port = single_mock_server({"INBOX": []})
        server.add_message("INBOX", msg(1))
        server.add_message("INBOX", msg(2), flags={"\\Seen", "\\Flagged"})

        run(make_config(tmp_path, port))

        assert server_flags(server, "INBOX", 1) == set()
        assert server_flags(server, "INBOX", 2) == {"\\Seen", "\\Flagged"}
        assert [c for c in server.commands if c.startswith("UID STORE")] == ["UID STORE 1 -FLAGS (\\Seen)"]

    def test_store_failure_is_only_a_warning(self, single_mock_server, tmp_path, capsys):
        server, port = single_mock_server({"INBOX": [msg(1)]})
        server.fail_store = True

        summary = run(make_config(tmp_path, port))

        assert summary.fetched == 1
        assert summary.ok
        assert "Could not restore unread state" in capsys.readouterr().err


class TestMailboxes:
    def test_multiple_mailboxes_in_order(self, single_mock_server, tmp_path):
        server, port = single_mock_server({"INBOX": [msg(1)], "Work/Projects": [msg(2), msg(3)], "Sent": []})
        config = make_config(tmp_path, port)

        summary = run(config, ["Work/Projects", "INBOX", "Sent"])

        assert [r.mailbox for r in summary.reports] == ["Work/Projects", "INBOX", "Sent"]
        selects = [c for c in server.commands if c.startswith("SELECT")]
        assert selects == ['SELECT "Work/Projects"', 'SELECT "INBOX"', 'SELECT "Sent"']
        assert len(os.listdir(tmp_path / "Work_Projects")) == 2
        assert (tmp_path / ".ledger" / "Work_Projects.uids").read_text() == "1\n2\n"
        assert summary.fetched == 3

    def test_unselectable_mailbox_does_not_stop_backup(self, single_mock_server, tmp_path):
        server, port = single_mock_server({"Broken": [msg(1)], "INBOX": [msg(2)]})
        server.unselectable.add("Broken")

        summary = run(make_config(tmp_path, port), ["Broken", "INBOX"])

        assert summary.reports[0].error is not None
        assert summary.reports[1].fetched == 1
        assert not summary.ok
        assert len(summary.mailbox_errors) == 1

    def test_failed_message_reported_and_retried(self, single_mock_server, tmp_path):
        server, port = single_mock_server({"INBOX": [msg(1)]})
        server.add_message("INBOX", {"uid": 2, "content": msg(2), "fail_fetch": True})
        config = make_config(tmp_path, port)

        summary = run(config)
        assert summary.failed == 1
        assert UidLedger(config.ledger_path).load("INBOX") == {1}

        server.folders["INBOX"][1]["fail_fetch"] = False
        summary = run(config)
        assert summary.fetched == 1
        assert summary.ok
        assert UidLedger(config.ledger_path).load("INBOX") == {1, 2}

    def test_attachments_extracted(self, single_mock_server, tmp_path):
        raw = build_message(sender="a@example.com", attachments=[("doc.txt", b"attached", "text/plain")])
        _, port = single_mock_server({"INBOX": [raw]})

        run(make_config(tmp_path, port))

        attachment = tmp_path / "attachments" / "2023-01-02_a@example.com_1.eml" / "doc.txt"
        assert attachment.read_bytes() == b"attached"

    def test_same_artifact_name_in_two_mailboxes_keeps_both_attachments(self, single_mock_server, tmp_path):
        """UID 1 from the same sender on the same day shares one attachments directory."""
        inbox = build_message(sender="alice@example.com", attachments=[("doc.txt", b"FROM-INBOX", "text/plain")])
        archive = build_message(sender="alice@example.com", attachments=[("doc.txt", b"FROM-ARCHIVE", "text/plain")])
        _, port = single_mock_server({"INBOX": [inbox], "Archive": [archive]})

        summary = run(make_config(tmp_path, port), ["INBOX", "Archive"])

        assert summary.ok
        attach_dir = tmp_path / "attachments" / "2023-01-02_alice@example.com_1.eml"
        assert (attach_dir / "doc.txt").read_bytes() == b"FROM-INBOX"
        assert (attach_dir / "doc (1).txt").read_bytes() == b"FROM-ARCHIVE"


def test_print_summary(single_mock_server, tmp_path, capsys):
    _, port = single_mock_server({"INBOX": [msg(1), msg(2)]})
    config = make_config(tmp_path, port, verbosity=VERBOSITY_NORMAL)
    summary = run(config)

    imap_backup.print_summary(summary, Reporter(VERBOSITY_NORMAL))

    out = capsys.readouterr().out
    assert "INBOX : 2 saved, 0 skipped, 0 already on disk, 0 failed" in out
    assert "Total: 2 saved" in out
