"""
IMAP Email Backup Script

Backs up emails from an IMAP account to a local directory.
Stores each email as a separate .eml file (RFC 5322 format) which is compatible with
most email clients (Thunderbird, Apple Mail, Outlook, etc.), and extracts
attachments next to it.

Features:
- Incremental Backup: a per-folder ledger of backed-up UIDs; only new messages are fetched.
- Interruption Safe: messages already on disk are recognized and re-added to the ledger.
- Read State Preserved: unread messages are marked unread again after download.
- UIDVALIDITY Aware: a renumbered folder starts a fresh ledger.
- Folder Selection: all folders, named folders, or an interactive numbered choice.

Configuration (Environment Variables):
    IMAP_HOST, IMAP_PORT, IMAP_USERNAME: Server and account.
    IMAP_PASSWORD: Password (or App Password).

    OAuth2 (Optional - instead of password):
    OAUTH2_CLIENT_ID: OAuth2 Client ID
    OAUTH2_CLIENT_SECRET: OAuth2 Client Secret (required for Google)

    BACKUP_LOCAL_PATH: Destination local directory (default: ./backup).
    IMAP_TIMEOUT: Socket timeout in seconds (default: 60).

Usage:
    python3 backup_imap_emails.py \
        --host "imap.example.com" \
        --user "you@example.com" \
        --password "your-app-password" \
        --dest-path "./my_backup" \
        --all

Exit status: 0 on success or cancel, 1 on missing settings, 3 if the host is
unreachable, 4 if login fails.
"""

import argparse
import os
import sys

import backup_prompts
import imap_backup
import imap_common
from backup_config import DEFAULT_CONFIRM_TIMEOUT, DEFAULT_DEST_PATH, DEFAULT_TIMEOUT, BackupConfig
from imap_errors import (
    EXIT_CONFIG_ERROR,
    EXIT_CONNECTION_ERROR,
    EXIT_INTERRUPTED,
    ImapAuthError,
    ImapConnectionError,
)
from imap_session import ImapSession


def _env_int(name, default=None):
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name, default):
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def build_parser():
    parser = argparse.ArgumentParser(description="Incrementally back up IMAP mailboxes to local .eml files.")

    # Server / account
    parser.add_argument("--host", default=os.getenv("IMAP_HOST"), help="IMAP server (host or imaps://host:port)")
    parser.add_argument(
        "--port", type=int, default=_env_int("IMAP_PORT"), help="IMAP port (default 993, or 143 with --no-ssl)"
    )
    parser.add_argument("--user", default=os.getenv("IMAP_USERNAME"), help="Account e-mail address / username")
    parser.add_argument("--password", default=os.getenv("IMAP_PASSWORD"), help="Account password")
    parser.add_argument("--no-ssl", action="store_true", help="Use plain IMAP instead of IMAP over TLS")
    parser.add_argument(
        "--oauth2-client-id", default=os.getenv("OAUTH2_CLIENT_ID"), help="OAuth2 client ID (enables XOAUTH2)"
    )
    parser.add_argument(
        "--oauth2-client-secret", default=os.getenv("OAUTH2_CLIENT_SECRET"), help="OAuth2 client secret (Google)"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=_env_float("IMAP_TIMEOUT", DEFAULT_TIMEOUT),
        help="Network timeout in seconds",
    )

    # Destination
    parser.add_argument(
        "--dest-path",
        default=os.getenv("BACKUP_LOCAL_PATH") or DEFAULT_DEST_PATH,
        help="Local destination path",
    )
    parser.add_argument("--ledger-dir", default=None, help="Ledger directory (default: <dest-path>/.ledger)")

    # Selection / confirmation
    parser.add_argument("--all", action="store_true", help="Back up all folders without asking")
    parser.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    parser.add_argument(
        "--confirm-timeout",
        type=float,
        default=DEFAULT_CONFIRM_TIMEOUT,
        help="Seconds to wait for the confirmation before proceeding",
    )

    # Output
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Print every saved message")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only print warnings and errors")
    parser.add_argument("--debug", type=int, default=0, metavar="LEVEL", help="imaplib protocol debug level")

    parser.add_argument("mailbox", nargs="*", help="Specific folder(s) to back up")
    return parser


def print_configuration(config, reporter):
    host, port, use_ssl = config.endpoint()
    reporter.info("")
    reporter.info("--- Configuration Summary ---")
    reporter.info(f"Host            : {host}:{port} ({'TLS' if use_ssl else 'plain'})")
    reporter.info(f"User            : {config.user}")
    reporter.info(f"Authentication  : {'OAuth2 (XOAUTH2)' if config.oauth2_client_id else 'Basic (password)'}")
    reporter.info(f"Destination Path: {config.dest_path}")
    reporter.info(f"Ledger Path     : {config.ledger_path}")
    reporter.info("-----------------------------")


def main(argv=None, input_fn=input, session_factory=ImapSession.open):
    args = build_parser().parse_args(argv)
    config = BackupConfig.from_args(args)
    reporter = imap_common.Reporter(config.verbosity)

    missing = config.missing_required()
    if missing:
        reporter.error(f"Missing required settings: {', '.join(missing)}")
        sys.exit(EXIT_CONFIG_ERROR)

    try:
        print_configuration(config, reporter)
    except ValueError as e:
        reporter.error(str(e))
        sys.exit(EXIT_CONNECTION_ERROR)

    try:
        session = session_factory(config, reporter)
    except (ImapConnectionError, ImapAuthError) as e:
        reporter.error(str(e))
        sys.exit(e.exit_code)
    except KeyboardInterrupt:
        reporter.info("\nBackup cancelled by user.")
        return

    started = False
    try:
        try:
            available = session.list_mailboxes()
        except ImapConnectionError as e:
            reporter.error(str(e))
            sys.exit(e.exit_code)

        selected = backup_prompts.select_mailboxes(
            available, config.select_all, config.mailboxes, input_fn=input_fn, reporter=reporter
        )
        if not selected:
            reporter.info("No folders selected, nothing to do.")
            return

        reporter.info(f"Selected {len(selected)} folder(s): {', '.join(selected)}")
        if not config.assume_yes:
            decision = backup_prompts.confirm(
                "Start backup?", config.confirm_timeout, input_fn=input_fn, reporter=reporter
            )
            if decision is backup_prompts.Confirmation.CANCEL:
                reporter.info("Backup cancelled.")
                return

        try:
            os.makedirs(config.dest_path, exist_ok=True)
        except OSError as e:
            reporter.error(f"Error creating backup directory: {e}")
            sys.exit(EXIT_CONFIG_ERROR)

        started = True
        summary = imap_backup.run_backup(selected, session, config, reporter)
        imap_backup.print_summary(summary, reporter)
        reporter.info("\nBackup completed.")
    except KeyboardInterrupt:
        if started:
            reporter.error("Backup interrupted by user.")
            sys.exit(EXIT_INTERRUPTED)
        reporter.info("\nBackup cancelled by user.")
    finally:
        session.logout()


if __name__ == "__main__":
    main()
