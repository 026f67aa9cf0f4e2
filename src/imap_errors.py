"""
IMAP Backup Errors

Exception hierarchy shared by the backup modules, plus the process exit codes
used by the command-line entry point.

Fatal errors (connection, authentication) abort the run before any mailbox is
processed. The remaining errors are local to a mailbox or a single message and
are reported without stopping the backup.
"""

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_USAGE_ERROR = 2
EXIT_CONNECTION_ERROR = 3
EXIT_AUTH_ERROR = 4
EXIT_INTERRUPTED = 130


class BackupError(Exception):
    """Base class for all backup errors."""


class ImapConnectionError(BackupError):
    """Raised when the IMAP host cannot be reached or resolved."""

    exit_code = EXIT_CONNECTION_ERROR


class ImapAuthError(BackupError):
    """Raised when the server rejects the supplied credentials."""

    exit_code = EXIT_AUTH_ERROR


class MailboxAccessError(BackupError):
    """Raised when a mailbox cannot be selected."""

    def __init__(self, mailbox, reason):
        super().__init__(f"Cannot access mailbox '{mailbox}': {reason}")
        self.mailbox = mailbox
        self.reason = reason


class MessageFetchError(BackupError):
    """Raised when the flags, headers or body of one message cannot be retrieved."""

    def __init__(self, uid, what, reason):
        super().__init__(f"Failed to fetch {what} for UID {uid}: {reason}")
        self.uid = uid
        self.what = what
        self.reason = reason


class ArtifactWriteError(BackupError):
    """Raised when a message artifact cannot be written to disk."""

    def __init__(self, path, reason):
        super().__init__(f"Cannot write {path}: {reason}")
        self.path = path
        self.reason = reason


class CorruptLedgerError(BackupError):
    """Raised when a ledger file exists but cannot be read at all."""

    def __init__(self, path, reason):
        super().__init__(f"Ledger {path} is unreadable: {reason}")
        self.path = path
        self.reason = reason
