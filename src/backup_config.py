"""
Backup Configuration

A single BackupConfig is built from the command line (with environment
variable defaults) at startup and passed explicitly to every component.
"""

from __future__ import annotations

import os
import urllib.parse
from dataclasses import dataclass, field

from imap_common import VERBOSITY_NORMAL, VERBOSITY_QUIET, VERBOSITY_VERBOSE

DEFAULT_DEST_PATH = "./backup"
DEFAULT_TIMEOUT = 60.0
DEFAULT_CONFIRM_TIMEOUT = 10.0
LEDGER_DIRNAME = ".ledger"
ATTACHMENTS_DIRNAME = "attachments"

IMAP_PORT = 143
IMAP_SSL_PORT = 993


@dataclass
class BackupConfig:
    host: str | None
    user: str | None
    password: str | None = None
    port: int | None = None
    use_ssl: bool = True
    oauth2_client_id: str | None = None
    oauth2_client_secret: str | None = None
    dest_path: str = DEFAULT_DEST_PATH
    ledger_dir: str | None = None
    timeout: float = DEFAULT_TIMEOUT
    select_all: bool = False
    assume_yes: bool = False
    confirm_timeout: float = DEFAULT_CONFIRM_TIMEOUT
    verbosity: int = VERBOSITY_NORMAL
    debug: int = 0
    max_retries: int = 3
    retry_wait: float = 5
    mailboxes: list[str] = field(default_factory=list)

    @classmethod
    def from_args(cls, args) -> BackupConfig:
        """Build a config from an argparse namespace produced by backup_imap_emails."""
        if args.quiet:
            verbosity = VERBOSITY_QUIET
        elif args.verbose:
            verbosity = VERBOSITY_VERBOSE
        else:
            verbosity = VERBOSITY_NORMAL

        return cls(
            host=args.host,
            user=args.user,
            password=args.password,
            port=args.port,
            use_ssl=not args.no_ssl,
            oauth2_client_id=args.oauth2_client_id,
            oauth2_client_secret=args.oauth2_client_secret,
            dest_path=os.path.expanduser(args.dest_path or DEFAULT_DEST_PATH),
            ledger_dir=os.path.expanduser(args.ledger_dir) if args.ledger_dir else None,
            timeout=args.timeout,
            select_all=args.all,
            assume_yes=args.yes,
            confirm_timeout=args.confirm_timeout,
            verbosity=verbosity,
            debug=args.debug,
            mailboxes=list(args.mailbox or []),
        )

    def missing_required(self) -> list[str]:
        """Names of required settings that are not set."""
        missing = []
        if not self.host:
            missing.append("IMAP_HOST (--host)")
        if not self.user:
            missing.append("IMAP_USERNAME (--user)")
        if not self.password and not self.oauth2_client_id:
            missing.append("IMAP_PASSWORD (--password) or OAUTH2_CLIENT_ID (--oauth2-client-id)")
        return missing

    def endpoint(self) -> tuple[str, int, bool]:
        """
        Resolve (host, port, use_ssl).

        The host may be given as a URL: imap://host[:port] for plain IMAP or
        imaps://host[:port] for IMAP over TLS. An explicit --port wins over the
        URL port.
        """
        host = self.host
        use_ssl = self.use_ssl
        port = self.port
        if host and "://" in host:
            parsed = urllib.parse.urlparse(host)
            scheme = parsed.scheme.lower()
            if not parsed.hostname:
                raise ValueError(f"Invalid IMAP host: {host}")
            if scheme in {"imap", "tcp"}:
                use_ssl = False
            elif scheme in {"imaps", "ssl"}:
                use_ssl = True
            else:
                raise ValueError(f"Unsupported IMAP scheme: {scheme}")
            host = parsed.hostname
            port = port or parsed.port
        if not port:
            port = IMAP_SSL_PORT if use_ssl else IMAP_PORT
        return host, port, use_ssl

    @property
    def ledger_path(self) -> str:
        return self.ledger_dir or os.path.join(self.dest_path, LEDGER_DIRNAME)

    @property
    def attachments_path(self) -> str:
        return os.path.join(self.dest_path, ATTACHMENTS_DIRNAME)
