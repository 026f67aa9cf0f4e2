"""
IMAP Common Utilities

Shared functionality for the backup modules: progress output, IMAP flag
constants, LIST response parsing, filename sanitization and header parsing.
"""

from __future__ import annotations

import imaplib
import re
import sys
import threading
from datetime import datetime
from email import policy
from email.header import decode_header
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime

FLAG_SEEN = "\\Seen"

# IMAP Commands
CMD_STORE = "store"
CMD_SEARCH = "search"
CMD_FETCH = "fetch"
OP_ADD_FLAGS = "+FLAGS"
OP_REMOVE_FLAGS = "-FLAGS"

# Output verbosity levels
VERBOSITY_QUIET = 0
VERBOSITY_NORMAL = 1
VERBOSITY_VERBOSE = 2

_print_lock = threading.Lock()


def safe_print(message: str, file=None) -> None:
    """Thread-safe print with short thread names for logs."""
    t_name = threading.current_thread().name
    short_name = t_name.replace("MainThread", "MAIN")
    with _print_lock:
        print(f"[{short_name}] {message}", file=file or sys.stdout, flush=True)


class Reporter:
    """Progress stream for a backup run.

    Verbosity only gates messages about successful steps. Warnings and errors
    are always shown and go to stderr.
    """

    def __init__(self, verbosity: int = VERBOSITY_NORMAL):
        self.verbosity = verbosity

    def detail(self, message: str) -> None:
        if self.verbosity >= VERBOSITY_VERBOSE:
            safe_print(message)

    def info(self, message: str) -> None:
        if self.verbosity >= VERBOSITY_NORMAL:
            safe_print(message)

    def warn(self, message: str) -> None:
        safe_print(f"Warning: {message}", file=sys.stderr)

    def error(self, message: str) -> None:
        safe_print(f"Error: {message}", file=sys.stderr)


def normalize_folder_name(folder_info_str):
    """
    Parses the IMAP list response to extract the clean folder name.
    Handles quoted names and flags.
    """
    if isinstance(folder_info_str, bytes):
        folder_info_str = folder_info_str.decode("utf-8", errors="ignore")

    # Matches: (\HasNoChildren) "/" "INBOX"  OR  (\HasNoChildren) "/" Drafts  OR  (\Noselect) NIL Archive
    list_pattern = re.compile(r'\((?P<flags>.*?)\) (?:"(?P<delimiter>.*?)"|NIL) "?(?P<name>.*?)"?$')
    match = list_pattern.search(folder_info_str.strip())
    if match:
        return match.group("name").strip()

    # Fallback: take the last part
    return folder_info_str.split()[-1].strip('"')


def is_selectable_folder(folder_info_str):
    """Return False for LIST entries flagged \\Noselect or \\NonExistent."""
    if isinstance(folder_info_str, bytes):
        folder_info_str = folder_info_str.decode("utf-8", errors="ignore")
    match = re.match(r"\((?P<flags>.*?)\)", folder_info_str)
    if not match:
        return True
    flags = {f.lower() for f in match.group("flags").split()}
    return "\\noselect" not in flags and "\\nonexistent" not in flags


def sanitize_filename(filename, max_length=250):
    """
    Sanitizes a string to be safe for use as a filename.
    Removes/replaces characters that are illegal in file systems.
    Truncates to max_length chars.
    """
    if not filename:
        return "untitled"
    # Invalid: < > : " / \ | ? * and control chars
    s = re.sub(r'[<>:"/\\|?*\x00-\x1f]', "_", filename)
    s = s.strip().strip(".")
    return s[:max_length] if s else "untitled"


def decode_mime_header(header_value, default=""):
    """
    Decodes MIME encoded headers (Subject, From, etc.) to a unicode string.
    """
    if not header_value:
        return default
    try:
        decoded_list = decode_header(str(header_value))
        text_parts = []
        for data, encoding in decoded_list:
            if isinstance(data, bytes):
                charset = encoding or "utf-8"
                try:
                    text_parts.append(data.decode(charset, errors="ignore"))
                except LookupError:
                    text_parts.append(data.decode("utf-8", errors="ignore"))
            else:
                text_parts.append(str(data))
        return "".join(text_parts)
    except Exception:
        return str(header_value)


def first_address(from_header):
    """Return the first e-mail address in a From header, or None."""
    if not from_header:
        return None
    for _name, address in getaddresses([decode_mime_header(from_header)]):
        address = address.strip()
        if address:
            return address
    return None


def parse_date_header(date_header) -> datetime | None:
    """Parse an RFC 5322 Date header, returning None when absent or malformed."""
    if not date_header:
        return None
    try:
        return parsedate_to_datetime(str(date_header))
    except (TypeError, ValueError, IndexError):
        return None


def parse_sender_and_date(raw_message):
    """Parse the sender address and date from RFC822 header (or full message) bytes.

    Uses header-only parsing to avoid walking large message bodies.
    Returns a tuple: (sender, date); either may be None.
    """
    if not raw_message:
        return None, None

    # compat32 keeps malformed headers as plain strings instead of raising
    parser = BytesParser(policy=policy.compat32)
    email_obj = parser.parsebytes(raw_message, headersonly=True)
    return first_address(email_obj.get("From")), parse_date_header(email_obj.get("Date"))


def parse_uid_list(search_data):
    """Convert a UID SEARCH response payload into a list of ints."""
    uids = []
    for chunk in search_data or []:
        if not chunk:
            continue
        if isinstance(chunk, bytes):
            chunk = chunk.decode("ascii", errors="ignore")
        uids.extend(int(token) for token in chunk.split() if token.isascii() and token.isdigit())
    return uids


def parse_fetch_flags(fetch_data):
    """Extract the set of flags from a FETCH (FLAGS) response."""
    flags = set()
    for item in fetch_data or []:
        meta = item[0] if isinstance(item, tuple) else item
        if not isinstance(meta, bytes):
            continue
        if b"FLAGS" not in meta:
            continue
        flags.update(f.decode("utf-8", errors="ignore") for f in imaplib.ParseFlags(meta))
    return flags


def extract_literal(fetch_data):
    """Return the first literal payload from a FETCH response, or None."""
    for item in fetch_data or []:
        if isinstance(item, tuple) and len(item) >= 2:
            return item[1]
    return None
