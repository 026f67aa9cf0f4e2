"""
Message Materializer

Turns a raw RFC 5322 message into files on disk:

    {mailbox_dir}/{YYYY-MM-DD}_{sender}_{uid}.eml
    {attachments_root}/{YYYY-MM-DD}_{sender}_{uid}.eml/{attachment name}

The artifact name depends only on (date, sender, uid), so a later run can tell
from the path alone whether a message was already written. An existing
artifact is never overwritten, and neither is an attachment file already in
the attachments directory: a clashing name gets a ` (n)` suffix instead.
"""

from __future__ import annotations

import mimetypes
import os
from dataclasses import dataclass, field
from datetime import datetime
from email import policy
from email.parser import BytesParser
from enum import Enum

import imap_common
from imap_errors import ArtifactWriteError

ARTIFACT_EXTENSION = ".eml"
MAX_FILENAME_LENGTH = 255
NO_DATE = "no_date"
NO_SENDER = "no_sender"


class MaterializeStatus(Enum):
    SAVED = "saved"
    ALREADY_EXISTS = "already_exists"


@dataclass
class MessageMetadata:
    uid: int
    sender: str | None = None
    date: datetime | None = None

    @classmethod
    def from_headers(cls, uid: int, header_bytes: bytes) -> MessageMetadata:
        sender, date = imap_common.parse_sender_and_date(header_bytes)
        return cls(uid=uid, sender=sender, date=date)


@dataclass
class MaterializeResult:
    status: MaterializeStatus
    path: str
    attachment_dir: str | None = None
    attachments: list[str] = field(default_factory=list)

    @property
    def saved(self) -> bool:
        return self.status is MaterializeStatus.SAVED


def sanitize_sender(sender: str | None) -> str:
    """
    Make a sender address usable as a filename segment.

    Besides `/` and `\\`, every character the common filename sanitizer treats
    as illegal (`<>:"|?*` and control characters) becomes `_`, and leading or
    trailing dots and spaces are trimmed. A blank sender becomes NO_SENDER.
    """
    if not sender or not sender.strip():
        return NO_SENDER
    return imap_common.sanitize_filename(sender.replace("/", "_").replace("\\", "_"), max_length=MAX_FILENAME_LENGTH)


def format_date(date: datetime | None) -> str:
    return date.strftime("%Y-%m-%d") if date else NO_DATE


def _truncate_utf8(text: str, max_bytes: int) -> str:
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[: max(max_bytes, 0)].decode("utf-8", errors="ignore")


def build_artifact_filename(date: datetime | None, sender: str | None, uid: int) -> str:
    """
    "{date}_{sender}_{uid}.eml", at most MAX_FILENAME_LENGTH bytes.

    Only the sender segment is shortened, so the UID and the extension are
    always present and different UIDs never map to the same name.
    """
    prefix = f"{format_date(date)}_"
    suffix = f"_{uid}{ARTIFACT_EXTENSION}"
    room = MAX_FILENAME_LENGTH - len(prefix.encode("utf-8")) - len(suffix.encode("utf-8"))
    return f"{prefix}{_truncate_utf8(sanitize_sender(sender), room)}{suffix}"


def _iter_attachment_parts(part):
    if part.get_content_type() == "message/rfc822":
        yield part
        return
    if part.is_multipart():
        for sub in part.iter_parts():
            yield from _iter_attachment_parts(sub)
        return
    if part.get_content_disposition() == "attachment" or part.get_filename():
        yield part


def iter_attachments(message):
    """Yield the attachment parts of a parsed message, depth first, in document order."""
    if message.is_multipart():
        for sub in message.iter_parts():
            yield from _iter_attachment_parts(sub)
    elif message.get_content_disposition() == "attachment":
        yield message


def attachment_payload(part) -> bytes:
    """Decoded body of an attachment part."""
    if part.get_content_type() == "message/rfc822":
        inner = part.get_payload()
        if isinstance(inner, list):
            inner = inner[0] if inner else None
        return inner.as_bytes() if inner is not None else b""
    return part.get_payload(decode=True) or b""


def attachment_filename(part, index: int) -> str:
    name = part.get_filename()
    if name:
        name = os.path.basename(name.replace("\\", "/"))
        name = imap_common.sanitize_filename(name)
        if name != "untitled":
            return name
    if part.get_content_type() == "message/rfc822":
        ext = ARTIFACT_EXTENSION
    else:
        ext = mimetypes.guess_extension(part.get_content_type()) or ".bin"
    return f"attachment_{index}{ext}"


def unique_name(name: str, used: set[str]) -> str:
    """Return `name`, or `name (n).ext` if it is already taken (case-insensitive)."""
    base, ext = os.path.splitext(name)
    candidate = name
    counter = 1
    while candidate.lower() in used:
        candidate = f"{base} ({counter}){ext}"
        counter += 1
    used.add(candidate.lower())
    return candidate


def _existing_names(directory: str) -> set[str]:
    try:
        return {name.lower() for name in os.listdir(directory)}
    except FileNotFoundError:
        return set()


class MessageMaterializer:
    """Writes message artifacts below a mailbox directory and a shared attachments root."""

    def __init__(self, attachments_root: str, reporter: imap_common.Reporter | None = None):
        self.attachments_root = attachments_root
        self.reporter = reporter or imap_common.Reporter()

    def artifact_path(self, metadata: MessageMetadata, target_dir: str) -> str:
        return os.path.join(target_dir, build_artifact_filename(metadata.date, metadata.sender, metadata.uid))

    def materialize(self, raw_bytes: bytes, metadata: MessageMetadata, target_dir: str) -> MaterializeResult:
        """
        Write one message. Returns ALREADY_EXISTS without touching the disk if
        the artifact is already present.

        Attachments are written first and the .eml last (via rename), so the
        .eml only appears once the whole artifact is complete.

        Raises:
            ArtifactWriteError: the message file could not be written.
        """
        path = self.artifact_path(metadata, target_dir)
        if os.path.exists(path):
            return MaterializeResult(MaterializeStatus.ALREADY_EXISTS, path)

        message = BytesParser(policy=policy.default).parsebytes(raw_bytes)
        # Shared by every mailbox: the same artifact name can come from two of them
        attachment_dir = os.path.join(self.attachments_root, os.path.basename(path))
        written = []
        used = _existing_names(attachment_dir)
        for index, part in enumerate(iter_attachments(message), 1):
            name = unique_name(attachment_filename(part, index), used)
            try:
                payload = attachment_payload(part)
            except Exception as e:
                self.reporter.warn(f"UID {metadata.uid}: could not decode attachment '{name}': {e}")
                continue
            target = os.path.join(attachment_dir, name)
            try:
                os.makedirs(attachment_dir, exist_ok=True)
                with open(target, "xb") as f:
                    f.write(payload)
            except OSError as e:
                raise ArtifactWriteError(target, e) from e
            written.append(target)

        tmp_path = f"{path}.part"
        try:
            with open(tmp_path, "wb") as f:
                f.write(raw_bytes)
            os.replace(tmp_path, path)
        except OSError as e:
            raise ArtifactWriteError(path, e) from e

        return MaterializeResult(MaterializeStatus.SAVED, path, attachment_dir if written else None, written)
