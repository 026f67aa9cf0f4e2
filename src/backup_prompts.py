"""
Interactive prompts for the backup command: choosing mailboxes and the
pre-flight confirmation.

The confirmation never blocks indefinitely. The answer is read on a daemon
thread and, if nothing arrives within the timeout, the backup proceeds.
"""

from __future__ import annotations

import queue
import re
import threading
from enum import Enum

import imap_common

ALL_ANSWERS = {"", "a", "all", "*"}
CANCEL_ANSWERS = {"n", "no", "q", "quit", "c", "cancel"}

_RANGE_RE = re.compile(r"^(\d+)-(\d+)$", re.ASCII)


class Confirmation(Enum):
    PROCEED = "proceed"
    CANCEL = "cancel"


def read_line_with_timeout(prompt, timeout, input_fn=input):
    """Return the line read by input_fn, or None on timeout or end of input."""
    answers = queue.Queue(maxsize=1)

    def reader():
        try:
            answers.put(input_fn(prompt))
        except (EOFError, OSError):
            answers.put(None)

    threading.Thread(target=reader, name="prompt", daemon=True).start()
    try:
        return answers.get(timeout=timeout)
    except queue.Empty:
        return None


def confirm(prompt, timeout, input_fn=input, reporter=None) -> Confirmation:
    """Ask for confirmation; no answer within `timeout` seconds means PROCEED."""
    reporter = reporter or imap_common.Reporter()
    answer = read_line_with_timeout(f"{prompt} [Y/n] (auto-continue in {timeout:g}s): ", timeout, input_fn)
    if answer is None:
        reporter.info("No answer received, proceeding.")
        return Confirmation.PROCEED
    if answer.strip().lower() in CANCEL_ANSWERS:
        return Confirmation.CANCEL
    return Confirmation.PROCEED


def parse_mailbox_selection(text, mailboxes, reporter=None) -> list[str]:
    """
    Resolve a selection such as "1,3 5-7" against the numbered mailbox list.

    "all", "*" or an empty answer select everything. Indices are 1-based.
    Invalid or out-of-range entries are reported and skipped; duplicates are
    dropped and the order of first mention is kept.
    """
    reporter = reporter or imap_common.Reporter()
    text = (text or "").strip()
    if text.lower() in ALL_ANSWERS:
        return list(mailboxes)

    selected = []
    for token in re.split(r"[,\s]+", text):
        if not token:
            continue
        range_match = _RANGE_RE.match(token)
        if range_match:
            start, end = int(range_match.group(1)), int(range_match.group(2))
            if start > end:
                reporter.error(f"Invalid range '{token}', skipped.")
                continue
            indices = range(start, end + 1)
        elif token.isascii() and token.isdigit():
            indices = [int(token)]
        else:
            reporter.error(f"Invalid mailbox number '{token}', skipped.")
            continue

        for index in indices:
            if not 1 <= index <= len(mailboxes):
                reporter.error(f"Mailbox number {index} is out of range (1-{len(mailboxes)}), skipped.")
                continue
            name = mailboxes[index - 1]
            if name not in selected:
                selected.append(name)
    return selected


def select_by_name(requested, mailboxes, reporter=None) -> list[str]:
    """Keep the requested names that exist on the server, in the requested order."""
    reporter = reporter or imap_common.Reporter()
    available = set(mailboxes)
    selected = []
    for name in requested:
        if name not in available:
            reporter.error(f"Mailbox '{name}' not found on server, skipped.")
        elif name not in selected:
            selected.append(name)
    return selected


def select_mailboxes(mailboxes, select_all=False, requested=None, input_fn=input, reporter=None) -> list[str]:
    """Pick the mailboxes to back up: all, the named ones, or an interactive choice."""
    reporter = reporter or imap_common.Reporter()
    if select_all:
        return list(mailboxes)
    if requested:
        return select_by_name(requested, mailboxes, reporter)

    imap_common.safe_print("Mailboxes on server:")
    width = len(str(len(mailboxes)))
    for index, name in enumerate(mailboxes, 1):
        imap_common.safe_print(f"  {index:>{width}}. {name}")
    try:
        answer = input_fn("Mailboxes to back up (e.g. 1,3-5) or 'all' [all]: ")
    except EOFError:
        reporter.error("No selection received.")
        return []
    return parse_mailbox_selection(answer, mailboxes, reporter)
