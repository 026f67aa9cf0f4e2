"""
Mock IMAP4rev1 server for the backup tests.

Implements just the commands the backup issues: LOGIN, LOGOUT, CAPABILITY,
NOOP, LIST, SELECT/EXAMINE, UID SEARCH, UID FETCH and UID STORE. Every
command line received is appended to `server.commands` so tests can assert on
what the client actually sent.

Failure knobs on the server object:
    reject_login      LOGIN answers NO
    unselectable      names whose SELECT answers NO
    noselect          extra LIST entries flagged \\Noselect
    uidvalidity       {folder: value} reported on SELECT (default 1)
    fail_store        UID STORE answers NO
    message["fail_fetch"] = True   UID FETCH of that message answers NO
"""

import re
import socketserver
import threading

# A plain RFC822 / BODY[] fetch sets \Seen like a real server; BODY.PEEK[...] does not.
_READ_FETCH_RE = re.compile(r"(?<![.\w])RFC822(?![.\w])|(?<!PEEK)BODY\[")
_BODY_FETCH_RE = re.compile(r"(?<![.\w])RFC822(?![.\w])|BODY(\.PEEK)?\[\]")


class MockIMAPHandler(socketserver.StreamRequestHandler):
    """One client connection. Commands are dispatched to `cmd_<name>` methods."""

    def handle(self):
        self.selected = None
        self.reply_untagged("OK [CAPABILITY IMAP4rev1] Mock IMAP Server Ready")

        while True:
            try:
                raw = self.rfile.readline()
            except OSError:
                break
            if not raw:
                break
            line = raw.decode("utf-8").strip()
            if not line:
                continue

            tag, _, rest = line.partition(" ")
            name, _, args = rest.partition(" ")
            name = name.upper()
            self.server.commands.append(f"{name} {args}".strip())

            handler = getattr(self, f"cmd_{name.lower()}", None)
            if handler is None:
                self.reply(tag, "BAD Command not recognized")
                continue
            if handler(tag, args) is False:
                break

    # -- output -----------------------------------------------------------

    def reply(self, tag, message):
        self.wfile.write(f"{tag} {message}\r\n".encode())

    def reply_untagged(self, message):
        self.wfile.write(f"* {message}\r\n".encode())

    def reply_literal(self, prefix, payload):
        self.wfile.write(f"* {prefix} {{{len(payload)}}}\r\n".encode())
        self.wfile.write(payload)
        self.wfile.write(b")\r\n")

    # -- non-authenticated / any state ------------------------------------

    def cmd_capability(self, tag, args):
        self.reply_untagged("CAPABILITY IMAP4rev1 AUTH=PLAIN")
        self.reply(tag, "OK CAPABILITY completed")

    def cmd_noop(self, tag, args):
        self.reply(tag, "OK NOOP completed")

    def cmd_login(self, tag, args):
        if self.server.reject_login:
            self.reply(tag, "NO [AUTHENTICATIONFAILED] Invalid credentials")
        else:
            self.reply(tag, "OK LOGIN completed")

    def cmd_logout(self, tag, args):
        self.reply_untagged("BYE Logging out")
        self.reply(tag, "OK LOGOUT completed")
        return False

    # -- authenticated -----------------------------------------------------

    def cmd_list(self, tag, args):
        for folder in self.server.folders:
            self.reply_untagged(f'LIST (\\HasNoChildren) "/" "{folder}"')
        for folder in self.server.noselect:
            self.reply_untagged(f'LIST (\\Noselect \\HasChildren) "/" "{folder}"')
        self.reply(tag, "OK LIST completed")

    def cmd_select(self, tag, args, read_only=False):
        name = args.strip().strip('"')
        if name not in self.server.folders or name in self.server.unselectable:
            self.selected = None
            self.reply(tag, "NO [NONEXISTENT] Folder not found")
            return
        self.selected = name
        self.reply_untagged(f"{len(self.server.folders[name])} EXISTS")
        self.reply_untagged("0 RECENT")
        self.reply_untagged("FLAGS (\\Seen \\Answered \\Flagged \\Deleted \\Draft)")
        self.reply_untagged(f"OK [UIDVALIDITY {self.server.uidvalidity.get(name, 1)}] UIDs valid")
        mode = "READ-ONLY" if read_only else "READ-WRITE"
        self.reply(tag, f"OK [{mode}] SELECT completed")

    def cmd_examine(self, tag, args):
        self.cmd_select(tag, args, read_only=True)

    # -- selected ----------------------------------------------------------

    def cmd_uid(self, tag, args):
        if not self.selected:
            self.reply(tag, "NO Select first")
            return
        sub, _, rest = args.partition(" ")
        handler = getattr(self, f"uid_{sub.lower()}", None)
        if handler is None:
            self.reply(tag, "BAD Command not recognized")
            return
        handler(tag, self.server.folders[self.selected], rest)

    def uid_search(self, tag, msgs, rest):
        self.reply_untagged(" ".join(["SEARCH"] + [str(m["uid"]) for m in msgs]))
        self.reply(tag, "OK SEARCH completed")

    def uid_fetch(self, tag, msgs, rest):
        uid_set, _, items = rest.partition(" ")
        items = items.upper()
        if uid_set == "*" or uid_set.endswith(":*"):
            targets = list(msgs)
        else:
            wanted = {int(u) for u in uid_set.split(",") if u.isdigit()}
            targets = [m for m in msgs if m["uid"] in wanted]

        if any(m.get("fail_fetch") for m in targets):
            self.reply(tag, "NO [SERVERBUG] Fetch failed")
            return

        for m in targets:
            seq = msgs.index(m) + 1
            content = m["content"]
            if _READ_FETCH_RE.search(items):
                m["flags"].add("\\Seen")
            flags = " ".join(sorted(m["flags"]))

            if "HEADER" in items:
                headers = content.split(b"\r\n\r\n", 1)[0] + b"\r\n\r\n"
                self.reply_literal(f"{seq} FETCH (UID {m['uid']} FLAGS ({flags}) BODY[HEADER]", headers)
            elif _BODY_FETCH_RE.search(items):
                self.reply_literal(f"{seq} FETCH (UID {m['uid']} FLAGS ({flags}) RFC822", content)
            else:
                self.reply_untagged(f"{seq} FETCH (UID {m['uid']} RFC822.SIZE {len(content)} FLAGS ({flags}))")
        self.wfile.flush()
        self.reply(tag, "OK FETCH completed")

    def uid_store(self, tag, msgs, rest):
        # <uid> (+|-)FLAGS (<flag> ...)
        uid, action, flag_list = rest.split(" ", 2)
        changed = {f for f in flag_list.strip("()").split() if f}
        m = next((m for m in msgs if m["uid"] == int(uid)), None)
        if m is None or self.server.fail_store:
            self.reply(tag, "NO STORE failed")
            return

        if action.upper().startswith("+"):
            m["flags"] |= changed
        elif action.upper().startswith("-"):
            m["flags"] -= changed
        flags = " ".join(sorted(m["flags"]))
        self.reply_untagged(f"{msgs.index(m) + 1} FETCH (UID {m['uid']} FLAGS ({flags}))")
        self.reply(tag, "OK STORE completed")


class MockIMAPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, handler_class, initial_folders=None):
        super().__init__(server_address, handler_class)
        self.folders = {}
        self.uidvalidity = {}
        self.unselectable = set()
        self.noselect = []
        self.reject_login = False
        self.fail_store = False
        self.commands = []
        for name, contents in (initial_folders or {"INBOX": []}).items():
            self.folders[name] = []
            for content in contents:
                self.add_message(name, content)

    def add_message(self, folder, content, flags=None, uid=None):
        """Append a message (bytes, or a dict with uid/flags/content) and return its UID."""
        msgs = self.folders.setdefault(folder, [])
        if isinstance(content, dict):
            msg = dict(content)
            msg["flags"] = set(msg.get("flags", ()))
        else:
            msg = {"content": content, "flags": set(flags or ())}
        msg.setdefault("uid", uid or max((m["uid"] for m in msgs), default=0) + 1)
        msgs.append(msg)
        return msg["uid"]


def start_server_thread(port=0, initial_folders=None):
    """Start a mock server on localhost in a daemon thread; returns (server, actual_port)."""
    server = MockIMAPServer(("localhost", port), MockIMAPHandler, initial_folders)
    threading.Thread(target=server.serve_forever, name="mock-imap", daemon=True).start()
    return server, server.server_address[1]
