import re
import shlex
import socketserver
import threading

RESPONSE_SELECT_FIRST = "NO Select first"
DEFAULT_INTERNALDATE = "01-Jan-2024 00:00:00 +0000"
DEFAULT_CAPABILITIES = ("IMAP4rev1", "UNSELECT", "AUTH=PLAIN")

_APPEND_ARGS = re.compile(
    r'^(?P<mailbox>"(?:[^"\\]|\\.)*"|\S+)\s*(?:\((?P<flags>[^)]*)\))?\s*(?:"(?P<date>[^"]*)")?\s*\{(?P<size>\d+)\}$'
)


def quote(name):
    return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'


def parse_set(sequence_set, maximum):
    """Expand an IMAP sequence set ("1:3,5", "2:*") into sorted numbers."""
    numbers = set()
    for part in sequence_set.split(","):
        if ":" in part:
            low, high = part.split(":", 1)
            low = maximum if low == "*" else int(low)
            high = maximum if high == "*" else int(high)
            if low > high:
                low, high = high, low
            numbers.update(range(low, high + 1))
        else:
            numbers.add(maximum if part == "*" else int(part))
    return sorted(numbers)


def split_header(content):
    for separator in (b"\r\n\r\n", b"\n\n"):
        position = content.find(separator)
        if position != -1:
            return content[: position + len(separator)]
    return content


class MockIMAPHandler(socketserver.StreamRequestHandler):
    """
    A minimal IMAP4rev1 server handler for tests.

    Supports hierarchical LIST, SELECT/EXAMINE, CLOSE/UNSELECT, FETCH and
    UID FETCH/SEARCH/STORE, APPEND, CREATE and EXPUNGE, with failure
    injection configured on the server object.
    """

    def handle(self):
        self.wfile.write(b"* OK [CAPABILITY IMAP4rev1] Mock IMAP Server Ready\r\n")
        self.selected_folder = None
        self.read_write = False

        while True:
            try:
                line = self.rfile.readline()
                if not line:
                    break
                line = line.decode("utf-8").strip()
                if not line:
                    continue

                parts = line.split(" ", 2)
                tag = parts[0]
                cmd = parts[1].upper() if len(parts) > 1 else ""
                args = parts[2] if len(parts) > 2 else ""

                with self.server.lock:
                    self.server.commands.append(f"{cmd} {args}".strip())
                    try:
                        keep_going = self.dispatch(tag, cmd, args)
                    except ValueError as e:
                        self.send_response(tag, f"BAD {e}")
                        keep_going = True
                if not keep_going:
                    break
                self.wfile.flush()
            except (OSError, UnicodeDecodeError):
                break

    def dispatch(self, tag, cmd, args):
        server = self.server

        if cmd == "LOGIN" or cmd == "AUTHENTICATE":
            server.sessions += 1
            self.send_response(tag, f"OK {cmd} completed")

        elif cmd == "LOGOUT":
            server.sessions -= 1
            self.wfile.write(b"* BYE Mock IMAP Server logging out\r\n")
            self.send_response(tag, "OK LOGOUT completed")
            return False

        elif cmd == "CAPABILITY":
            self.wfile.write(f"* CAPABILITY {' '.join(server.capabilities)}\r\n".encode())
            self.send_response(tag, "OK CAPABILITY completed")

        elif cmd == "NOOP":
            self.send_response(tag, "OK NOOP completed")

        elif cmd == "LIST":
            reference, pattern = shlex.split(args)
            delimiter = "NIL" if server.delimiter is None else quote(server.delimiter)
            if pattern == "":
                self.wfile.write(f"* LIST (\\Noselect) {delimiter} {quote(reference)}\r\n".encode())
            else:
                for name, attributes in server.list_folders(reference + pattern):
                    self.wfile.write(f"* LIST ({' '.join(attributes)}) {delimiter} {quote(name)}\r\n".encode())
            self.send_response(tag, "OK LIST completed")

        elif cmd in ("SELECT", "EXAMINE"):
            folder = shlex.split(args)[0]
            self.selected_folder = None
            if folder not in server.folders or folder in server.noselect or folder in server.fail_select:
                self.send_response(tag, "NO [NONEXISTENT] Folder not found")
                return True
            read_only = cmd == "EXAMINE" or folder in server.read_only_folders
            self.selected_folder = folder
            self.read_write = not read_only
            msgs = server.folders[folder]
            uid_next = server.next_uid.get(folder, 1)
            self.wfile.write(f"* {len(msgs)} EXISTS\r\n".encode())
            self.wfile.write(b"* 0 RECENT\r\n")
            self.wfile.write(b"* FLAGS (\\Seen \\Answered \\Flagged \\Deleted \\Draft)\r\n")
            self.wfile.write(b"* OK [UIDVALIDITY 1] UIDs valid\r\n")
            self.wfile.write(f"* OK [UIDNEXT {uid_next}] Predicted next UID\r\n".encode())
            if read_only:
                self.send_response(tag, f"OK [READ-ONLY] {cmd} completed")
            else:
                self.send_response(tag, f"OK [READ-WRITE] {cmd} completed")

        elif cmd == "CREATE":
            folder = shlex.split(args)[0]
            holds_folders_only = server.delimiter is not None and folder.endswith(server.delimiter)
            if holds_folders_only:
                folder = folder[: -len(server.delimiter)]
            if folder in server.create_denied:
                self.send_response(tag, "NO [CANNOT] Permission denied")
            elif folder in server.folders:
                self.send_response(tag, "NO [ALREADYEXISTS] Mailbox exists")
            else:
                server.folders[folder] = []
                if holds_folders_only:
                    server.noselect.add(folder)
                self.send_response(tag, "OK CREATE completed")

        elif cmd == "CLOSE":
            if not self.selected_folder:
                self.send_response(tag, RESPONSE_SELECT_FIRST)
                return True
            if self.read_write:
                server.expunge(self.selected_folder)
            self.selected_folder = None
            self.send_response(tag, "OK CLOSE completed")

        elif cmd == "UNSELECT":
            if "UNSELECT" not in server.capabilities:
                self.send_response(tag, "BAD Command not recognized")
            elif not self.selected_folder:
                self.send_response(tag, RESPONSE_SELECT_FIRST)
            else:
                self.selected_folder = None
                self.send_response(tag, "OK UNSELECT completed")

        elif cmd == "EXPUNGE":
            if not self.selected_folder or not self.read_write:
                self.send_response(tag, RESPONSE_SELECT_FIRST)
                return True
            for seq in server.expunge(self.selected_folder):
                self.wfile.write(f"* {seq} EXPUNGE\r\n".encode())
            self.send_response(tag, "OK EXPUNGE completed")

        elif cmd == "FETCH":
            if not self.selected_folder:
                self.send_response(tag, RESPONSE_SELECT_FIRST)
                return True
            seq_set, _, opts = args.partition(" ")
            if (self.selected_folder, seq_set) in server.fail_fetch:
                self.send_response(tag, "NO [SERVERBUG] Simulated fetch failure")
                return True
            msgs = server.folders[self.selected_folder]
            for seq in parse_set(seq_set, len(msgs)):
                if 1 <= seq <= len(msgs):
                    self.write_fetch(seq, msgs[seq - 1], opts.upper(), force_uid=False)
            self.send_response(tag, "OK FETCH completed")

        elif cmd == "STORE":
            if not self.selected_folder or not self.read_write:
                self.send_response(tag, "NO Folder is read-only")
                return True
            seq_set, action, flags = args.split(" ", 2)
            msgs = server.folders[self.selected_folder]
            for seq in parse_set(seq_set, len(msgs)):
                if 1 <= seq <= len(msgs):
                    self.store_flags(seq, msgs[seq - 1], action, flags)
            self.send_response(tag, "OK STORE completed")

        elif cmd == "UID":
            return self.dispatch_uid(tag, args)

        elif cmd == "APPEND":
            self.append(tag, args)

        else:
            self.send_response(tag, "BAD Command not recognized")
        return True

    def dispatch_uid(self, tag, args):
        server = self.server
        sub_cmd, _, sub_rest = args.partition(" ")
        sub_cmd = sub_cmd.upper()

        if not self.selected_folder:
            self.send_response(tag, RESPONSE_SELECT_FIRST)
            return True
        msgs = server.folders[self.selected_folder]
        max_uid = max((m["uid"] for m in msgs), default=0)

        if sub_cmd == "SEARCH":
            criteria = sub_rest.upper()
            uids = [str(m["uid"]) for m in msgs if not ("UNDELETED" in criteria and "\\Deleted" in m["flags"])]
            self.wfile.write((" ".join(["* SEARCH"] + uids) + "\r\n").encode())
            self.send_response(tag, "OK SEARCH completed")

        elif sub_cmd == "FETCH":
            uid_set, _, opts = sub_rest.partition(" ")
            if self.selected_folder in server.fail_uid_fetch:
                self.send_response(tag, "NO [SERVERBUG] Simulated fetch failure")
                return True
            wanted = set(parse_set(uid_set, max_uid))
            for seq, m in enumerate(msgs, start=1):
                if m["uid"] in wanted:
                    self.write_fetch(seq, m, opts.upper(), force_uid=True)
            self.send_response(tag, "OK FETCH completed")

        elif sub_cmd == "STORE":
            if not self.read_write:
                self.send_response(tag, "NO Folder is read-only")
                return True
            uid_set, action, flags = sub_rest.split(" ", 2)
            wanted = set(parse_set(uid_set, max_uid))
            for seq, m in enumerate(msgs, start=1):
                if m["uid"] in wanted:
                    self.store_flags(seq, m, action, flags, with_uid=True)
            self.send_response(tag, "OK STORE completed")

        else:
            self.send_response(tag, "BAD UID command not recognized")
        return True

    def write_fetch(self, seq, m, opts, force_uid):
        content = m["content"]
        items = []
        if force_uid or "UID" in opts:
            items.append(f"UID {m['uid']}")
        if re.search(r"(?<![.\w])FLAGS", opts):
            items.append(f"FLAGS ({' '.join(sorted(m['flags']))})")
        if "INTERNALDATE" in opts:
            items.append(f'INTERNALDATE "{m["date"]}"')
        if "RFC822.SIZE" in opts:
            items.append(f"RFC822.SIZE {len(content)}")

        literals = []
        if "[HEADER]" in opts:
            literals.append(("BODY[HEADER]", split_header(content)))
        if "[]" in opts or re.search(r"\bRFC822\b(?!\.)", opts):
            literals.append(("BODY[]", content))

        prefix = f"* {seq} FETCH ({' '.join(items)}"
        if not literals:
            self.wfile.write(f"{prefix})\r\n".encode())
            return
        for position, (label, literal) in enumerate(literals):
            lead = prefix + (" " if items else "") if position == 0 else " "
            self.wfile.write(f"{lead}{label} {{{len(literal)}}}\r\n".encode())
            self.wfile.write(literal)
        self.wfile.write(b")\r\n")

    def store_flags(self, seq, m, action, flags, with_uid=False):
        flag_set = {f for f in flags.strip().strip("()").split() if f}
        action = action.upper()
        if action.startswith("+FLAGS"):
            m["flags"].update(flag_set)
        elif action.startswith("-FLAGS"):
            m["flags"].difference_update(flag_set)
        else:
            m["flags"] = set(flag_set)
        uid_part = f"UID {m['uid']} " if with_uid else ""
        self.wfile.write(f"* {seq} FETCH ({uid_part}FLAGS ({' '.join(sorted(m['flags']))}))\r\n".encode())

    def append(self, tag, args):
        server = self.server
        match = _APPEND_ARGS.match(args)
        if not match:
            self.send_response(tag, "BAD APPEND")
            return
        size = int(match.group("size"))
        self.wfile.write(b"+ Ready for literal data\r\n")
        self.wfile.flush()
        data = self.rfile.read(size)

        folder = shlex.split(match.group("mailbox"))[0]
        flags = {f for f in (match.group("flags") or "").split() if f}
        if folder not in server.folders or folder in server.noselect:
            self.send_response(tag, "NO [TRYCREATE] Folder not found")
        elif folder in server.append_fail:
            self.send_response(tag, "NO [SERVERBUG] Simulated append failure")
        else:
            server.add_message(folder, data, flags, match.group("date"))
            self.send_response(tag, "OK APPEND completed")

    def send_response(self, tag, message):
        self.wfile.write(f"{tag} {message}\r\n".encode())


class MockIMAPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(
        self,
        server_address,
        request_handler_class,
        initial_folders=None,
        delimiter="/",
        capabilities=DEFAULT_CAPABILITIES,
    ):
        super().__init__(server_address, request_handler_class)
        self.lock = threading.RLock()
        self.delimiter = delimiter
        self.capabilities = tuple(capabilities)
        self.folders = {}
        self.next_uid = {}
        self.commands = []
        self.sessions = 0  # logged in and not yet logged out

        # Failure injection
        self.noselect = set()
        self.noinferiors = set()
        self.read_only_folders = set()
        self.create_denied = set()
        self.append_fail = set()
        self.fail_select = set()
        self.fail_fetch = set()  # (folder, "start:end")
        self.fail_uid_fetch = set()

        for fname, contents in (initial_folders or {"INBOX": []}).items():
            self.folders[fname] = []
            for c in contents:
                if isinstance(c, bytes):
                    self.add_message(fname, c)
                else:
                    self.add_message(fname, c["content"], c.get("flags", ()), c.get("date"))

    def add_message(self, folder, content, flags=(), date=None):
        with self.lock:
            uid = self.next_uid.get(folder, 1)
            self.next_uid[folder] = uid + 1
            msg = {"uid": uid, "flags": set(flags), "content": content, "date": date or DEFAULT_INTERNALDATE}
            self.folders.setdefault(folder, []).append(msg)
            return msg

    def contents(self, folder):
        with self.lock:
            return [m["content"] for m in self.folders.get(folder, [])]

    def expunge(self, folder):
        """Remove \\Deleted messages, returning the EXPUNGE sequence numbers."""
        expunged = []
        kept = []
        for seq, m in enumerate(self.folders[folder], start=1):
            if "\\Deleted" in m["flags"]:
                expunged.append(seq - len(expunged))
            else:
                kept.append(m)
        self.folders[folder] = kept
        return expunged

    def all_names(self):
        """Real folders plus the implicit parents of nested names."""
        names = set(self.folders)
        if self.delimiter:
            for name in self.folders:
                segments = name.split(self.delimiter)
                for depth in range(1, len(segments)):
                    names.add(self.delimiter.join(segments[:depth]))
        return names

    def list_folders(self, pattern):
        any_segment = "[^" + re.escape(self.delimiter) + "]*" if self.delimiter else ".*"
        regex = "".join(".*" if ch == "*" else any_segment if ch == "%" else re.escape(ch) for ch in pattern)
        compiled = re.compile(f"^{regex}$")
        names = self.all_names()
        result = []
        for name in sorted(names):
            if not compiled.match(name):
                continue
            attributes = []
            if name not in self.folders or name in self.noselect:
                attributes.append("\\Noselect")
            if name in self.noinferiors:
                attributes.append("\\Noinferiors")
            prefix = f"{name}{self.delimiter}" if self.delimiter else None
            has_children = prefix is not None and any(other.startswith(prefix) for other in names)
            attributes.append("\\HasChildren" if has_children else "\\HasNoChildren")
            result.append((name, attributes))
        return result


def start_server_thread(port=0, initial_folders=None, **options):
    """Start a server in a daemon thread; returns (server, actual_port)."""
    server = MockIMAPServer(("localhost", port), MockIMAPHandler, initial_folders, **options)
    t = threading.Thread(target=server.serve_forever)
    t.daemon = True
    t.start()
    return server, server.server_address[1]
