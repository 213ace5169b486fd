"""Parsing helpers for IMAP responses as returned by aioimaplib.

AIDEV-NOTE: aioimaplib hands back ``Response(result, lines)`` where untagged
lines are ``bytes`` with the leading ``* `` stripped and message literals are
``bytearray``. Servers differ in item order inside FETCH responses (some put
UID/FLAGS after the literal), so FETCH parsing is stateful rather than
positional.
"""

import base64
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from mailctl.mail.models import Mailbox

SPECIAL_USE_FLAGS = frozenset(
    {
        "\\All",
        "\\Archive",
        "\\Drafts",
        "\\Flagged",
        "\\Important",
        "\\Junk",
        "\\Sent",
        "\\Trash",
    }
)
_SPECIAL_USE_BY_LOWER = {f.lower(): f for f in SPECIAL_USE_FLAGS}

LIST_LINE = re.compile(
    r'^(?:\*\s+)?(?:LIST\s+)?\((?P<flags>[^)]*)\)\s+'
    r'(?P<delimiter>"(?:[^"\\]|\\.)*"|NIL)\s+(?P<name>.+)$',
    re.IGNORECASE,
)
LITERAL_MARKER = re.compile(r"^\{\d+\}$")
EXISTS_LINE = re.compile(rb"^(\d+) EXISTS\s*$", re.IGNORECASE)
EXPUNGE_LINE = re.compile(rb"^(\d+) EXPUNGE\s*$", re.IGNORECASE)
UIDVALIDITY = re.compile(rb"UIDVALIDITY (\d+)", re.IGNORECASE)
FETCH_START = re.compile(rb"^(\d+) FETCH \(", re.IGNORECASE)
FETCH_UID = re.compile(rb"\bUID (\d+)", re.IGNORECASE)
FETCH_FLAGS = re.compile(rb"\bFLAGS \(([^)]*)\)", re.IGNORECASE)
MUTF7_SEGMENT = re.compile(r"&([^-]*)-")


def as_text(line: bytes | bytearray | str) -> str:
    if isinstance(line, bytes | bytearray):
        return bytes(line).decode("utf-8", errors="replace")
    return str(line)


def response_text(lines: Iterable[bytes | bytearray | str]) -> str:
    """Join the non-literal lines of a response for error details."""
    return " ".join(as_text(line) for line in lines if not isinstance(line, bytearray))


# Mailbox names (RFC 3501 section 5.1.3, modified UTF-7)


def encode_mailbox_name(name: str) -> str:
    """Encode a mailbox name to modified UTF-7."""
    out: list[str] = []
    pending: list[str] = []

    def flush() -> None:
        if pending:
            encoded = base64.b64encode("".join(pending).encode("utf-16-be"))
            out.append("&" + encoded.decode("ascii").rstrip("=").replace("/", ",") + "-")
            pending.clear()

    for char in name:
        if 0x20 <= ord(char) <= 0x7E:
            flush()
            out.append("&-" if char == "&" else char)
        else:
            pending.append(char)
    flush()
    return "".join(out)


def decode_mailbox_name(name: str) -> str:
    """Decode a modified UTF-7 mailbox name; undecodable runs are kept."""

    def replace(match: re.Match[str]) -> str:
        chunk = match.group(1)
        if not chunk:
            return "&"
        chunk = chunk.replace(",", "/")
        chunk += "=" * (-len(chunk) % 4)
        try:
            return base64.b64decode(chunk).decode("utf-16-be")
        except (ValueError, UnicodeDecodeError):
            return match.group(0)

    return MUTF7_SEGMENT.sub(replace, name)


def quote_mailbox(mailbox: str) -> str:
    """Quote mailbox name for IMAP compatibility.

    Per RFC 3501 Section 9 (Formal Syntax), quoted strings must escape
    backslashes and double-quote characters with a preceding backslash.
    """
    escaped = mailbox.replace("\\", "\\\\").replace('"', r"\"")
    return f'"{escaped}"'


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return value


def _make_mailbox(flags_text: str, delimiter_text: str, raw_name: str) -> Mailbox:
    flags = [f for f in flags_text.split() if f]
    delimiter = None if delimiter_text.upper() == "NIL" else _unquote(delimiter_text)
    path = decode_mailbox_name(raw_name)
    name = path.rsplit(delimiter, 1)[-1] if delimiter else path
    special_use = next(
        (_SPECIAL_USE_BY_LOWER[f.lower()] for f in flags if f.lower() in _SPECIAL_USE_BY_LOWER),
        None,
    )
    return Mailbox(
        name=name,
        path=path,
        delimiter=delimiter or None,
        flags=flags,
        special_use=special_use,
    )


def parse_list_response(lines: Iterable[bytes | bytearray | str]) -> list[Mailbox]:
    """Parse LIST response lines into flat Mailbox entries, in server order."""
    mailboxes: list[Mailbox] = []
    pending: tuple[str, str] | None = None

    for line in lines:
        if isinstance(line, bytearray):
            # Mailbox name sent as a literal
            if pending is not None:
                mailboxes.append(_make_mailbox(*pending, as_text(line)))
                pending = None
            continue

        match = LIST_LINE.match(as_text(line).strip())
        if not match:
            continue
        name = match.group("name").strip()
        if LITERAL_MARKER.match(name):
            pending = (match.group("flags"), match.group("delimiter"))
            continue
        mailboxes.append(
            _make_mailbox(match.group("flags"), match.group("delimiter"), _unquote(name))
        )

    return mailboxes


def build_mailbox_tree(mailboxes: list[Mailbox]) -> list[Mailbox]:
    """Nest mailboxes under their parents; returns the roots.

    A mailbox whose parent was not listed (e.g. a \\NonExistent parent that
    the server omitted) becomes a root.
    """
    by_path = {m.path: m for m in mailboxes}
    roots: list[Mailbox] = []
    for mailbox in mailboxes:
        parent = None
        if mailbox.delimiter and mailbox.delimiter in mailbox.path:
            parent = by_path.get(mailbox.path.rsplit(mailbox.delimiter, 1)[0])
        if parent is not None and parent is not mailbox:
            parent.children.append(mailbox)
        else:
            roots.append(mailbox)
    return roots


# Untagged status


@dataclass
class MailboxCounters:
    """Message count tracked from untagged EXISTS/EXPUNGE responses."""

    exists: int = 0
    uid_validity: int | None = None

    def absorb(self, lines: Iterable[bytes | bytearray | str]) -> None:
        for line in lines:
            if isinstance(line, bytearray):
                continue
            raw = line if isinstance(line, bytes) else str(line).encode()
            raw = raw.strip()
            if match := EXISTS_LINE.match(raw):
                self.exists = int(match.group(1))
            elif EXPUNGE_LINE.match(raw):
                self.exists = max(0, self.exists - 1)
            elif match := UIDVALIDITY.search(raw):
                self.uid_validity = int(match.group(1))


# FETCH


@dataclass
class FetchRecord:
    """One message's items from a FETCH response."""

    seq: int
    uid: int | None = None
    flags: list[str] = field(default_factory=list)
    payload: bytes | None = None


def parse_fetch_response(lines: Iterable[bytes | bytearray | str]) -> dict[int, FetchRecord]:
    """Group FETCH response lines by sequence number."""
    records: dict[int, FetchRecord] = {}
    current: FetchRecord | None = None

    for line in lines:
        if isinstance(line, bytearray):
            if current is not None and current.payload is None:
                current.payload = bytes(line)
            continue

        raw = line if isinstance(line, bytes) else str(line).encode()
        if match := FETCH_START.match(raw):
            seq = int(match.group(1))
            current = records.setdefault(seq, FetchRecord(seq=seq))
        if current is None:
            continue
        if match := FETCH_UID.search(raw):
            current.uid = int(match.group(1))
        if match := FETCH_FLAGS.search(raw):
            current.flags = [f.decode("utf-8", errors="replace") for f in match.group(1).split()]

    return records
