"""
Folder discovery and special-folder resolution.

Folder identity is the server path string discovered at runtime; nothing assumes
Sent/Drafts/Trash exist up front. Special folders are resolved again on every
operation because connections (and what we learn over them) do not outlive a request.
"""
import base64
import logging
import re
from typing import Dict, List, Optional, Sequence

from .connection import MailSession, quote_mailbox
from .errors import FolderMissing, ProtocolError
from .models import Folder, SPECIAL_KINDS

logger = logging.getLogger(__name__)

SPECIAL_FOLDER_ALIASES: Dict[str, List[str]] = {
    "Sent": ["Sent", "Sent Messages", "Sent Items", "Sent Mail"],
    "Drafts": ["Drafts", "Draft"],
    "Trash": ["Trash", "Deleted", "Deleted Items", "Deleted Messages"],
    "Junk": ["Junk", "Spam", "Junk E-mail", "Junk Mail"],
}

# RFC 6154 attributes
SPECIAL_USE_ATTRIBUTES = {
    "\\sent": "Sent",
    "\\drafts": "Drafts",
    "\\trash": "Trash",
    "\\junk": "Junk",
    "\\archive": "Archive",
    "\\flagged": "Flagged",
}

DEFAULT_DELIMITER = "."
INBOX = "INBOX"

_LIST_RE = re.compile(
    r'^\((?P<flags>[^)]*)\)\s+(?P<delim>"(?:[^"\\]|\\.)*"|NIL)\s*(?P<name>.*)$',
    re.I | re.S,
)


def decode_mailbox_name(name: str) -> str:
    """Decode IMAP modified UTF-7 (RFC 3501 5.1.3) for display."""

    def _repl(match):
        chunk = match.group(1)
        if not chunk:
            return "&"
        b64 = chunk.replace(",", "/")
        b64 += "=" * (-len(b64) % 4)
        return base64.b64decode(b64).decode("utf-16-be")

    try:
        return re.sub(r"&([^-]*)-", _repl, name)
    except ValueError:
        return name


def encode_mailbox_name(name: str) -> str:
    out: List[str] = []
    pending: List[str] = []

    def _flush():
        if pending:
            raw = "".join(pending).encode("utf-16-be")
            out.append("&" + base64.b64encode(raw).decode("ascii").rstrip("=").replace("/", ",") + "-")
            pending.clear()

    for ch in name:
        if 0x20 <= ord(ch) <= 0x7E:
            _flush()
            out.append("&-" if ch == "&" else ch)
        else:
            pending.append(ch)
    _flush()
    return "".join(out)


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return re.sub(r"\\(.)", r"\1", value[1:-1])
    return value


def parse_list_entry(entry) -> Optional[Folder]:
    """Turn one LIST response item (bytes, or a (prefix, literal) tuple) into a Folder."""
    if entry is None:
        return None
    if isinstance(entry, tuple):
        prefix, literal = entry[0], entry[1]
        line = prefix.decode("utf-8", errors="replace")
        name = literal.decode("utf-8", errors="replace")
        line = re.sub(r"\{\d+\}$", "", line.rstrip()) + quote_mailbox(name)
    elif isinstance(entry, bytes):
        line = entry.decode("utf-8", errors="replace")
    else:
        line = str(entry)
    match = _LIST_RE.match(line.strip())
    if not match:
        logger.debug("Unparseable LIST entry: %r", line)
        return None
    flags = {f for f in match.group("flags").split() if f}
    delim_raw = match.group("delim")
    delimiter = "" if delim_raw.upper() == "NIL" else _unquote(delim_raw)
    path = _unquote(match.group("name").strip())
    if not path:
        return None
    leaf = path.rsplit(delimiter, 1)[-1] if delimiter else path
    special_use = None
    for flag in flags:
        special_use = SPECIAL_USE_ATTRIBUTES.get(flag.lower()) or special_use
    return Folder(
        name=decode_mailbox_name(leaf),
        path=path,
        delimiter=delimiter,
        flags=flags,
        special_use=special_use,
    )


def list_folder_tree(session: MailSession) -> List[Folder]:
    """Every mailbox on the server (LIST "" "*"), in server order."""
    folders = []
    for entry in session.list_mailboxes():
        folder = parse_list_entry(entry)
        if folder is not None:
            folders.append(folder)
    return folders


def hierarchy_delimiter(folders: Sequence[Folder]) -> str:
    for folder in folders:
        if folder.path.upper() == INBOX and folder.delimiter:
            return folder.delimiter
    for folder in folders:
        if folder.delimiter:
            return folder.delimiter
    return DEFAULT_DELIMITER


def normalise_kind(kind: str) -> str:
    for known in SPECIAL_KINDS:
        if kind.lower() == known.lower():
            return known
    if kind.lower() == "spam":
        return "Junk"
    raise ValueError(f"Unknown special folder kind: {kind}")


def find_special_folder(folders: Sequence[Folder], kind: str) -> str:
    kind = normalise_kind(kind)
    aliases = [a.lower() for a in SPECIAL_FOLDER_ALIASES[kind]]

    for folder in folders:
        if folder.special_use == kind:
            return folder.path

    for folder in folders:
        if folder.name.lower() in aliases:
            return folder.path

    delimiter = hierarchy_delimiter(folders)
    paths = {folder.path.lower(): folder.path for folder in folders}
    for alias in aliases:
        candidate = f"{INBOX}{delimiter}{alias}".lower()
        if candidate in paths:
            return paths[candidate]

    # May not exist; appends retry after CREATE, moves surface FolderMissing
    return f"{INBOX}{delimiter}{kind}"


def resolve_special_folder(session: MailSession, kind: str) -> str:
    path = find_special_folder(list_folder_tree(session), kind)
    logger.debug("Resolved %s folder for %s: %s", kind, session.address, path)
    return path


def list_folders(session: MailSession) -> List[Folder]:
    """Folder tree with per-folder counts; one failed STATUS only zeroes that folder."""
    folders = list_folder_tree(session)
    for folder in folders:
        if not folder.selectable:
            continue
        try:
            folder.total, folder.unseen = session.status(folder.path)
        except ProtocolError as e:
            logger.warning("STATUS failed for %s: %s", folder.path, e)
            folder.total, folder.unseen = 0, 0
    return folders


def append_creating(session: MailSession, path: str, raw: bytes, flags: Sequence[str]) -> None:
    """APPEND, creating ``path`` and retrying once if the server says it is missing."""
    try:
        session.append(path, raw, flags)
    except FolderMissing:
        logger.info("Creating missing folder %s before append", path)
        session.create(path)
        session.append(path, raw, flags)


def create_folder(session: MailSession, name: str) -> str:
    name = name.strip()
    if not name:
        raise ValueError("Folder name is required")
    folders = list_folder_tree(session)
    delimiter = hierarchy_delimiter(folders)
    prefix = f"{INBOX}{delimiter}"
    under_inbox = all(
        f.path.upper() == INBOX or f.path.upper().startswith(prefix.upper()) for f in folders
    )
    path = encode_mailbox_name(name)
    if under_inbox and not path.upper().startswith(prefix.upper()):
        path = prefix + path
    logger.info("Creating folder %s for %s", path, session.address)
    session.create(path)
    return path


def delete_folder(session: MailSession, path: str) -> None:
    if not path or path.upper() == INBOX:
        raise ValueError("The inbox cannot be deleted")
    logger.info("Deleting folder %s for %s", path, session.address)
    session.delete(path)


__all__ = [
    "SPECIAL_FOLDER_ALIASES",
    "decode_mailbox_name",
    "encode_mailbox_name",
    "parse_list_entry",
    "list_folder_tree",
    "hierarchy_delimiter",
    "normalise_kind",
    "find_special_folder",
    "resolve_special_folder",
    "list_folders",
    "append_creating",
    "create_folder",
    "delete_folder",
]
