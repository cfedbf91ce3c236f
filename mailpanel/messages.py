"""
Message operations against one open IMAP session.

Every function takes the folder's server path alongside the uid: a uid means
nothing outside its folder. All state (read, starred) comes from the server's
flags; nothing is cached between calls.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from .connection import MailSession
from .errors import AttachmentNotFound, FolderMissing, MessageNotFound
from .folders import find_special_folder, hierarchy_delimiter, list_folder_tree
from .models import AttachmentInfo, DELETED, FLAGGED, MessageDetail, MessagePage, MessageSummary, SEEN
from .parsing import parse_message, parse_summary, split_fetch_response

logger = logging.getLogger(__name__)

HEADER_FIELDS = "FROM TO CC SUBJECT DATE MESSAGE-ID"
SUMMARY_ITEMS = f"(UID FLAGS BODYSTRUCTURE BODY.PEEK[HEADER.FIELDS ({HEADER_FIELDS})])"
MAX_PAGE_SIZE = 200

FLAG_NAMES = {
    "seen": SEEN,
    "read": SEEN,
    "\\seen": SEEN,
    "flagged": FLAGGED,
    "starred": FLAGGED,
    "star": FLAGGED,
    "\\flagged": FLAGGED,
}

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def canonical_flag(flag: str) -> str:
    try:
        return FLAG_NAMES[flag.strip().lower()]
    except KeyError:
        raise ValueError(f"Unsupported flag: {flag}")


def list_messages(
    session: MailSession,
    folder: str,
    page: int = 1,
    page_size: int = 50,
    search: Optional[str] = None,
) -> MessagePage:
    """One page of summaries, newest first; ``total`` counts the whole (filtered) result set."""
    if page < 1:
        raise ValueError("page must be >= 1")
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
    search = (search or "").strip() or None

    exists = session.select(folder, readonly=True)
    if exists == 0:
        return MessagePage(messages=[], total=0, page=page, page_size=page_size)

    if session.has_capability("SORT"):
        uids = session.search([], text=search, sort=True)
    else:
        uids = sorted(session.search([], text=search), reverse=True)
    total = len(uids)
    page_uids = uids[(page - 1) * page_size : page * page_size]
    if not page_uids:
        return MessagePage(messages=[], total=total, page=page, page_size=page_size)

    data = session.uid("FETCH", ",".join(str(u) for u in page_uids), SUMMARY_ITEMS)
    wanted = set(page_uids)
    found: Dict[int, MessageSummary] = {}
    for fetched in split_fetch_response(data):
        uid = fetched.uid
        # unsolicited FETCH responses (flag updates) carry no header section
        if uid not in wanted or "HEADER" not in fetched.sections:
            continue
        found[uid] = parse_summary(uid, fetched.flags, fetched.sections["HEADER"], fetched.has_attachment_part)

    messages = sorted(found.values(), key=lambda m: m.date or _EPOCH, reverse=True)
    return MessagePage(messages=messages, total=total, page=page, page_size=page_size)


def _fetch_full(session: MailSession, folder: str, uid: int, peek: bool):
    item = "BODY.PEEK[]" if peek else "BODY[]"
    data = session.uid("FETCH", str(uid), f"(UID FLAGS {item})")
    for fetched in split_fetch_response(data):
        if fetched.uid == uid and "BODY" in fetched.sections:
            return fetched
    raise MessageNotFound(f"Message {uid} not found in {folder}")


def get_message(
    session: MailSession,
    folder: str,
    uid: int,
    include_content: bool = False,
    allow_remote_images: bool = False,
) -> MessageDetail:
    """Fetch and parse a whole message. Opening it marks it \\Seen on the server."""
    session.select(folder)
    fetched = _fetch_full(session, folder, uid, peek=False)
    detail = parse_message(uid, fetched.flags, fetched.sections["BODY"], include_content, allow_remote_images)
    detail.flags.add(SEEN)
    return detail


def get_attachment(session: MailSession, folder: str, uid: int, filename: str) -> AttachmentInfo:
    session.select(folder, readonly=True)
    fetched = _fetch_full(session, folder, uid, peek=True)
    detail = parse_message(uid, fetched.flags, fetched.sections["BODY"], include_content=True)
    for attachment in detail.attachments:
        if attachment.filename == filename:
            return attachment
    raise AttachmentNotFound(f"Attachment {filename!r} not found in message {uid}")


def set_flag(session: MailSession, folder: str, uid: int, flag: str, value: bool) -> None:
    flag = canonical_flag(flag)
    session.select(folder)
    session.store(uid, "+FLAGS" if value else "-FLAGS", [flag])
    logger.debug("%s %s on %s:%s", "Set" if value else "Cleared", flag, folder, uid)


def _expunge(session: MailSession, uid: int) -> None:
    if session.has_capability("UIDPLUS"):
        session.uid("EXPUNGE", str(uid))
    else:
        session.expunge()


def _move_selected(session: MailSession, uid: int, target: str) -> None:
    if session.has_capability("MOVE"):
        session.move(uid, target)
        return
    session.copy(uid, target)
    session.store(uid, "+FLAGS", [DELETED])
    _expunge(session, uid)


def move_message(session: MailSession, folder: str, uid: int, target: str) -> None:
    if not target:
        raise ValueError("Target folder is required")
    if target == folder:
        raise ValueError("Message is already in that folder")
    session.select(folder)
    _move_selected(session, uid, target)
    logger.info("Moved %s:%s to %s", folder, uid, target)


def _is_trash(folder: str, trash: str, delimiter: str) -> bool:
    if folder == trash:
        return True
    leaf = folder.rsplit(delimiter, 1)[-1] if delimiter else folder
    return "trash" in leaf.lower()


def delete_message(session: MailSession, folder: str, uid: int, permanent: bool = False) -> None:
    """Soft delete moves to Trash; permanent (or already in Trash) expunges for good."""
    if not permanent:
        folders = list_folder_tree(session)
        trash = find_special_folder(folders, "Trash")
        permanent = _is_trash(folder, trash, hierarchy_delimiter(folders))
    if permanent:
        session.select(folder)
        session.store(uid, "+FLAGS", [DELETED])
        _expunge(session, uid)
        logger.info("Expunged %s:%s", folder, uid)
        return
    session.select(folder)
    try:
        _move_selected(session, uid, trash)
    except FolderMissing:
        logger.info("Trash folder %s missing; creating it", trash)
        session.create(trash)
        _move_selected(session, uid, trash)
    logger.info("Moved %s:%s to trash %s", folder, uid, trash)


__all__ = [
    "canonical_flag",
    "list_messages",
    "get_message",
    "get_attachment",
    "set_flag",
    "move_message",
    "delete_message",
]
