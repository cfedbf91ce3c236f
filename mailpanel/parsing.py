import email
import re
from email import policy
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime
from typing import Dict, List, Optional, Set, Tuple
from bs4 import BeautifulSoup
from datetime import datetime, timezone

from .errors import ParseError
from .models import Address, AttachmentInfo, MessageDetail, MessageSummary

NO_SUBJECT = "(No Subject)"

_FETCH_START_RE = re.compile(rb"^\d+ \(")
_SECTION_LITERAL_RE = re.compile(rb"(BODY\[[^\]]*\]|RFC822(?:\.HEADER)?)(?:<\d+>)? \{\d+\}$", re.I)
_UID_RE = re.compile(rb"UID (\d+)", re.I)
_FLAGS_RE = re.compile(rb"FLAGS \(([^)]*)\)", re.I)
_ATTACHMENT_RE = re.compile(rb'\("attachment"', re.I)
_REMOTE_SRC_RE = re.compile(r"^(https?:)?//", re.I)
_UNSAFE_TAGS = ["script", "style", "iframe", "object", "embed", "frame", "frameset"]


class FetchedMessage:
    """One message worth of a UID FETCH response."""

    def __init__(self):
        self.meta = b""
        self.sections: Dict[str, bytes] = {}

    @property
    def uid(self) -> Optional[int]:
        match = _UID_RE.search(self.meta)
        return int(match.group(1)) if match else None

    @property
    def flags(self) -> Set[str]:
        match = _FLAGS_RE.search(self.meta)
        if not match:
            return set()
        return {f.decode("utf-8", errors="replace") for f in match.group(1).split()}

    @property
    def has_attachment_part(self) -> bool:
        return bool(_ATTACHMENT_RE.search(self.meta))


def split_fetch_response(data) -> List[FetchedMessage]:
    """Group imaplib's flat FETCH output into per-message meta text and body sections."""
    messages: List[FetchedMessage] = []
    current: Optional[FetchedMessage] = None
    for item in data or []:
        if item is None:
            continue
        prefix = item[0] if isinstance(item, tuple) else item
        if not isinstance(prefix, bytes):
            continue
        if current is None or _FETCH_START_RE.match(prefix):
            current = FetchedMessage()
            messages.append(current)
        if isinstance(item, tuple):
            literal = item[1] or b""
            match = _SECTION_LITERAL_RE.search(prefix)
            if match:
                section = match.group(1).upper()
                key = "HEADER" if b"HEADER" in section else "BODY"
                current.sections[key] = literal
                current.meta += prefix[: match.start()] + b" "
            else:
                # literal inside BODYSTRUCTURE or similar
                current.meta += re.sub(rb"\{\d+\}$", b"", prefix) + b'"' + literal.replace(b'"', b"") + b'"'
        else:
            current.meta += prefix
    return messages


def parse_date(value) -> datetime:
    if value:
        try:
            dt = parsedate_to_datetime(str(value))
            if dt.tzinfo is not None:
                return dt.astimezone(timezone.utc)
            return dt.replace(tzinfo=timezone.utc)
        except (TypeError, ValueError, IndexError):
            pass
    return datetime.now(timezone.utc)


def parse_addresses(header) -> List[Address]:
    if header is None:
        return []
    addresses = getattr(header, "addresses", None)
    if addresses is not None:
        try:
            return [Address(name=a.display_name or "", address=a.addr_spec or "") for a in addresses]
        except (TypeError, ValueError, AttributeError):
            pass
    return [Address(name=name, address=addr) for name, addr in getaddresses([str(header)]) if addr or name]


def _header_text(msg: email.message.Message, name: str) -> str:
    try:
        value = msg.get(name)
    except (TypeError, ValueError, IndexError):
        return ""
    return str(value).strip() if value is not None else ""


def _safe_header(msg: email.message.Message, name: str):
    try:
        return msg.get(name)
    except (TypeError, ValueError, IndexError):
        return None


def parse_summary(uid: int, flags: Set[str], header_bytes: bytes, has_attachments: bool = False) -> MessageSummary:
    msg = BytesParser(policy=policy.default).parsebytes(header_bytes or b"", headersonly=True)
    return MessageSummary(
        uid=uid,
        message_id=_header_text(msg, "Message-ID"),
        subject=_header_text(msg, "Subject") or NO_SUBJECT,
        from_=parse_addresses(_safe_header(msg, "From")),
        to=parse_addresses(_safe_header(msg, "To")),
        cc=parse_addresses(_safe_header(msg, "Cc")),
        date=parse_date(_header_text(msg, "Date")),
        flags=set(flags),
        has_attachments=has_attachments,
    )


def sanitize_html(raw_html: str, allow_remote_images: bool = False) -> Tuple[str, List[str]]:
    """Strip active content and, unless allowed, block remote images (returned separately)."""
    soup = BeautifulSoup(raw_html, "html.parser")
    for tag in soup(_UNSAFE_TAGS):
        tag.decompose()
    for tag in soup.find_all(True):
        for attr in [a for a in tag.attrs if a.lower().startswith("on")]:
            del tag[attr]
    blocked: List[str] = []
    if not allow_remote_images:
        for img in soup.find_all("img"):
            src = img.get("src") or ""
            if not _REMOTE_SRC_RE.match(src):
                continue
            blocked.append(src)
            placeholder = soup.new_tag("span")
            placeholder.string = "[Image blocked]"
            img.replace_with(placeholder)
    return str(soup), blocked


def _part_text(part: email.message.Message) -> str:
    try:
        return part.get_content()
    except (LookupError, KeyError, ValueError, AssertionError):
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def _is_attachment(part: email.message.Message) -> bool:
    disposition = part.get_content_disposition()
    if disposition == "attachment":
        return True
    if part.get_filename() and part.get_content_maintype() != "text":
        return True
    return disposition == "inline" and bool(part.get_filename()) and part.get_content_type() not in ("text/plain", "text/html")


def parse_message(
    uid: int,
    flags: Set[str],
    raw: bytes,
    include_content: bool = False,
    allow_remote_images: bool = False,
) -> MessageDetail:
    if not raw:
        raise ParseError(f"Message {uid} has no content")
    try:
        msg = BytesParser(policy=policy.default).parsebytes(raw)
        plain_parts: List[str] = []
        html_parts: List[str] = []
        attachments: List[AttachmentInfo] = []
        for part in msg.walk():
            if part.is_multipart():
                continue
            if _is_attachment(part):
                payload = part.get_payload(decode=True) or b""
                content_id = part.get("Content-ID")
                attachments.append(
                    AttachmentInfo(
                        filename=part.get_filename() or "attachment",
                        content_type=part.get_content_type(),
                        size=len(payload),
                        content_id=str(content_id).strip("<> ") if content_id else None,
                        content=payload if include_content else None,
                    )
                )
                continue
            ctype = part.get_content_type()
            if ctype == "text/plain":
                plain_parts.append(_part_text(part))
            elif ctype == "text/html":
                html_parts.append(_part_text(part))
    except (TypeError, ValueError, LookupError, AttributeError, IndexError) as e:
        raise ParseError(f"Could not parse message {uid}: {e}")

    text = "\n".join(plain_parts).strip() or None
    raw_html = "\n".join(html_parts).strip()
    html, blocked = sanitize_html(raw_html, allow_remote_images) if raw_html else (None, [])
    return MessageDetail(
        uid=uid,
        message_id=_header_text(msg, "Message-ID"),
        subject=_header_text(msg, "Subject") or NO_SUBJECT,
        from_=parse_addresses(_safe_header(msg, "From")),
        to=parse_addresses(_safe_header(msg, "To")),
        cc=parse_addresses(_safe_header(msg, "Cc")),
        date=parse_date(_header_text(msg, "Date")),
        flags=set(flags),
        has_attachments=bool(attachments),
        html=html,
        text=text,
        attachments=attachments,
        blocked_images=blocked,
    )


__all__ = [
    "FetchedMessage",
    "split_fetch_response",
    "parse_date",
    "parse_addresses",
    "parse_summary",
    "sanitize_html",
    "parse_message",
]
