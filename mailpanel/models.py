from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Set

SEEN = "\\Seen"
FLAGGED = "\\Flagged"
DELETED = "\\Deleted"
DRAFT = "\\Draft"

SPECIAL_KINDS = ("Sent", "Drafts", "Trash", "Junk")


@dataclass
class Credentials:
    address: str
    secret: str = field(repr=False)
    imap_host: Optional[str] = None
    imap_port: Optional[int] = None
    smtp_host: Optional[str] = None
    smtp_port: Optional[int] = None


@dataclass
class Folder:
    name: str
    path: str  # server path, passed back into every later call
    delimiter: str
    flags: Set[str] = field(default_factory=set)
    special_use: Optional[str] = None  # Sent, Drafts, Trash, Junk, Archive, Flagged, All
    total: int = 0
    unseen: int = 0

    @property
    def selectable(self) -> bool:
        return not any(f.lower() in ("\\noselect", "\\nonexistent") for f in self.flags)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "delimiter": self.delimiter,
            "flags": sorted(self.flags),
            "specialUse": self.special_use,
            "messages": {"total": self.total, "unseen": self.unseen},
        }


@dataclass
class Address:
    name: str
    address: str

    def to_dict(self) -> dict:
        return {"name": self.name, "address": self.address}


@dataclass
class MessageSummary:
    uid: int  # unique only within its folder
    message_id: str
    subject: str
    from_: List[Address] = field(default_factory=list)
    to: List[Address] = field(default_factory=list)
    cc: List[Address] = field(default_factory=list)
    date: Optional[datetime] = None
    flags: Set[str] = field(default_factory=set)
    has_attachments: bool = False

    @property
    def is_read(self) -> bool:
        return SEEN in self.flags

    @property
    def is_starred(self) -> bool:
        return FLAGGED in self.flags

    def to_dict(self) -> dict:
        return {
            "uid": self.uid,
            "messageId": self.message_id,
            "subject": self.subject,
            "from": [a.to_dict() for a in self.from_],
            "to": [a.to_dict() for a in self.to],
            "cc": [a.to_dict() for a in self.cc],
            "date": self.date.isoformat() if self.date else None,
            "flags": sorted(self.flags),
            "isRead": self.is_read,
            "isStarred": self.is_starred,
            "hasAttachments": self.has_attachments,
        }


@dataclass
class AttachmentInfo:
    filename: str
    content_type: str
    size: int
    content_id: Optional[str] = None
    content: Optional[bytes] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "filename": self.filename,
            "contentType": self.content_type,
            "size": self.size,
            "contentId": self.content_id,
            "hasContent": self.content is not None,
        }


@dataclass
class MessageDetail(MessageSummary):
    html: Optional[str] = None
    text: Optional[str] = None
    attachments: List[AttachmentInfo] = field(default_factory=list)
    blocked_images: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(
            {
                "html": self.html,
                "text": self.text,
                "attachments": [a.to_dict() for a in self.attachments],
                "blockedImages": list(self.blocked_images),
            }
        )
        return data


@dataclass
class OutgoingAttachment:
    filename: str
    content: bytes = field(repr=False)
    content_type: str = "application/octet-stream"


@dataclass
class Composition:
    to: List[str]
    subject: str = ""
    text: str = ""
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    html: Optional[str] = None
    attachments: List[OutgoingAttachment] = field(default_factory=list)
    in_reply_to: Optional[str] = None
    references: Optional[str] = None

    @property
    def recipients(self) -> List[str]:
        return [*self.to, *self.cc, *self.bcc]


@dataclass
class MessagePage:
    messages: List[MessageSummary]
    total: int
    page: int = 1
    page_size: int = 50

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size

    def to_dict(self) -> dict:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "total": self.total,
            "page": self.page,
            "limit": self.page_size,
            "totalPages": self.total_pages,
        }


__all__ = [
    "SEEN",
    "FLAGGED",
    "DELETED",
    "DRAFT",
    "SPECIAL_KINDS",
    "Credentials",
    "Folder",
    "Address",
    "MessageSummary",
    "AttachmentInfo",
    "MessageDetail",
    "OutgoingAttachment",
    "Composition",
    "MessagePage",
]
