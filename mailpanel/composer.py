"""
Composing, sending and filing outgoing mail.

``send`` is two steps: SMTP delivery (the result of the call) and a best-effort
APPEND of the same bytes into the Sent folder (logged, never raised).
"""
import logging
import smtplib
from email import encoders, policy
from email.header import Header
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, getaddresses, make_msgid, parseaddr
from typing import List, Tuple

from .connection import ADDRESS_RE, open_mail_session, open_transport
from .errors import MailPanelError, ProtocolError
from .folders import append_creating, resolve_special_folder
from .models import Composition, Credentials, DRAFT, OutgoingAttachment, SEEN

logger = logging.getLogger(__name__)

SMTP_POLICY = policy.compat32.clone(linesep="\r\n")


def _is_ascii(value: str) -> bool:
    try:
        value.encode("ascii")
    except UnicodeEncodeError:
        return False
    return True


def _encoded(value: str):
    return value if _is_ascii(value) else Header(value, "utf-8")


def _address_header(values: List[str]) -> str:
    return ", ".join(formataddr((name, addr), charset="utf-8") for name, addr in getaddresses(values) if addr)


def _envelope(values: List[str]) -> List[str]:
    return [addr for _, addr in getaddresses(values) if addr]


def _check_addresses(addresses: List[str]) -> None:
    for value in addresses:
        _, addr = parseaddr(value)
        if not addr or not ADDRESS_RE.match(addr):
            raise ValueError(f"Invalid recipient address: {value!r}")


def _attachment_part(attachment: OutgoingAttachment) -> MIMEBase:
    content_type = attachment.content_type or "application/octet-stream"
    maintype, _, subtype = content_type.partition("/")
    if not subtype:
        maintype, subtype = "application", "octet-stream"
    part = MIMEBase(maintype, subtype)
    part.set_payload(attachment.content)
    encoders.encode_base64(part)
    filename = attachment.filename or "attachment"
    if _is_ascii(filename):
        part.set_param("name", filename)
        part.add_header("Content-Disposition", "attachment", filename=filename)
    else:
        part.set_param("name", ("utf-8", "", filename))
        part.add_header("Content-Disposition", "attachment", filename=("utf-8", "", filename))
    return part


def build_raw_message(sender: str, composition: Composition) -> Tuple[bytes, str]:
    """Render ``composition`` to RFC 5322 bytes; returns (raw, message_id)."""
    body = MIMEText(composition.text or "", "plain", "utf-8")
    if composition.html:
        alternative = MIMEMultipart("alternative")
        alternative.attach(body)
        alternative.attach(MIMEText(composition.html, "html", "utf-8"))
        body = alternative

    if composition.attachments:
        root = MIMEMultipart("mixed")
        root.attach(body)
        for attachment in composition.attachments:
            root.attach(_attachment_part(attachment))
    else:
        root = body

    domain = sender.rpartition("@")[2] or "localhost"
    message_id = make_msgid(domain=domain)
    root["From"] = sender
    if composition.to:
        root["To"] = _address_header(composition.to)
    if composition.cc:
        root["Cc"] = _address_header(composition.cc)
    root["Subject"] = _encoded(composition.subject or "")
    root["Date"] = formatdate(usegmt=True)
    root["Message-ID"] = message_id
    if composition.in_reply_to:
        root["In-Reply-To"] = composition.in_reply_to
        root["References"] = composition.references or composition.in_reply_to
    return root.as_bytes(policy=SMTP_POLICY), message_id


def _save_sent_copy(credentials: Credentials, raw: bytes) -> bool:
    try:
        with open_mail_session(credentials) as session:
            sent = resolve_special_folder(session, "Sent")
            append_creating(session, sent, raw, [SEEN])
        logger.info("Saved sent copy for %s in %s", credentials.address, sent)
        return True
    except MailPanelError as e:
        logger.warning("Message sent but Sent copy failed for %s: %s", credentials.address, e)
        return False


def send(credentials: Credentials, composition: Composition) -> str:
    """Deliver over SMTP and file a copy in Sent; returns the Message-ID."""
    if not composition.recipients:
        raise ValueError("At least one recipient is required")
    _check_addresses(composition.recipients)
    raw, message_id = build_raw_message(credentials.address, composition)

    with open_transport(credentials) as smtp:
        try:
            refused = smtp.sendmail(credentials.address, _envelope(composition.recipients), raw)
        except smtplib.SMTPRecipientsRefused as e:
            raise ProtocolError(f"All recipients were refused: {', '.join(e.recipients)}")
        except (smtplib.SMTPException, OSError) as e:
            raise ProtocolError(f"Sending failed: {e}")
    if refused:
        logger.warning("Some recipients refused for %s: %s", message_id, ", ".join(refused))
    logger.info("Sent %s from %s to %d recipient(s)", message_id, credentials.address, len(composition.recipients))

    _save_sent_copy(credentials, raw)
    return message_id


def save_draft(credentials: Credentials, composition: Composition) -> str:
    _check_addresses(composition.recipients)
    raw, message_id = build_raw_message(credentials.address, composition)
    with open_mail_session(credentials) as session:
        drafts = resolve_special_folder(session, "Drafts")
        append_creating(session, drafts, raw, [DRAFT, SEEN])
    logger.info("Saved draft %s for %s in %s", message_id, credentials.address, drafts)
    return message_id


__all__ = ["build_raw_message", "send", "save_draft"]
