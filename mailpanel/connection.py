"""
Short-lived IMAP sessions and SMTP transports.

Nothing here is pooled or cached: every operation opens its own connection through
``open_mail_session`` / ``open_transport`` and the context manager guarantees the
connection is closed on every exit path.
"""
import imaplib
import logging
import re
import smtplib
import ssl
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence, Set, Tuple

from .config import get_settings
from .errors import AuthenticationFailed, ConnectError, FolderMissing, ProtocolError
from .models import Credentials

logger = logging.getLogger(__name__)

ADDRESS_RE = re.compile(r"^[^@\s<>\"]+@[^@\s<>\"]+\.[^@\s<>\"]+$")
_MISSING_MAILBOX_RE = re.compile(rb"\[(TRYCREATE|NONEXISTENT)\]|doesn't exist|does not exist|no such mailbox", re.I)


def validate_credentials(credentials: Credentials) -> None:
    if not credentials.address or not ADDRESS_RE.match(credentials.address):
        raise ValueError(f"Invalid mailbox address: {credentials.address!r}")
    if not credentials.secret:
        raise ValueError("Mailbox password must not be empty")


def quote_mailbox(path: str) -> str:
    escaped = path.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _tls_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not get_settings().tls_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _describe(data) -> str:
    if not data:
        return ""
    parts = []
    for item in data:
        if isinstance(item, tuple):
            item = item[0]
        if isinstance(item, bytes):
            item = item.decode("utf-8", errors="replace")
        if item:
            parts.append(str(item))
    return " ".join(parts)


class MailSession:
    """An authenticated IMAP connection. Every command failure surfaces as ProtocolError."""

    def __init__(self, conn: imaplib.IMAP4, credentials: Credentials):
        self.conn = conn
        self.address = credentials.address
        self.selected: Optional[str] = None
        self._closed = False

    @property
    def capabilities(self) -> Set[str]:
        return {str(c).upper() for c in getattr(self.conn, "capabilities", ()) or ()}

    def has_capability(self, name: str) -> bool:
        return name.upper() in self.capabilities

    def _run(self, what: str, func, *args, mailbox: Optional[str] = None):
        try:
            typ, data = func(*args)
        except (imaplib.IMAP4.error, OSError) as e:
            raise ProtocolError(f"{what} failed: {e}")
        if typ != "OK":
            detail = _describe(data)
            if mailbox is not None and any(
                _MISSING_MAILBOX_RE.search(d if isinstance(d, bytes) else str(d).encode())
                for d in (data or [])
                if d
            ):
                raise FolderMissing(f"Folder does not exist: {mailbox}")
            raise ProtocolError(f"{what} failed: {detail or typ}")
        return data

    def list_mailboxes(self) -> List:
        return self._run("LIST", self.conn.list, '""', "*") or []

    def status(self, path: str) -> Tuple[int, int]:
        data = self._run("STATUS", self.conn.status, quote_mailbox(path), "(MESSAGES UNSEEN)", mailbox=path)
        text = _describe(data)
        total = re.search(r"MESSAGES (\d+)", text)
        unseen = re.search(r"UNSEEN (\d+)", text)
        return (int(total.group(1)) if total else 0, int(unseen.group(1)) if unseen else 0)

    def select(self, path: str, readonly: bool = False) -> int:
        data = self._run("SELECT", self.conn.select, quote_mailbox(path), readonly, mailbox=path)
        self.selected = path
        try:
            return int(data[0])
        except (TypeError, ValueError, IndexError):
            return 0

    def uid(self, command: str, *args, mailbox: Optional[str] = None) -> List:
        return self._run(f"UID {command}", self.conn.uid, command, *args, mailbox=mailbox) or []

    def search(self, criteria: Sequence[str], text: Optional[str] = None, sort: bool = False) -> List[int]:
        """UID SEARCH (or UID SORT REVERSE DATE); ``text`` is sent as a UTF-8 literal."""
        args = list(criteria)
        if text:
            self.conn.literal = text.encode("utf-8")
            args.append("TEXT")
        if sort:
            data = self.uid("SORT", "(REVERSE DATE)", "UTF-8", *(args or ["ALL"]))
        elif text:
            data = self.uid("SEARCH", "CHARSET", "UTF-8", *args)
        else:
            data = self.uid("SEARCH", None, *(args or ["ALL"]))
        uids: List[int] = []
        for chunk in data:
            if isinstance(chunk, bytes):
                uids.extend(int(u) for u in chunk.split() if u.isdigit())
        return uids

    def store(self, uid: int, op: str, flags: Sequence[str]) -> None:
        self.uid("STORE", str(uid), op, "(" + " ".join(flags) + ")")

    def copy(self, uid: int, target: str) -> None:
        self.uid("COPY", str(uid), quote_mailbox(target), mailbox=target)

    def move(self, uid: int, target: str) -> None:
        self.uid("MOVE", str(uid), quote_mailbox(target), mailbox=target)

    def expunge(self) -> None:
        self._run("EXPUNGE", self.conn.expunge)

    def append(self, path: str, raw: bytes, flags: Sequence[str] = ()) -> None:
        flag_list = "(" + " ".join(flags) + ")" if flags else None
        self._run("APPEND", self.conn.append, quote_mailbox(path), flag_list, None, raw, mailbox=path)

    def create(self, path: str) -> None:
        self._run("CREATE", self.conn.create, quote_mailbox(path))

    def delete(self, path: str) -> None:
        self._run("DELETE", self.conn.delete, quote_mailbox(path), mailbox=path)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.conn.logout()
        except (imaplib.IMAP4.error, OSError):
            logger.debug("IMAP logout failed for %s", self.address)


@contextmanager
def open_mail_session(credentials: Credentials) -> Iterator[MailSession]:
    """Open an authenticated IMAP-over-TLS session, closed when the block exits."""
    validate_credentials(credentials)
    settings = get_settings()
    host = credentials.imap_host or settings.imap_host
    port = credentials.imap_port or settings.imap_port
    try:
        conn = imaplib.IMAP4_SSL(host, port, ssl_context=_tls_context(), timeout=settings.timeout)
    except (imaplib.IMAP4.error, OSError) as e:
        logger.warning("IMAP connect to %s:%s failed: %s", host, port, e)
        raise ConnectError(f"Could not connect to {host}:{port}")
    try:
        conn.login(credentials.address, credentials.secret)
    except imaplib.IMAP4.abort as e:
        _quiet_logout(conn)
        raise ConnectError(f"Connection to {host}:{port} dropped during login: {e}")
    except imaplib.IMAP4.error:
        _quiet_logout(conn)
        logger.info("IMAP login rejected for %s", credentials.address)
        raise AuthenticationFailed()
    except OSError as e:
        _quiet_logout(conn)
        raise ConnectError(f"Could not connect to {host}:{port}: {e}")
    session = MailSession(conn, credentials)
    try:
        yield session
    finally:
        session.close()


def _quiet_logout(conn) -> None:
    try:
        conn.logout()
    except (imaplib.IMAP4.error, OSError):
        pass


@contextmanager
def open_transport(credentials: Credentials) -> Iterator[smtplib.SMTP]:
    """Open an authenticated SMTP connection: implicit TLS on 465, STARTTLS elsewhere."""
    validate_credentials(credentials)
    settings = get_settings()
    host = credentials.smtp_host or settings.smtp_host
    port = credentials.smtp_port or settings.smtp_port
    smtp = None
    try:
        if port == 465:
            smtp = smtplib.SMTP_SSL(host, port, timeout=settings.timeout, context=_tls_context())
        else:
            smtp = smtplib.SMTP(host, port, timeout=settings.timeout)
            smtp.starttls(context=_tls_context())
        smtp.login(credentials.address, credentials.secret)
    except smtplib.SMTPAuthenticationError:
        _quiet_quit(smtp)
        logger.info("SMTP login rejected for %s", credentials.address)
        raise AuthenticationFailed()
    except (smtplib.SMTPException, OSError) as e:
        _quiet_quit(smtp)
        logger.warning("SMTP connect to %s:%s failed: %s", host, port, e)
        raise ConnectError(f"Could not connect to {host}:{port}")
    try:
        yield smtp
    finally:
        _quiet_quit(smtp)


def _quiet_quit(smtp) -> None:
    if smtp is None:
        return
    try:
        smtp.quit()
    except (smtplib.SMTPException, OSError):
        smtp.close()


def verify_credentials(credentials: Credentials) -> bool:
    try:
        with open_mail_session(credentials):
            return True
    except (AuthenticationFailed, ConnectError):
        return False

__all__ = [
    "MailSession",
    "validate_credentials",
    "quote_mailbox",
    "open_mail_session",
    "open_transport",
    "verify_credentials",
]
