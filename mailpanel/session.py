"""
Webmail session tokens.

A session is a Fernet token (AES-CBC + HMAC, with an embedded timestamp) holding
the mailbox address and password. The server keeps no session table: the token is
the session, and Fernet's ``ttl`` check enforces the 24 hour lifetime.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken

from .config import get_settings
from .crypto import derive_key
from .errors import SessionError
from .models import Credentials

logger = logging.getLogger(__name__)

COOKIE_NAME = "webmail_session"


@dataclass
class WebmailSession:
    address: str
    secret: str = field(repr=False)
    login_at: int = 0  # epoch milliseconds

    def credentials(self) -> Credentials:
        return Credentials(address=self.address, secret=self.secret)


def _fernet() -> Fernet:
    return Fernet(derive_key(get_settings().webmail_secret))


def create_session(address: str, secret: str, now: Optional[float] = None) -> str:
    """Issue a new token; replaces any previous session wholesale."""
    issued = time.time() if now is None else now
    payload = json.dumps(
        {"email": address, "password": secret, "loginAt": int(issued * 1000)}
    ).encode("utf-8")
    return _fernet().encrypt_at_time(payload, int(issued)).decode()


def read_session(token: Optional[str], now: Optional[float] = None) -> Optional[WebmailSession]:
    """Return the session held by ``token``, or None when missing, expired or forged."""
    if not token:
        return None
    settings = get_settings()
    try:
        if now is None:
            raw = _fernet().decrypt(token.encode(), ttl=settings.session_ttl)
        else:
            raw = _fernet().decrypt_at_time(token.encode(), settings.session_ttl, int(now))
        payload = json.loads(raw)
    except (InvalidToken, ValueError):
        logger.debug("Rejected webmail session token")
        return None
    if not payload.get("email") or not payload.get("password"):
        return None
    return WebmailSession(
        address=payload["email"],
        secret=payload["password"],
        login_at=int(payload.get("loginAt") or 0),
    )


def require_credentials(token: Optional[str]) -> Credentials:
    session = read_session(token)
    if session is None:
        raise SessionError()
    return session.credentials()


__all__ = ["COOKIE_NAME", "WebmailSession", "create_session", "read_session", "require_credentials"]
