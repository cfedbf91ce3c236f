import base64
import hashlib
import logging
import os
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken

from .config import get_settings
from .errors import DecryptionError

logger = logging.getLogger(__name__)

_FERNET: Optional[Fernet] = None

KEY_ENV = "EMAIL_ENCRYPTION_KEY"


def derive_key(secret: str) -> bytes:
    """Turn an arbitrary passphrase into a urlsafe 32-byte Fernet key."""
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def get_fernet() -> Fernet:
    global _FERNET
    if _FERNET is not None:
        return _FERNET
    key = get_settings().encryption_key or os.environ.get(KEY_ENV)
    if not key:
        # Ephemeral key: stored mailbox passwords become unreadable after a restart
        logger.warning("%s not set; generating an ephemeral key", KEY_ENV)
        key = Fernet.generate_key().decode()
        os.environ[KEY_ENV] = key
    _FERNET = Fernet(key.encode())
    return _FERNET


def reset_fernet() -> None:
    global _FERNET
    _FERNET = None


def encrypt_secret(plain: str) -> str:
    f = get_fernet()
    return f.encrypt(plain.encode()).decode()


def decrypt_secret(token: str) -> str:
    f = get_fernet()
    try:
        return f.decrypt(token.encode()).decode()
    except InvalidToken:
        raise DecryptionError()


__all__ = ["derive_key", "get_fernet", "reset_fernet", "encrypt_secret", "decrypt_secret"]
