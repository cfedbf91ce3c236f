"""
Runtime settings for the mail panel backend.

All settings are read from environment variables so the same code runs under
uvicorn, in tests and behind a process manager without config files.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent

DEFAULT_IMAP_PORT = 993
DEFAULT_SMTP_PORT = 465
SESSION_TTL_SECONDS = 60 * 60 * 24


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value:
        return default
    return int(value)


@dataclass(frozen=True)
class Settings:
    imap_host: str
    imap_port: int
    smtp_host: str
    smtp_port: int
    tls_verify: bool
    timeout: int
    webmail_secret: str
    session_ttl: int
    encryption_key: Optional[str]
    db_path: Path
    backend_token: str
    backend_port: int
    plesk_host: str
    plesk_api_key: Optional[str]
    plesk_admin_user: Optional[str]
    plesk_admin_password: Optional[str]
    plesk_verify_tls: bool
    cookie_secure: bool
    debug: bool
    log_file: Optional[str]


def load_settings() -> Settings:
    """Build a Settings snapshot from the current environment."""
    return Settings(
        imap_host=os.environ.get("MAIL_IMAP_HOST", "localhost"),
        imap_port=_env_int("MAIL_IMAP_PORT", DEFAULT_IMAP_PORT),
        smtp_host=os.environ.get("MAIL_SMTP_HOST", os.environ.get("MAIL_IMAP_HOST", "localhost")),
        smtp_port=_env_int("MAIL_SMTP_PORT", DEFAULT_SMTP_PORT),
        tls_verify=_env_bool("MAIL_TLS_VERIFY", True),
        timeout=_env_int("MAIL_TIMEOUT", 30),
        webmail_secret=os.environ.get("WEBMAIL_SECRET", "webmail-secret-key"),
        session_ttl=_env_int("WEBMAIL_SESSION_TTL", SESSION_TTL_SECONDS),
        encryption_key=os.environ.get("EMAIL_ENCRYPTION_KEY") or None,
        db_path=Path(os.environ.get("EMAIL_DB_PATH", str(ROOT / "data" / "mailpanel.db"))),
        backend_token=os.environ.get("BACKEND_TOKEN", "dev-token"),
        backend_port=_env_int("BACKEND_PORT", 8137),
        plesk_host=os.environ.get("PLESK_HOST", "").rstrip("/"),
        plesk_api_key=os.environ.get("PLESK_API_KEY") or None,
        plesk_admin_user=os.environ.get("PLESK_ADMIN_USER") or None,
        plesk_admin_password=os.environ.get("PLESK_ADMIN_PASSWORD") or None,
        plesk_verify_tls=_env_bool("PLESK_VERIFY_TLS", False),
        cookie_secure=_env_bool("COOKIE_SECURE", False),
        debug=_env_bool("MAILPANEL_DEBUG", False),
        log_file=os.environ.get("MAILPANEL_LOG_FILE") or None,
    )


_SETTINGS: Optional[Settings] = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = load_settings()
    return _SETTINGS


def reset_settings() -> None:
    """Drop the cached snapshot so the next get_settings() re-reads the environment."""
    global _SETTINGS
    _SETTINGS = None


__all__ = ["Settings", "load_settings", "get_settings", "reset_settings"]
