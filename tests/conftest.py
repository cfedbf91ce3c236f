"""Shared fixtures: isolated settings, a fake mail server and an HTTP client."""

import imaplib
import smtplib
import sys
from pathlib import Path

import pytest
from cryptography.fernet import Fernet

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from fakes import FakeImapServer, FakeSmtp, PASSWORD

from mailpanel import crypto
from mailpanel.config import reset_settings
from mailpanel.models import Credentials

ADDRESS = "bob@example.com"


@pytest.fixture(autouse=True)
def settings_env(tmp_path, monkeypatch):
    """Every test reads a fresh environment with its own database and keys."""
    monkeypatch.setenv("MAIL_IMAP_HOST", "mail.example.com")
    monkeypatch.setenv("MAIL_SMTP_HOST", "mail.example.com")
    monkeypatch.setenv("MAIL_SMTP_PORT", "465")
    monkeypatch.setenv("WEBMAIL_SECRET", "test-webmail-secret")
    monkeypatch.setenv("EMAIL_ENCRYPTION_KEY", Fernet.generate_key().decode())
    monkeypatch.setenv("EMAIL_DB_PATH", str(tmp_path / "mailpanel.db"))
    monkeypatch.setenv("BACKEND_TOKEN", "test-token")
    monkeypatch.setenv("PLESK_HOST", "https://plesk.example.com:8443")
    monkeypatch.setenv("PLESK_API_KEY", "plesk-key")
    reset_settings()
    crypto.reset_fernet()
    yield
    reset_settings()
    crypto.reset_fernet()


@pytest.fixture
def imap_server(monkeypatch):
    server = FakeImapServer()
    monkeypatch.setattr(imaplib, "IMAP4_SSL", server)
    return server


@pytest.fixture
def smtp_server(monkeypatch):
    smtp = FakeSmtp()
    monkeypatch.setattr(smtplib, "SMTP_SSL", smtp)
    return smtp


@pytest.fixture
def credentials():
    return Credentials(address=ADDRESS, secret=PASSWORD)


@pytest.fixture
def mail_session(imap_server, credentials):
    from mailpanel.connection import open_mail_session

    with open_mail_session(credentials) as session:
        yield session


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from mailpanel.api import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def logged_in(client, imap_server):
    resp = client.post("/webmail/auth", json={"email": ADDRESS, "password": PASSWORD})
    assert resp.status_code == 200
    return client
