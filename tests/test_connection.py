"""Tests for opening and closing IMAP sessions and SMTP transports."""

import imaplib
import smtplib

import pytest

from fakes import FakeSmtp
from mailpanel.config import reset_settings
from mailpanel.connection import open_mail_session, open_transport, quote_mailbox, verify_credentials
from mailpanel.errors import AuthenticationFailed, ConnectError, ProtocolError
from mailpanel.models import Credentials


def test_session_logs_out_on_normal_exit(imap_server, credentials):
    with open_mail_session(credentials) as session:
        assert session.address == "bob@example.com"
    assert imap_server.logins == 1
    assert imap_server.logouts == 1


def test_session_logs_out_when_operation_fails(imap_server, credentials):
    with pytest.raises(RuntimeError):
        with open_mail_session(credentials):
            raise RuntimeError("boom")
    assert imap_server.logouts == 1


def test_rejected_login_is_authentication_failed(imap_server):
    with pytest.raises(AuthenticationFailed):
        with open_mail_session(Credentials(address="bob@example.com", secret="wrong")):
            pass
    assert imap_server.logouts == 1


def test_unreachable_server_is_connect_error(monkeypatch, credentials):
    def refuse(host, port, ssl_context=None, timeout=None):
        raise ConnectionRefusedError(111, "Connection refused")

    monkeypatch.setattr(imaplib, "IMAP4_SSL", refuse)
    with pytest.raises(ConnectError):
        with open_mail_session(credentials):
            pass


def test_invalid_credentials_shape_is_rejected_before_connecting(imap_server):
    with pytest.raises(ValueError):
        with open_mail_session(Credentials(address="not-an-address", secret="x")):
            pass
    with pytest.raises(ValueError):
        with open_mail_session(Credentials(address="bob@example.com", secret="")):
            pass
    assert imap_server.connects == 0


def test_verify_credentials(imap_server, credentials):
    assert verify_credentials(credentials) is True
    assert verify_credentials(Credentials(address="bob@example.com", secret="wrong")) is False


def test_failed_command_becomes_protocol_error(imap_server, credentials):
    def broken_list(directory, pattern):
        raise imaplib.IMAP4.abort("socket error: EOF")

    with open_mail_session(credentials) as session:
        session.conn.list = broken_list
        with pytest.raises(ProtocolError):
            session.list_mailboxes()


def test_quote_mailbox_escapes():
    assert quote_mailbox("INBOX") == '"INBOX"'
    assert quote_mailbox('Say "hi"') == '"Say \\"hi\\""'


def test_transport_quits_after_use(smtp_server, credentials):
    with open_transport(credentials) as smtp:
        assert smtp is smtp_server
    assert smtp_server.quits == 1


def test_transport_rejected_login(smtp_server):
    with pytest.raises(AuthenticationFailed):
        with open_transport(Credentials(address="bob@example.com", secret="wrong")):
            pass


def test_transport_unreachable(monkeypatch, credentials):
    def refuse(host, port, timeout=None, context=None):
        raise smtplib.SMTPConnectError(421, b"Service not available")

    monkeypatch.setattr(smtplib, "SMTP_SSL", refuse)
    with pytest.raises(ConnectError):
        with open_transport(credentials):
            pass


def test_transport_upgrades_with_starttls_before_login(monkeypatch, credentials):
    plain = FakeSmtp()
    monkeypatch.setattr(smtplib, "SMTP", plain)
    monkeypatch.setenv("MAIL_SMTP_PORT", "587")
    reset_settings()

    with open_transport(credentials) as smtp:
        assert smtp is plain
    assert plain.calls == ["starttls", "login"]
    assert plain.quits == 1


def test_transport_quits_when_starttls_fails(monkeypatch, credentials):
    plain = FakeSmtp()
    plain.starttls_error = smtplib.SMTPNotSupportedError("STARTTLS extension not supported by server.")
    monkeypatch.setattr(smtplib, "SMTP", plain)
    monkeypatch.setenv("MAIL_SMTP_PORT", "587")
    reset_settings()

    with pytest.raises(ConnectError):
        with open_transport(credentials):
            pass
    assert plain.calls == ["starttls"]
    assert plain.quits == 1
