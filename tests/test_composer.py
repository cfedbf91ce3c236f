"""Tests for building, sending and filing outgoing messages."""

from email import message_from_bytes, policy
from email.parser import BytesParser

import pytest

from mailpanel.composer import build_raw_message, save_draft, send
from mailpanel.connection import open_mail_session
from mailpanel.errors import AuthenticationFailed, ProtocolError
from mailpanel.messages import get_message
from mailpanel.models import Composition, OutgoingAttachment


def _parse(raw):
    return BytesParser(policy=policy.default).parsebytes(raw)


def test_build_encodes_non_ascii_subject_and_base64_body():
    raw, message_id = build_raw_message(
        "bob@example.com",
        Composition(to=["alice@example.com"], subject="Grüße aus Köln", text="Schöne Grüße"),
    )
    head = raw.split(b"\r\n\r\n", 1)[0]
    assert b"Gr\xc3\xbc" not in head
    assert b"=?utf-8?" in head
    assert b"Content-Transfer-Encoding: base64" in raw
    msg = _parse(raw)
    assert msg["Subject"] == "Grüße aus Köln"
    assert msg.get_content().strip() == "Schöne Grüße"
    assert message_id.endswith("@example.com>")
    assert msg["Message-ID"] == message_id
    assert msg["MIME-Version"] == "1.0"


def test_build_never_writes_bcc():
    raw, _ = build_raw_message(
        "bob@example.com",
        Composition(to=["alice@example.com"], cc=["carol@example.com"], bcc=["secret@example.com"]),
    )
    assert b"secret@example.com" not in raw
    msg = _parse(raw)
    assert msg["Cc"] == "carol@example.com"
    assert msg["Bcc"] is None


def test_build_with_attachments_uses_mixed_container():
    composition = Composition(
        to=["alice@example.com"],
        subject="Files",
        text="see attached",
        html="<p>see attached</p>",
        attachments=[
            OutgoingAttachment("a.txt", b"first", "text/plain"),
            OutgoingAttachment("bericht-ü.pdf", b"%PDF", "application/pdf"),
        ],
    )
    raw_one, _ = build_raw_message("bob@example.com", composition)
    raw_two, _ = build_raw_message("bob@example.com", composition)

    msg = _parse(raw_one)
    assert msg.get_content_type() == "multipart/mixed"
    parts = msg.get_payload()
    assert parts[0].get_content_type() == "multipart/alternative"
    assert [p.get_filename() for p in parts[1:]] == ["a.txt", "bericht-ü.pdf"]
    assert parts[2].get_payload(decode=True) == b"%PDF"
    assert message_from_bytes(raw_one).get_boundary() != message_from_bytes(raw_two).get_boundary()


def test_build_reply_headers_default_references():
    raw, _ = build_raw_message(
        "bob@example.com",
        Composition(to=["alice@example.com"], subject="Re: hi", in_reply_to="<orig@example.com>"),
    )
    msg = _parse(raw)
    assert msg["In-Reply-To"] == "<orig@example.com>"
    assert msg["References"] == "<orig@example.com>"


def test_send_delivers_and_files_sent_copy(imap_server, smtp_server, credentials):
    imap_server.add_mailbox("INBOX.Sent", "\\Sent")
    composition = Composition(
        to=["alice@example.com"], cc=["carol@example.com"], bcc=["dave@example.com"], subject="Hi", text="Hello"
    )
    message_id = send(credentials, composition)

    ((sender, recipients, raw),) = smtp_server.sent
    assert sender == "bob@example.com"
    assert recipients == ["alice@example.com", "carol@example.com", "dave@example.com"]
    (copy,) = imap_server.mailboxes["INBOX.Sent"].messages.values()
    assert copy.raw == raw
    assert copy.flags == {"\\Seen"}
    assert _parse(copy.raw)["Message-ID"] == message_id
    assert smtp_server.quits == 1
    assert imap_server.logouts == imap_server.logins


def test_send_creates_missing_sent_folder(imap_server, smtp_server, credentials):
    send(credentials, Composition(to=["alice@example.com"], subject="Hi", text="Hello"))
    assert len(imap_server.mailboxes["INBOX.Sent"].messages) == 1


def test_send_survives_sent_copy_failure(imap_server, smtp_server, credentials):
    imap_server.add_mailbox("INBOX.Sent", "\\Sent")
    imap_server.password = "rotated"
    message_id = send(credentials, Composition(to=["alice@example.com"], subject="Hi", text="Hello"))
    assert message_id
    assert len(smtp_server.sent) == 1
    assert imap_server.mailboxes["INBOX.Sent"].messages == {}


def test_send_requires_a_recipient(smtp_server, credentials):
    with pytest.raises(ValueError):
        send(credentials, Composition(to=[], subject="Hi"))
    assert smtp_server.sent == []


def test_send_rejects_malformed_recipient(smtp_server, credentials):
    with pytest.raises(ValueError):
        send(credentials, Composition(to=["not-an-address"]))


def test_send_all_recipients_refused(imap_server, smtp_server, credentials):
    smtp_server.refuse.add("alice@example.com")
    with pytest.raises(ProtocolError):
        send(credentials, Composition(to=["alice@example.com"], subject="Hi"))
    assert "APPEND" not in imap_server.command_names()


def test_send_with_bad_password(imap_server, smtp_server, credentials):
    smtp_server.password = "other"
    with pytest.raises(AuthenticationFailed):
        send(credentials, Composition(to=["alice@example.com"], subject="Hi"))


def test_save_draft_files_into_drafts(imap_server, credentials):
    imap_server.add_mailbox("INBOX.Drafts", "\\Drafts")
    message_id = save_draft(credentials, Composition(to=[], subject="Later", text="unfinished"))
    (draft,) = imap_server.mailboxes["INBOX.Drafts"].messages.values()
    assert draft.flags == {"\\Draft", "\\Seen"}
    msg = _parse(draft.raw)
    assert msg["Message-ID"] == message_id
    assert msg["Subject"] == "Later"
    assert msg.get_content().strip() == "unfinished"


def test_build_encodes_display_names_but_not_addresses():
    raw, _ = build_raw_message(
        "bob@example.com",
        Composition(to=["Jürgen Müller <juergen@example.de>", "alice@example.com"], cc=['"Doe, John" <john@example.com>']),
    )
    head = raw.split(b"\r\n\r\n", 1)[0]
    assert b"<juergen@example.de>" in head
    msg = _parse(raw)
    assert [(a.display_name, a.addr_spec) for a in msg["To"].addresses] == [
        ("Jürgen Müller", "juergen@example.de"),
        ("", "alice@example.com"),
    ]
    assert [(a.display_name, a.addr_spec) for a in msg["Cc"].addresses] == [("Doe, John", "john@example.com")]


def test_send_uses_bare_addresses_for_the_envelope(imap_server, smtp_server, credentials):
    send(credentials, Composition(to=["Jürgen Müller <juergen@example.de>"], cc=['"Doe, John" <john@example.com>']))
    ((_, recipients, _),) = smtp_server.sent
    assert recipients == ["juergen@example.de", "john@example.com"]


def test_draft_with_non_ascii_recipient_reads_back(imap_server, credentials):
    imap_server.add_mailbox("INBOX.Drafts", "\\Drafts")
    save_draft(credentials, Composition(to=["Jürgen Müller <juergen@example.de>"], subject="Entwurf", text="später"))
    (uid,) = imap_server.mailboxes["INBOX.Drafts"].messages

    with open_mail_session(credentials) as session:
        detail = get_message(session, "INBOX.Drafts", uid)
    assert [(a.name, a.address) for a in detail.to] == [("Jürgen Müller", "juergen@example.de")]
    assert detail.subject == "Entwurf"
    assert detail.text.strip() == "später"
