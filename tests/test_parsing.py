"""Tests for FETCH response splitting and message parsing."""

from datetime import timezone

import pytest

from fakes import make_message
from mailpanel.errors import ParseError
from mailpanel.parsing import parse_date, parse_message, sanitize_html, split_fetch_response


def test_split_fetch_response_groups_sections():
    data = [
        (b"1 (UID 7 FLAGS (\\Seen) BODY[HEADER.FIELDS (SUBJECT)] {20}", b"Subject: one\r\n\r\n"),
        b")",
        b"2 (UID 9 FLAGS ())",
        (b"3 (UID 11 FLAGS (\\Flagged) BODY[] {5}", b"hello"),
        b")",
    ]
    first, unsolicited, third = split_fetch_response(data)
    assert (first.uid, first.flags) == (7, {"\\Seen"})
    assert first.sections["HEADER"] == b"Subject: one\r\n\r\n"
    assert unsolicited.uid == 9
    assert unsolicited.sections == {}
    assert third.sections["BODY"] == b"hello"
    assert third.flags == {"\\Flagged"}


def test_split_fetch_response_ignores_empty_results():
    assert split_fetch_response([None]) == []


def test_parse_date_normalises_to_utc():
    dt = parse_date("Tue, 05 Mar 2024 10:00:00 +0100")
    assert dt.tzinfo == timezone.utc
    assert dt.hour == 9


def test_parse_date_falls_back_to_now():
    assert parse_date("not a date").tzinfo == timezone.utc
    assert parse_date(None).tzinfo == timezone.utc


def test_sanitize_html_can_allow_remote_images():
    html = '<img src="https://cdn.example/logo.png"><img src="cid:inline1">'
    cleaned, blocked = sanitize_html(html, allow_remote_images=True)
    assert "cdn.example" in cleaned
    assert blocked == []

    cleaned, blocked = sanitize_html(html)
    assert blocked == ["https://cdn.example/logo.png"]
    assert "cid:inline1" in cleaned
    assert "[Image blocked]" in cleaned


def test_parse_message_includes_attachment_content_on_request():
    raw = make_message(attachment=("data.bin", b"\x00\x01", "application/octet-stream"))
    detail = parse_message(5, set(), raw, include_content=True)
    assert detail.attachments[0].content == b"\x00\x01"
    assert detail.has_attachments


def test_parse_empty_message_is_parse_error():
    with pytest.raises(ParseError):
        parse_message(5, set(), b"")
