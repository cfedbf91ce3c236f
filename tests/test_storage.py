"""Tests for the sqlite mailbox registry."""

from mailpanel import storage
from mailpanel.crypto import decrypt_secret, encrypt_secret


def test_add_and_list_mailboxes():
    storage.init_db()
    storage.add_mailbox("Info@Example.com", encrypt_secret("pw-info"), "front desk")
    storage.add_mailbox("sales@other.org", None)

    rows = storage.list_mailboxes()
    assert [r["email_address"] for r in rows] == ["info@example.com", "sales@other.org"]
    assert rows[0]["domain"] == "example.com"
    assert rows[0]["has_password"] is True
    assert rows[1]["has_password"] is False
    assert "encrypted_password" not in rows[0]
    assert [r["email_address"] for r in storage.list_mailboxes("other.org")] == ["sales@other.org"]


def test_add_existing_mailbox_updates_it():
    storage.init_db()
    first = storage.add_mailbox("info@example.com", encrypt_secret("old"), "desk")
    storage.set_mailbox_active("info@example.com", False)
    second = storage.add_mailbox("info@example.com", encrypt_secret("new"))

    assert first == second
    row = storage.get_mailbox("info@example.com")
    assert row["is_active"] is True
    assert row["description"] == "desk"
    assert decrypt_secret(storage.get_mailbox_secret("info@example.com")) == "new"


def test_update_toggle_and_delete():
    storage.init_db()
    storage.add_mailbox("info@example.com", encrypt_secret("old"))

    assert storage.update_mailbox_password("info@example.com", encrypt_secret("new"))
    assert decrypt_secret(storage.get_mailbox_secret("INFO@example.com")) == "new"
    assert storage.set_mailbox_active("info@example.com", False)
    assert storage.get_mailbox("info@example.com")["is_active"] is False

    assert storage.delete_mailbox("info@example.com")
    assert storage.get_mailbox("info@example.com") is None
    assert storage.get_mailbox_secret("info@example.com") is None
    assert not storage.delete_mailbox("info@example.com")
    assert not storage.update_mailbox_password("info@example.com", "x")
