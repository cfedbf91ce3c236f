import sqlite3
from pathlib import Path
from typing import Optional, List
from datetime import datetime

from .config import get_settings


def get_connection() -> sqlite3.Connection:
    db_path: Path = get_settings().db_path
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    conn = get_connection()
    cur = conn.cursor()
    # Provisioned mailboxes; passwords are Fernet tokens, never plain text
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS mailboxes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email_address TEXT NOT NULL UNIQUE,
            domain TEXT NOT NULL,
            encrypted_password TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            description TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
    )
    conn.commit()
    conn.close()


def _row_to_dict(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "email_address": row["email_address"],
        "domain": row["domain"],
        "is_active": bool(row["is_active"]),
        "description": row["description"],
        "has_password": bool(row["encrypted_password"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def add_mailbox(email_address: str, encrypted_password: Optional[str], description: Optional[str] = None) -> int:
    now = datetime.utcnow().isoformat()
    domain = email_address.rpartition("@")[2].lower()
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO mailboxes(email_address, domain, encrypted_password, is_active, description, created_at, updated_at)
        VALUES(?,?,?,1,?,?,?)
        ON CONFLICT(email_address) DO UPDATE SET
          encrypted_password=excluded.encrypted_password,
          description=COALESCE(excluded.description, mailboxes.description),
          is_active=1,
          updated_at=excluded.updated_at
        """,
        (email_address.lower(), domain, encrypted_password, description, now, now),
    )
    conn.commit()
    cur.execute("SELECT id FROM mailboxes WHERE email_address=?", (email_address.lower(),))
    new_id = cur.fetchone()["id"]
    conn.close()
    return new_id


def list_mailboxes(domain: Optional[str] = None) -> List[dict]:
    conn = get_connection()
    cur = conn.cursor()
    if domain:
        cur.execute("SELECT * FROM mailboxes WHERE domain=? ORDER BY email_address ASC", (domain.lower(),))
    else:
        cur.execute("SELECT * FROM mailboxes ORDER BY domain ASC, email_address ASC")
    rows = [_row_to_dict(r) for r in cur.fetchall()]
    conn.close()
    return rows


def get_mailbox(email_address: str) -> Optional[dict]:
    conn = get_connection()
    cur = conn.cursor()
    cur.execute("SELECT * FROM mailboxes WHERE email_address=?", (email_address.lower(),))
    row = cur.fetchone()
    conn.close()
    return _row_to_dict(row) if row else None


def get_mailbox_secret(email_address: str) -> Optional[str]:
    """Encrypted password for ``email_address`` (None if unknown or never stored)."""
    conn = get_connection()
    cur = conn.cursor()
    cur.execute("SELECT encrypted_password FROM mailboxes WHERE email_address=?", (email_address.lower(),))
    row = cur.fetchone()
    conn.close()
    return row["encrypted_password"] if row else None


def update_mailbox_password(email_address: str, encrypted_password: str) -> bool:
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        "UPDATE mailboxes SET encrypted_password=?, updated_at=? WHERE email_address=?",
        (encrypted_password, datetime.utcnow().isoformat(), email_address.lower()),
    )
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


def set_mailbox_active(email_address: str, active: bool) -> bool:
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        "UPDATE mailboxes SET is_active=?, updated_at=? WHERE email_address=?",
        (1 if active else 0, datetime.utcnow().isoformat(), email_address.lower()),
    )
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


def delete_mailbox(email_address: str) -> bool:
    conn = get_connection()
    cur = conn.cursor()
    cur.execute("DELETE FROM mailboxes WHERE email_address=?", (email_address.lower(),))
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


__all__ = [
    "init_db",
    "add_mailbox",
    "list_mailboxes",
    "get_mailbox",
    "get_mailbox_secret",
    "update_mailbox_password",
    "set_mailbox_active",
    "delete_mailbox",
]
