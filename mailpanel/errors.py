"""
Error hierarchy for the mail panel.

Every failure that can reach the HTTP layer is one of these classes; the API maps
each class to a status code and a uniform ``{"success": false, "message": ...}``
envelope.
"""


class MailPanelError(Exception):
    """Base class for all mail panel errors."""

    default_message = "Unexpected mail error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class ConnectError(MailPanelError):
    """Network or TLS failure while opening an IMAP/SMTP connection."""

    default_message = "Could not connect to the mail server"


class AuthenticationFailed(MailPanelError):
    """The mail server rejected the credentials."""

    default_message = "Invalid email address or password"


class ProtocolError(MailPanelError):
    """A command failed after the session was opened."""

    default_message = "Mail server operation failed"


class MessageNotFound(ProtocolError):
    default_message = "Message not found"


class AttachmentNotFound(ProtocolError):
    default_message = "Attachment not found"


class FolderMissing(ProtocolError):
    """The target mailbox does not exist on the server."""

    default_message = "Folder does not exist"


class ParseError(MailPanelError):
    """A raw message could not be parsed."""

    default_message = "Could not parse message"


class ProvisioningError(MailPanelError):
    """The control panel backend refused or failed a request."""

    default_message = "Control panel request failed"


class SessionError(MailPanelError):
    """Webmail session token missing, expired or tampered with."""

    default_message = "Please sign in to webmail"


class DecryptionError(MailPanelError):
    default_message = "Failed to decrypt stored secret; key mismatch or corrupted data"


__all__ = [
    "MailPanelError",
    "ConnectError",
    "AuthenticationFailed",
    "ProtocolError",
    "MessageNotFound",
    "AttachmentNotFound",
    "FolderMissing",
    "ParseError",
    "ProvisioningError",
    "SessionError",
    "DecryptionError",
]
