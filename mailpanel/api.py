from fastapi import FastAPI, HTTPException, Header, Query, Body, Cookie, Form, File, UploadFile, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from typing import List, Optional
from datetime import datetime
from email.utils import formataddr, getaddresses
from urllib.parse import quote
import logging

from .config import get_settings
from .connection import ADDRESS_RE, open_mail_session, verify_credentials
from .composer import save_draft, send
from .crypto import decrypt_secret, encrypt_secret
from .errors import (
    AttachmentNotFound,
    AuthenticationFailed,
    ConnectError,
    DecryptionError,
    FolderMissing,
    MailPanelError,
    MessageNotFound,
    ParseError,
    ProtocolError,
    ProvisioningError,
    SessionError,
)
from .folders import INBOX, create_folder, delete_folder, list_folders
from .messages import delete_message, get_attachment, get_message, list_messages, move_message, set_flag
from .models import Composition, Credentials, FLAGGED, OutgoingAttachment, SEEN
from .plesk import PleskClient
from .session import COOKIE_NAME, create_session, read_session, require_credentials
from . import storage

logger = logging.getLogger(__name__)

app = FastAPI(title="Mail Panel Backend")

# first match wins, so subclasses come before ProtocolError
ERROR_STATUS = [
    (AuthenticationFailed, 401),
    (SessionError, 401),
    (MessageNotFound, 404),
    (AttachmentNotFound, 404),
    (FolderMissing, 404),
    (ConnectError, 502),
    (ProvisioningError, 502),
    (ParseError, 422),
    (DecryptionError, 500),
    (ProtocolError, 500),
]


@app.on_event("startup")
def _startup():
    storage.init_db()


def _ok(data=None, message: Optional[str] = None) -> dict:
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


def _fail(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message, **extra})


@app.exception_handler(MailPanelError)
async def _mail_error(request, exc: MailPanelError):
    status_code = 500
    for cls, code in ERROR_STATUS:
        if isinstance(exc, cls):
            status_code = code
            break
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    if isinstance(exc, AuthenticationFailed):
        return _fail(status_code, exc.message, needPassword=True)
    return _fail(status_code, exc.message)


@app.exception_handler(ValueError)
async def _bad_request(request, exc: ValueError):
    return _fail(400, str(exc))


@app.exception_handler(StarletteHTTPException)
async def _http_error(request, exc: StarletteHTTPException):
    return _fail(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def _validation_error(request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:])
    return _fail(400, f"{field}: {first.get('msg', 'invalid value')}" if field else "Invalid request")


def _require_token(x_auth_token: str = Header(...)):
    if x_auth_token != get_settings().backend_token:
        raise HTTPException(status_code=401, detail="Invalid token")


def _set_session_cookie(response: Response, token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        COOKIE_NAME,
        token,
        max_age=settings.session_ttl,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
    )


def _mail(token: Optional[str]):
    return open_mail_session(require_credentials(token))


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [formataddr((name, addr)) for name, addr in getaddresses([value]) if name or addr]


def _composition(to, cc, bcc, subject, text, html, in_reply_to, references, attachments) -> Composition:
    outgoing = []
    for upload in attachments or []:
        content = upload.file.read()
        if not content:
            continue
        outgoing.append(
            OutgoingAttachment(
                filename=upload.filename or "attachment",
                content=content,
                content_type=upload.content_type or "application/octet-stream",
            )
        )
    return Composition(
        to=_split(to),
        cc=_split(cc),
        bcc=_split(bcc),
        subject=subject or "",
        text=text or "",
        html=html or None,
        attachments=outgoing,
        in_reply_to=in_reply_to or None,
        references=references or None,
    )


@app.get("/health")
def health():
    return {"status": "ok", "time": datetime.utcnow().isoformat()}


# Webmail session


@app.post("/webmail/auth")
def webmail_login(response: Response, email: Optional[str] = Body(None), password: Optional[str] = Body(None)):
    if not email or not password:
        raise ValueError("Email address and password are required")
    with open_mail_session(Credentials(address=email, secret=password)):
        pass
    _set_session_cookie(response, create_session(email, password))
    logger.info("Webmail login for %s", email)
    return _ok({"email": email}, "Signed in")


@app.delete("/webmail/auth")
def webmail_logout(response: Response):
    response.delete_cookie(COOKIE_NAME)
    return _ok(message="Signed out")


@app.get("/webmail/session")
def webmail_current_session(webmail_session: Optional[str] = Cookie(None, alias=COOKIE_NAME)):
    session = read_session(webmail_session)
    if session is None:
        return {"success": True, "data": None}
    return _ok({"email": session.address, "loginAt": session.login_at})


@app.post("/webmail/auto-login")
def webmail_auto_login(response: Response, email: str = Body(..., embed=True), x_auth_token: str = Header(...)):
    _require_token(x_auth_token)
    mailbox = storage.get_mailbox(email)
    if not mailbox:
        raise HTTPException(status_code=404, detail="Mailbox not found")
    encrypted = storage.get_mailbox_secret(email)
    if not encrypted:
        return _fail(400, "No stored password for this mailbox; update the password", needPassword=True)
    try:
        password = decrypt_secret(encrypted)
    except DecryptionError:
        return _fail(400, "Stored password could not be decrypted; update the password", needPassword=True)
    address = mailbox["email_address"]
    if not verify_credentials(Credentials(address=address, secret=password)):
        return _fail(401, "Stored password was rejected; update the password", needPassword=True)
    _set_session_cookie(response, create_session(address, password))
    logger.info("Webmail auto-login for %s", address)
    return _ok({"email": address}, "Signed in")


# Folders


@app.get("/webmail/folders")
def webmail_folders(webmail_session: Optional[str] = Cookie(None, alias=COOKIE_NAME)):
    with _mail(webmail_session) as session:
        folders = list_folders(session)
    return _ok([f.to_dict() for f in folders])


@app.post("/webmail/folders")
def webmail_create_folder(
    name: Optional[str] = Body(None, embed=True),
    webmail_session: Optional[str] = Cookie(None, alias=COOKIE_NAME),
):
    with _mail(webmail_session) as session:
        path = create_folder(session, name or "")
    return _ok({"path": path}, "Folder created")


@app.delete("/webmail/folders")
def webmail_delete_folder(
    path: str = Query(...),
    webmail_session: Optional[str] = Cookie(None, alias=COOKIE_NAME),
):
    with _mail(webmail_session) as session:
        delete_folder(session, path)
    return _ok(message="Folder deleted")


# Messages


@app.get("/webmail/messages")
def webmail_messages(
    folder: str = Query(INBOX),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    search: Optional[str] = Query(None),
    webmail_session: Optional[str] = Cookie(None, alias=COOKIE_NAME),
):
    with _mail(webmail_session) as session:
        result = list_messages(session, folder, page=page, page_size=limit, search=search)
    return _ok(result.to_dict())


@app.get("/webmail/messages/{uid}")
def webmail_message(
    uid: int,
    folder: str = Query(INBOX),
    allow_remote_images: bool = Query(False, alias="allowRemoteImages"),
    webmail_session: Optional[str] = Cookie(None, alias=COOKIE_NAME),
):
    with _mail(webmail_session) as session:
        detail = get_message(session, folder, uid, allow_remote_images=allow_remote_images)
    return _ok(detail.to_dict())


@app.put("/webmail/messages/{uid}")
def webmail_update_message(
    uid: int,
    folder: str = Query(INBOX),
    action: str = Body(...),
    value: bool = Body(True),
    target_folder: Optional[str] = Body(None, alias="targetFolder"),
    webmail_session: Optional[str] = Cookie(None, alias=COOKIE_NAME),
):
    if action not in ("read", "star", "move"):
        raise ValueError(f"Unknown action: {action}")
    if action == "move" and not target_folder:
        raise ValueError("targetFolder is required to move a message")
    with _mail(webmail_session) as session:
        if action == "read":
            set_flag(session, folder, uid, SEEN, value)
        elif action == "star":
            set_flag(session, folder, uid, FLAGGED, value)
        else:
            move_message(session, folder, uid, target_folder)
    return _ok(message="Message updated")


@app.delete("/webmail/messages/{uid}")
def webmail_delete_message(
    uid: int,
    folder: str = Query(INBOX),
    permanent: bool = Query(False),
    webmail_session: Optional[str] = Cookie(None, alias=COOKIE_NAME),
):
    with _mail(webmail_session) as session:
        delete_message(session, folder, uid, permanent=permanent)
    return _ok(message="Message deleted")


@app.get("/webmail/messages/{uid}/attachment")
def webmail_attachment(
    uid: int,
    filename: str = Query(...),
    folder: str = Query(INBOX),
    webmail_session: Optional[str] = Cookie(None, alias=COOKIE_NAME),
):
    with _mail(webmail_session) as session:
        attachment = get_attachment(session, folder, uid, filename)
    content = attachment.content or b""
    return Response(
        content=content,
        media_type=attachment.content_type,
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(attachment.filename)}"},
    )


# Compose


@app.post("/webmail/send")
def webmail_send(
    to: str = Form(""),
    cc: Optional[str] = Form(None),
    bcc: Optional[str] = Form(None),
    subject: str = Form(""),
    text: Optional[str] = Form(None),
    html: Optional[str] = Form(None),
    in_reply_to: Optional[str] = Form(None, alias="inReplyTo"),
    references: Optional[str] = Form(None),
    attachments: Optional[List[UploadFile]] = File(None),
    webmail_session: Optional[str] = Cookie(None, alias=COOKIE_NAME),
):
    credentials = require_credentials(webmail_session)
    composition = _composition(to, cc, bcc, subject, text, html, in_reply_to, references, attachments)
    message_id = send(credentials, composition)
    return _ok({"messageId": message_id}, "Message sent")


@app.post("/webmail/drafts")
def webmail_save_draft(
    to: str = Form(""),
    cc: Optional[str] = Form(None),
    bcc: Optional[str] = Form(None),
    subject: str = Form(""),
    text: Optional[str] = Form(None),
    html: Optional[str] = Form(None),
    in_reply_to: Optional[str] = Form(None, alias="inReplyTo"),
    references: Optional[str] = Form(None),
    attachments: Optional[List[UploadFile]] = File(None),
    webmail_session: Optional[str] = Cookie(None, alias=COOKIE_NAME),
):
    credentials = require_credentials(webmail_session)
    composition = _composition(to, cc, bcc, subject, text, html, in_reply_to, references, attachments)
    message_id = save_draft(credentials, composition)
    return _ok({"messageId": message_id}, "Draft saved")


# Provisioning


def get_plesk_client() -> PleskClient:
    return PleskClient()


@app.get("/plesk/status")
def plesk_status(x_auth_token: str = Header(...)):
    _require_token(x_auth_token)
    return _ok({"connected": get_plesk_client().test_connection()})


@app.get("/plesk/domains")
def plesk_domains(x_auth_token: str = Header(...)):
    _require_token(x_auth_token)
    return _ok(get_plesk_client().list_domains())


@app.get("/plesk/domains/{domain}/mailboxes")
def plesk_domain_mailboxes(domain: str, x_auth_token: str = Header(...)):
    _require_token(x_auth_token)
    return _ok(get_plesk_client().list_mailboxes(domain))


@app.get("/mailboxes")
def mailboxes(domain: Optional[str] = Query(None), x_auth_token: str = Header(...)):
    _require_token(x_auth_token)
    return _ok(storage.list_mailboxes(domain))


@app.post("/mailboxes")
def create_mailbox(
    email: str = Body(...),
    password: str = Body(...),
    description: Optional[str] = Body(None),
    x_auth_token: str = Header(...),
):
    _require_token(x_auth_token)
    email = email.strip().lower()
    if not ADDRESS_RE.match(email):
        raise ValueError(f"Invalid mailbox address: {email}")
    if len(password) < 8:
        raise ValueError("Password must be at least 8 characters")
    if storage.get_mailbox(email):
        raise ValueError(f"Mailbox {email} is already registered")
    get_plesk_client().create_mailbox(email, password)
    mailbox_id = storage.add_mailbox(email, encrypt_secret(password), description)
    return _ok({"id": mailbox_id, "email": email}, "Mailbox created")


@app.get("/mailboxes/{address}/info")
def mailbox_info(address: str, x_auth_token: str = Header(...)):
    _require_token(x_auth_token)
    return _ok(get_plesk_client().mailbox_info(address))


@app.delete("/mailboxes/{address}")
def remove_mailbox(address: str, x_auth_token: str = Header(...)):
    _require_token(x_auth_token)
    if not storage.get_mailbox(address):
        raise HTTPException(status_code=404, detail="Mailbox not found")
    get_plesk_client().delete_mailbox(address)
    storage.delete_mailbox(address)
    return _ok(message="Mailbox deleted")


@app.put("/mailboxes/{address}/password")
def rotate_mailbox_password(address: str, password: str = Body(..., embed=True), x_auth_token: str = Header(...)):
    _require_token(x_auth_token)
    if not storage.get_mailbox(address):
        raise HTTPException(status_code=404, detail="Mailbox not found")
    if len(password) < 8:
        raise ValueError("Password must be at least 8 characters")
    get_plesk_client().set_mailbox_password(address, password)
    storage.update_mailbox_password(address, encrypt_secret(password))
    return _ok(message="Password updated")


@app.put("/mailboxes/{address}/enabled")
def toggle_mailbox(address: str, enabled: bool = Body(..., embed=True), x_auth_token: str = Header(...)):
    _require_token(x_auth_token)
    if not storage.get_mailbox(address):
        raise HTTPException(status_code=404, detail="Mailbox not found")
    get_plesk_client().set_mailbox_enabled(address, enabled)
    storage.set_mailbox_active(address, enabled)
    return _ok({"enabled": enabled}, "Mailbox enabled" if enabled else "Mailbox disabled")
