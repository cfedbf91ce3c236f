"""
Plesk REST API client.

Domains come from ``GET /api/v2/domains``; every mailbox operation goes through the
mail CLI gateway (``POST /api/v2/cli/mail/call``), which answers with
``{"code", "stdout", "stderr"}``. A non-zero code is a failure.
"""
import logging
from typing import List, Optional

import requests

from .config import get_settings
from .errors import ProvisioningError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


class PleskClient:
    def __init__(
        self,
        host: Optional[str] = None,
        api_key: Optional[str] = None,
        admin_user: Optional[str] = None,
        admin_password: Optional[str] = None,
        verify_tls: Optional[bool] = None,
        session: Optional[requests.Session] = None,
    ):
        settings = get_settings()
        self.host = (host if host is not None else settings.plesk_host).rstrip("/")
        self.base_url = f"{self.host}/api/v2"
        self.verify = settings.plesk_verify_tls if verify_tls is None else verify_tls
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json", "Accept": "application/json"})

        api_key = api_key if api_key is not None else settings.plesk_api_key
        admin_user = admin_user if admin_user is not None else settings.plesk_admin_user
        admin_password = admin_password if admin_password is not None else settings.plesk_admin_password
        if api_key:
            self.session.headers["X-API-Key"] = api_key
        elif admin_user and admin_password:
            self.session.auth = (admin_user, admin_password)

    def _request(self, method: str, path: str, fallback: str, **kwargs):
        if not self.host:
            raise ProvisioningError("PLESK_HOST is not configured")
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, timeout=DEFAULT_TIMEOUT, verify=self.verify, **kwargs)
        except requests.RequestException as e:
            logger.warning("Plesk %s %s failed: %s", method, path, e)
            raise ProvisioningError(fallback)
        try:
            data = resp.json()
        except ValueError:
            data = None
        if resp.status_code >= 400:
            message = data.get("message") if isinstance(data, dict) else None
            logger.warning("Plesk %s %s returned %s: %s", method, path, resp.status_code, message or resp.text[:200])
            raise ProvisioningError(message or fallback)
        return data

    def _cli(self, params: List[str], fallback: str) -> dict:
        data = self._request("POST", "/cli/mail/call", fallback, json={"params": params})
        if not isinstance(data, dict):
            raise ProvisioningError(fallback)
        if data.get("code") != 0:
            stderr = (data.get("stderr") or "").strip()
            logger.warning("Plesk mail %s exited with %s: %s", params[0], data.get("code"), stderr)
            raise ProvisioningError(stderr or fallback)
        return data

    def list_domains(self) -> List[dict]:
        data = self._request("GET", "/domains", "Failed to fetch domains from Plesk")
        return data if isinstance(data, list) else []

    def list_mailboxes(self, domain: str) -> List[str]:
        """Addresses on ``domain``; bare local parts in the CLI output get ``@domain`` appended."""
        data = self._cli(["--list", "-domain", domain], f"Failed to list mailboxes for {domain}")
        addresses = []
        for line in (data.get("stdout") or "").splitlines():
            line = line.strip()
            if not line:
                continue
            addresses.append(line if "@" in line else f"{line}@{domain}")
        return addresses

    def create_mailbox(self, address: str, password: str, mailbox: bool = True) -> dict:
        params = ["--create", address, "-passwd", password]
        if mailbox:
            params += ["-mailbox", "true"]
        try:
            data = self._cli(params, "Failed to create mailbox")
        except ProvisioningError as e:
            if "already exists" in e.message:
                raise ProvisioningError(f"Mailbox {address} already exists")
            if "password" in e.message.lower():
                raise ProvisioningError("Password was rejected by the control panel; use a stronger password")
            raise
        logger.info("Created mailbox %s", address)
        return {"email": address, "stdout": data.get("stdout")}

    def delete_mailbox(self, address: str) -> None:
        self._cli(["--remove", address], f"Failed to delete mailbox {address}")
        logger.info("Deleted mailbox %s", address)

    def set_mailbox_password(self, address: str, password: str) -> None:
        self._cli(["--update", address, "-passwd", password], f"Failed to change password for {address}")
        logger.info("Changed password for %s", address)

    def set_mailbox_enabled(self, address: str, enabled: bool) -> None:
        action = "--on" if enabled else "--off"
        self._cli(["--update", address, action], f"Failed to {'enable' if enabled else 'disable'} {address}")
        logger.info("%s mailbox %s", "Enabled" if enabled else "Disabled", address)

    def mailbox_info(self, address: str) -> dict:
        data = self._request(
            "POST", "/cli/mail/call", f"Failed to read mailbox info for {address}", json={"params": ["--info", address]}
        )
        data = data if isinstance(data, dict) else {}
        return {"code": data.get("code"), "stdout": data.get("stdout"), "stderr": data.get("stderr")}

    def test_connection(self) -> bool:
        try:
            self.list_domains()
            return True
        except ProvisioningError:
            return False


__all__ = ["PleskClient"]
