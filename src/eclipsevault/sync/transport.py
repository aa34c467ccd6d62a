"""
Sync transports -- where the envelope travels.

WebDAV: one document, HTTP PUT to upload, GET to download.
Local: a single file on disk. For USB drives, NAS mounts, etc.

Transports do not retry. A 404-equivalent is reported as RemoteNotFound so
callers can say "no backup yet" instead of "sync failed".
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import requests
from requests.auth import HTTPBasicAuth

from .. import EclipseVaultError
from .models import CloudSyncConfig, TransportType

logger = logging.getLogger("eclipsevault.sync.transport")


class TransportError(EclipseVaultError):
    """Raised when an upload or download fails."""


class RemoteNotFound(TransportError):
    """Raised when the remote document does not exist yet."""


class InvalidEndpoint(EclipseVaultError):
    """Raised when transport settings are missing or malformed."""


class TransportClient(ABC):
    """Abstract remote store for a single sync document."""

    @abstractmethod
    def upload(self, data: bytes) -> None:
        """Store ``data`` remotely, replacing what was there.

        Raises:
            TransportError: On any failure.
        """

    @abstractmethod
    def download(self) -> bytes:
        """Fetch the remote document.

        Raises:
            RemoteNotFound: Nothing has been uploaded yet.
            TransportError: Any other failure.
        """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable transport name."""


def normalize_endpoint(value: Optional[str]) -> str:
    """Validate a WebDAV document URL.

    Raises:
        InvalidEndpoint: Empty, unparseable, or not http(s).
    """
    trimmed = (value or "").strip()
    if not trimmed:
        raise InvalidEndpoint("WebDAV endpoint is required")

    parsed = urlparse(trimmed)
    if parsed.scheme not in ("http", "https"):
        raise InvalidEndpoint("WebDAV endpoint must use http or https")
    if not parsed.netloc:
        raise InvalidEndpoint("WebDAV endpoint URL is invalid")
    return trimmed


class WebDavTransport(TransportClient):
    """WebDAV document store with HTTP Basic auth.

    Args:
        endpoint: Full URL of the document (not the collection).
        username: Account name.
        password: Account password.
        timeout: Per-request timeout in seconds.
        session: Optional requests session (tests, connection reuse).
    """

    def __init__(
        self,
        endpoint: str,
        username: str,
        password: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.endpoint = normalize_endpoint(endpoint)
        self.username = (username or "").strip()
        if not self.username:
            raise InvalidEndpoint("WebDAV username is required")
        if not password:
            raise InvalidEndpoint("WebDAV password is required")
        self._auth = HTTPBasicAuth(self.username, password)
        self.timeout = timeout
        self._session = session or requests.Session()

    @property
    def name(self) -> str:
        return "webdav"

    def upload(self, data: bytes) -> None:
        try:
            resp = self._session.put(
                self.endpoint,
                data=data,
                auth=self._auth,
                headers={
                    "Content-Type": "application/json; charset=utf-8",
                    "Cache-Control": "no-store",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"WebDAV upload failed: {exc}") from exc

        if not resp.ok:
            raise TransportError(f"WebDAV upload failed ({resp.status_code})")
        logger.info("Uploaded %d bytes to %s", len(data), self.endpoint)

    def download(self) -> bytes:
        try:
            resp = self._session.get(
                self.endpoint,
                auth=self._auth,
                headers={"Cache-Control": "no-store"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"WebDAV download failed: {exc}") from exc

        if resp.status_code == 404:
            raise RemoteNotFound("Remote backup does not exist")
        if not resp.ok:
            raise TransportError(f"WebDAV download failed ({resp.status_code})")
        logger.info("Downloaded %d bytes from %s", len(resp.content), self.endpoint)
        return resp.content


class LocalFileTransport(TransportClient):
    """Plain file on a filesystem path.

    Args:
        path: The sync document path. Parent dirs are created on upload.
    """

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()

    @property
    def name(self) -> str:
        return "local"

    def upload(self, data: bytes) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_name(self.path.name + ".tmp")
            tmp.write_bytes(data)
            tmp.replace(self.path)
        except OSError as exc:
            raise TransportError(f"Local upload failed: {exc}") from exc
        logger.info("Wrote %d bytes to %s", len(data), self.path)

    def download(self) -> bytes:
        if not self.path.exists():
            raise RemoteNotFound(f"Remote backup does not exist: {self.path}")
        try:
            return self.path.read_bytes()
        except OSError as exc:
            raise TransportError(f"Local download failed: {exc}") from exc


def create_transport(config: CloudSyncConfig, home: Path) -> TransportClient:
    """Factory: build the transport described by ``config``.

    Args:
        config: Sync configuration.
        home: Vault home, for the default local path.

    Returns:
        A TransportClient.

    Raises:
        InvalidEndpoint: Missing WebDAV settings or password.
    """
    if config.transport == TransportType.WEBDAV:
        password = os.environ.get(config.password_env_var, "")
        if not password:
            raise InvalidEndpoint(
                f"WebDAV password not set; export {config.password_env_var}"
            )
        return WebDavTransport(
            endpoint=config.endpoint or "",
            username=config.username or "",
            password=password,
            timeout=config.timeout_seconds,
        )

    path = config.local_path or (home / "sync" / "remote" / "eclipse-sync.json")
    return LocalFileTransport(path)
