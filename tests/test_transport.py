"""Tests for sync transports."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from eclipsevault.sync.models import CloudSyncConfig, TransportType
from eclipsevault.sync.transport import (
    InvalidEndpoint,
    LocalFileTransport,
    RemoteNotFound,
    TransportError,
    WebDavTransport,
    create_transport,
    normalize_endpoint,
)

ENDPOINT = "https://dav.example.com/eclipse/sync.json"


def _response(status: int, content: bytes = b"") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 400
    resp.content = content
    return resp


@pytest.fixture
def session() -> MagicMock:
    return MagicMock(spec=requests.Session)


@pytest.fixture
def webdav(session) -> WebDavTransport:
    return WebDavTransport(ENDPOINT, "alice", "pw", timeout=5, session=session)


class TestNormalizeEndpoint:
    def test_trims(self) -> None:
        assert normalize_endpoint(f"  {ENDPOINT} ") == ENDPOINT

    @pytest.mark.parametrize("value", [None, "", "   ", "ftp://dav.example.com/x", "https://", "not a url"])
    def test_rejects(self, value) -> None:
        with pytest.raises(InvalidEndpoint):
            normalize_endpoint(value)


class TestWebDavTransport:
    """HTTP PUT/GET against a mocked session."""

    def test_requires_credentials(self, session) -> None:
        with pytest.raises(InvalidEndpoint):
            WebDavTransport(ENDPOINT, "  ", "pw", session=session)
        with pytest.raises(InvalidEndpoint):
            WebDavTransport(ENDPOINT, "alice", "", session=session)

    def test_upload(self, webdav, session) -> None:
        session.put.return_value = _response(201)

        webdav.upload(b"{}")

        args, kwargs = session.put.call_args
        assert args == (ENDPOINT,)
        assert kwargs["data"] == b"{}"
        assert kwargs["headers"]["Cache-Control"] == "no-store"
        assert kwargs["headers"]["Content-Type"].startswith("application/json")
        assert kwargs["auth"].username == "alice"
        assert kwargs["auth"].password == "pw"
        assert kwargs["timeout"] == 5

    def test_upload_error_status(self, webdav, session) -> None:
        session.put.return_value = _response(507)
        with pytest.raises(TransportError, match="507"):
            webdav.upload(b"{}")

    def test_upload_network_error(self, webdav, session) -> None:
        session.put.side_effect = requests.ConnectionError("refused")
        with pytest.raises(TransportError) as exc_info:
            webdav.upload(b"{}")
        assert isinstance(exc_info.value.__cause__, requests.ConnectionError)

    def test_download(self, webdav, session) -> None:
        session.get.return_value = _response(200, b'{"ok": true}')

        assert webdav.download() == b'{"ok": true}'
        _, kwargs = session.get.call_args
        assert kwargs["headers"] == {"Cache-Control": "no-store"}

    def test_download_missing(self, webdav, session) -> None:
        session.get.return_value = _response(404)
        with pytest.raises(RemoteNotFound):
            webdav.download()

    def test_download_error_status(self, webdav, session) -> None:
        session.get.return_value = _response(500)
        with pytest.raises(TransportError) as exc_info:
            webdav.download()
        assert not isinstance(exc_info.value, RemoteNotFound)

    def test_download_timeout(self, webdav, session) -> None:
        session.get.side_effect = requests.Timeout("slow")
        with pytest.raises(TransportError):
            webdav.download()


class TestLocalFileTransport:
    def test_round_trip(self, tmp_path: Path) -> None:
        transport = LocalFileTransport(tmp_path / "nested" / "sync.json")
        transport.upload(b"payload")
        assert transport.download() == b"payload"
        assert not (tmp_path / "nested" / "sync.json.tmp").exists()

    def test_missing(self, tmp_path: Path) -> None:
        with pytest.raises(RemoteNotFound):
            LocalFileTransport(tmp_path / "absent.json").download()


class TestCreateTransport:
    def test_local_default_path(self, tmp_home: Path) -> None:
        transport = create_transport(CloudSyncConfig(), tmp_home)
        assert isinstance(transport, LocalFileTransport)
        assert transport.path == tmp_home / "sync" / "remote" / "eclipse-sync.json"

    def test_local_configured_path(self, tmp_path: Path) -> None:
        config = CloudSyncConfig(local_path=tmp_path / "x.json")
        assert create_transport(config, tmp_path).path == tmp_path / "x.json"

    def test_webdav_password_from_env(self, tmp_home, monkeypatch) -> None:
        monkeypatch.setenv("DAV_PW", "secret")
        config = CloudSyncConfig(
            transport=TransportType.WEBDAV,
            endpoint=ENDPOINT,
            username="alice",
            password_env_var="DAV_PW",
            timeout_seconds=12,
        )
        transport = create_transport(config, tmp_home)
        assert isinstance(transport, WebDavTransport)
        assert transport.timeout == 12

    def test_webdav_without_password(self, tmp_home, monkeypatch) -> None:
        monkeypatch.delenv("DAV_PW", raising=False)
        config = CloudSyncConfig(
            transport=TransportType.WEBDAV,
            endpoint=ENDPOINT,
            username="alice",
            password_env_var="DAV_PW",
        )
        with pytest.raises(InvalidEndpoint, match="DAV_PW"):
            create_transport(config, tmp_home)
