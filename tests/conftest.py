"""Shared pytest fixtures for davsync tests."""

from __future__ import annotations

import hashlib
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional
from unittest.mock import Mock

import pytest
from dotenv import load_dotenv

from davsync.config import Config
from davsync.core.paths import normalize_remote_path
from davsync.exceptions import SyncCancelledError, WebDavError
from davsync.file_handler import write_bytes_atomic
from davsync.sync.models import RemoteResource

load_dotenv()


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a live WebDAV server",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring a live WebDAV server"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------------
# In-memory WebDAV server
# ---------------------------------------------------------------------------


class FakeWebDavClient:
    """Minimal WebDavClient replacement for engine and scheduler tests.

    Files live in a dict keyed by normalised path relative to the base
    URL.  ETags are the MD5 of the content, as on servers that expose
    content hashes.
    """

    def __init__(self, files: Optional[Dict[str, bytes]] = None) -> None:
        self.files: Dict[str, bytes] = {}
        self.modified: Dict[str, datetime] = {}
        self.directories: set[str] = set()
        self.fail_uploads: set[str] = set()
        self.before_upload: Optional[Callable[[str], None]] = None
        self.connection_ok = True
        self.closed = False

        self.uploads: list[str] = []
        self.downloads: list[str] = []
        self.mkcol_calls: list[str] = []

        for path, data in (files or {}).items():
            self.put(path, data)

    # -- test helpers -----------------------------------------------------

    def put(
        self, path: str, data: bytes, modified: Optional[datetime] = None
    ) -> None:
        key = normalize_remote_path(path)
        self.files[key] = data
        self.modified[key] = modified or datetime.now(timezone.utc)

    def _resource(self, key: str) -> RemoteResource:
        data = self.files[key]
        return RemoteResource(
            path=key,
            size=len(data),
            last_modified=self.modified[key],
            etag=hashlib.md5(data).hexdigest(),
        )

    @staticmethod
    def _check(cancel_event: Optional[threading.Event], what: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelledError(f"{what} cancelled")

    # -- WebDavClient surface ---------------------------------------------

    def test_connection(self) -> bool:
        return self.connection_ok

    def close(self) -> None:
        self.closed = True

    def create_directory(
        self, remote_path: str, cancel_event=None
    ) -> bool:
        self._check(cancel_event, "MKCOL")
        key = normalize_remote_path(remote_path)
        self.mkcol_calls.append(key)
        if key in self.directories:
            return False
        self.directories.add(key)
        return True

    def list_directory_recursive(
        self, path: str = "", cancel_event=None
    ) -> list[RemoteResource]:
        self._check(cancel_event, "PROPFIND")
        root = normalize_remote_path(path)
        prefix = f"{root}/" if root else ""
        return [
            self._resource(key)
            for key in sorted(self.files)
            if key.startswith(prefix)
        ]

    def get_resource_info(
        self, remote_path: str, cancel_event=None
    ) -> Optional[RemoteResource]:
        key = normalize_remote_path(remote_path)
        if key not in self.files:
            return None
        return self._resource(key)

    def upload_file(
        self, local_path: Path, remote_path: str, cancel_event=None
    ) -> None:
        key = normalize_remote_path(remote_path)
        if self.before_upload is not None:
            self.before_upload(key)
        self._check(cancel_event, "PUT")
        if key in self.fail_uploads:
            raise WebDavError(507, "PUT", f"https://dav.example.com/{key}")
        self.put(key, Path(local_path).read_bytes())
        self.uploads.append(key)

    def download_file(
        self, remote_path: str, local_path: Path, cancel_event=None
    ) -> bytes:
        self._check(cancel_event, "GET")
        key = normalize_remote_path(remote_path)
        if key not in self.files:
            raise WebDavError(404, "GET", f"https://dav.example.com/{key}")
        data = self.files[key]
        write_bytes_atomic(Path(local_path), data)
        self.downloads.append(key)
        return data


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def local_root(tmp_path: Path) -> Path:
    root = tmp_path / "local"
    root.mkdir()
    return root


@pytest.fixture
def state_file(tmp_path: Path) -> Path:
    return tmp_path / "state" / "webdav_sync_state.json"


@pytest.fixture
def mock_config(local_root: Path, state_file: Path) -> Config:
    """Create a Config instance pointing at temporary directories."""
    return Config(
        webdav_url="https://dav.example.com/remote.php/dav/files/alice",
        local_root=str(local_root),
        username="alice",
        password="secret",
        remote_folder="Notes",
        state_file=str(state_file),
        directory_settle_seconds=0,
    )


@pytest.fixture
def fake_client() -> FakeWebDavClient:
    return FakeWebDavClient()


@pytest.fixture
def mock_response():
    """Factory fixture for creating requests.Response mocks."""

    def _create_response(status_code=200, content=b"", chunks=None):
        response = Mock()
        response.status_code = status_code
        response.content = (
            content.encode() if isinstance(content, str) else content
        )
        response.iter_content.return_value = (
            chunks if chunks is not None else [response.content]
        )
        return response

    return _create_response
