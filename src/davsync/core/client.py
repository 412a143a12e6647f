import logging
import threading
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from urllib.parse import unquote, urlparse
from xml.etree import ElementTree

import requests

from ..config import Config
from ..exceptions import SyncCancelledError, WebDavError
from ..file_handler import write_bytes_atomic
from ..sync.models import EPOCH, RemoteResource
from .paths import (
    encode_remote_path,
    normalize_remote_path,
    relative_to_root,
    strip_etag,
)

logger = logging.getLogger(__name__)

DAV_NS = "{DAV:}"

PROPFIND_BODY = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:">
  <D:prop>
    <D:resourcetype/>
    <D:getcontentlength/>
    <D:getlastmodified/>
    <D:getetag/>
  </D:prop>
</D:propfind>"""

_CHUNK_SIZE = 64 * 1024


def _parse_http_date(value: str | None) -> datetime:
    if not value:
        return EPOCH
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _CancellableReader:
    """File wrapper whose reads stop once *cancel_event* is set.

    Exposes ``__len__`` so requests sends a fixed Content-Length rather
    than chunked transfer encoding.
    """

    def __init__(self, fh, size: int, label: str, cancel_event):
        self._fh = fh
        self._size = size
        self._label = label
        self._cancel_event = cancel_event

    def __len__(self) -> int:
        return self._size

    def read(self, size: int = -1) -> bytes:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise SyncCancelledError(f"{self._label} cancelled")
        return self._fh.read(size)


class WebDavClient:
    def __init__(self, config: Config):
        self.config = config
        self._thread_local = threading.local()
        self.base_url = config.webdav_url.rstrip("/")
        self._base_path = normalize_remote_path(
            unquote(urlparse(self.base_url).path)
        )

    @property
    def session(self) -> requests.Session:
        """Accessor for the current thread's session."""
        return self._get_session()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        # requests sends tuple auth pre-emptively on every request
        if self.config.username:
            session.auth = (self.config.username, self.config.password)
        session.verify = not self.config.insecure
        return session

    def close(self) -> None:
        """Close the current thread's session, if one was opened."""
        session = getattr(self._thread_local, "session", None)
        if session is not None:
            session.close()
            del self._thread_local.session

    def __enter__(self) -> "WebDavClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def url_for(self, remote_path: str) -> str:
        """Absolute URL for *remote_path*, segment-encoded."""
        encoded = encode_remote_path(remote_path)
        return f"{self.base_url}/{encoded}"

    def _request(
        self,
        method: str,
        remote_path: str,
        *,
        headers: dict[str, str] | None = None,
        data=None,
        stream: bool = False,
        accept: tuple[int, ...] = (),
        cancel_event: threading.Event | None = None,
    ) -> requests.Response:
        """
        Issue a WebDAV request and enforce the status contract.

        Statuses listed in *accept* are returned to the caller as-is;
        any other non-2xx status raises ``WebDavError``.
        """
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelledError(f"{method} {remote_path} cancelled")

        url = self.url_for(remote_path)
        logger.debug("%s %s", method, url)
        response = self._get_session().request(
            method,
            url,
            headers=headers,
            data=data,
            stream=stream,
            timeout=(10, self.config.timeout),
        )
        status = response.status_code
        if status in accept:
            logger.debug("%s %s -> %d (accepted)", method, url, status)
            return response
        if not 200 <= status < 300:
            raise WebDavError(status, method, url)
        return response

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    def test_connection(self) -> bool:
        """
        Issue OPTIONS against the base URL.

        Returns True only on a 2xx response; connectivity failures yield
        False instead of raising.
        """
        try:
            response = self._get_session().request(
                "OPTIONS", self.base_url, timeout=(10, 30)
            )
        except requests.RequestException as e:
            logger.warning("WebDAV connection test failed: %s", e)
            return False
        return 200 <= response.status_code < 300

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_directory(
        self,
        path: str = "",
        cancel_event: threading.Event | None = None,
    ) -> list[RemoteResource]:
        """
        List the direct children of *path* (PROPFIND, Depth: 1).

        The entry describing *path* itself is excluded.
        """
        response = self._request(
            "PROPFIND",
            path,
            headers={
                "Depth": "1",
                "Content-Type": "application/xml; charset=utf-8",
            },
            data=PROPFIND_BODY.encode("utf-8"),
            cancel_event=cancel_event,
        )
        return self._parse_multistatus(
            response.content, path, include_self=False
        )

    def list_directory_recursive(
        self,
        path: str = "",
        cancel_event: threading.Event | None = None,
    ) -> list[RemoteResource]:
        """
        Depth-first listing of every file below *path*.

        Only non-directory entries are returned, each with a fully
        normalised path relative to the base URL.
        """
        found: list[RemoteResource] = []
        self._walk(
            normalize_remote_path(path), found, set(), cancel_event
        )
        return found

    def _walk(
        self,
        path: str,
        found: list[RemoteResource],
        visited: set[str],
        cancel_event: threading.Event | None,
    ) -> None:
        if path in visited:
            return
        visited.add(path)

        resources = self.list_directory(path, cancel_event=cancel_event)
        logger.debug("Found %d items in '%s'", len(resources), path)

        for resource in resources:
            resource_path = normalize_remote_path(resource.path)
            if resource_path == path:
                continue
            if resource.is_directory:
                self._walk(resource_path, found, visited, cancel_event)
            else:
                found.append(
                    resource.model_copy(update={"path": resource_path})
                )

    def get_resource_info(
        self,
        remote_path: str,
        cancel_event: threading.Event | None = None,
    ) -> RemoteResource | None:
        """
        Describe a single resource (PROPFIND, Depth: 0).

        Returns None when the server answers 404.
        """
        response = self._request(
            "PROPFIND",
            remote_path,
            headers={
                "Depth": "0",
                "Content-Type": "application/xml; charset=utf-8",
            },
            data=PROPFIND_BODY.encode("utf-8"),
            accept=(404,),
            cancel_event=cancel_event,
        )
        if response.status_code == 404:
            return None
        resources = self._parse_multistatus(
            response.content, remote_path, include_self=True
        )
        return resources[0] if resources else None

    def exists(self, remote_path: str) -> bool:
        return self.get_resource_info(remote_path) is not None

    def _parse_multistatus(
        self, content: bytes, request_path: str, include_self: bool
    ) -> list[RemoteResource]:
        """
        Parse a ``multistatus`` body into resources relative to the base URL.
        """
        tree = ElementTree.fromstring(content)
        request_full = normalize_remote_path(
            f"{self._base_path}/{normalize_remote_path(request_path)}"
        )

        resources: list[RemoteResource] = []
        for response in tree.iter(f"{DAV_NS}response"):
            href = response.findtext(f"{DAV_NS}href")
            if not href:
                continue

            href_path = href.strip()
            if href_path.startswith(("http://", "https://")):
                href_path = urlparse(href_path).path
            href_path = normalize_remote_path(unquote(href_path))

            if not include_self and href_path in (
                request_full,
                self._base_path,
            ):
                continue

            prop = self._find_ok_prop(response)
            if prop is None:
                continue

            is_directory = (
                prop.find(f"{DAV_NS}resourcetype/{DAV_NS}collection")
                is not None
            )
            length_text = prop.findtext(f"{DAV_NS}getcontentlength")
            try:
                size = int(length_text) if length_text else 0
            except ValueError:
                size = 0

            resources.append(
                RemoteResource(
                    path=relative_to_root(href_path, self._base_path),
                    is_directory=is_directory,
                    size=size,
                    last_modified=_parse_http_date(
                        prop.findtext(f"{DAV_NS}getlastmodified")
                    ),
                    etag=strip_etag(prop.findtext(f"{DAV_NS}getetag")),
                )
            )
        return resources

    @staticmethod
    def _find_ok_prop(response: ElementTree.Element):
        """
        Return the ``prop`` of the first 2xx ``propstat``.

        Servers report missing properties (e.g. getcontentlength on a
        collection) in a separate 404 propstat that must be ignored.
        """
        fallback = None
        for propstat in response.findall(f"{DAV_NS}propstat"):
            prop = propstat.find(f"{DAV_NS}prop")
            if prop is None:
                continue
            status = propstat.findtext(f"{DAV_NS}status") or ""
            parts = status.split()
            if len(parts) >= 2 and parts[1].startswith("2"):
                return prop
            if not parts and fallback is None:
                fallback = prop
        return fallback

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def download_bytes(
        self,
        remote_path: str,
        cancel_event: threading.Event | None = None,
    ) -> bytes:
        """
        GET a remote file into memory.

        The body is streamed so a set *cancel_event* interrupts the
        transfer between chunks.
        """
        response = self._request(
            "GET", remote_path, stream=True, cancel_event=cancel_event
        )
        chunks: list[bytes] = []
        try:
            for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                if cancel_event is not None and cancel_event.is_set():
                    raise SyncCancelledError(
                        f"GET {remote_path} cancelled"
                    )
                if chunk:
                    chunks.append(chunk)
        finally:
            response.close()
        return b"".join(chunks)

    def download_file(
        self,
        remote_path: str,
        local_path: Path,
        cancel_event: threading.Event | None = None,
    ) -> bytes:
        """
        GET a remote file and write it to *local_path*.

        Missing parent directories are created. Returns the bytes
        written so callers can fingerprint them without re-reading.
        """
        data = self.download_bytes(remote_path, cancel_event=cancel_event)
        write_bytes_atomic(Path(local_path), data)
        logger.debug(
            "Downloaded %s -> %s (%d bytes)",
            remote_path,
            local_path,
            len(data),
        )
        return data

    def upload_file(
        self,
        local_path: Path,
        remote_path: str,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """
        PUT a local file, streaming it with an explicit Content-Length.

        A set *cancel_event* interrupts the body between blocks.

        Raises:
            SyncCancelledError: If *cancel_event* is set before or during
                the transfer.
            FileNotFoundError: If *local_path* does not exist.
            WebDavError: If the server rejects the upload.
        """
        local_path = Path(local_path)
        if not local_path.is_file():
            raise FileNotFoundError(f"Local file not found: {local_path}")

        size = local_path.stat().st_size
        logger.debug(
            "Uploading %s -> %s (%d bytes)", local_path, remote_path, size
        )
        with open(local_path, "rb") as fh:
            self._request(
                "PUT",
                remote_path,
                headers={
                    "Content-Length": str(size),
                    "Content-Type": "application/octet-stream",
                },
                data=_CancellableReader(
                    fh, size, f"PUT {remote_path}", cancel_event
                ),
                cancel_event=cancel_event,
            )

    def upload_bytes(self, data: bytes, remote_path: str) -> None:
        """PUT in-memory content to *remote_path*."""
        self._request(
            "PUT",
            remote_path,
            headers={"Content-Type": "application/octet-stream"},
            data=data,
        )

    # ------------------------------------------------------------------
    # Namespace operations
    # ------------------------------------------------------------------

    def create_directory(
        self,
        remote_path: str,
        cancel_event: threading.Event | None = None,
    ) -> bool:
        """
        MKCOL *remote_path*.

        A 405 (collection already exists) counts as success.

        Returns:
            True if the collection was newly created, False if it
            already existed.
        """
        response = self._request(
            "MKCOL",
            remote_path,
            accept=(405,),
            cancel_event=cancel_event,
        )
        return response.status_code != 405

    def delete(self, remote_path: str) -> None:
        """DELETE *remote_path*; a 404 counts as success."""
        self._request("DELETE", remote_path, accept=(404,))

    def move(self, source_path: str, destination_path: str) -> None:
        """MOVE a resource, overwriting any existing destination."""
        self._request(
            "MOVE",
            source_path,
            headers={
                "Destination": self.url_for(destination_path),
                "Overwrite": "T",
            },
        )
