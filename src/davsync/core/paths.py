"""Remote path helpers shared by the protocol client and the state store."""

from urllib.parse import quote


def normalize_remote_path(path: str | None) -> str:
    """Collapse repeated slashes and trim leading/trailing slashes.

    ``"/a//b/"`` and ``"a/b"`` both normalise to ``"a/b"``.
    """
    if not path:
        return ""
    while "//" in path:
        path = path.replace("//", "/")
    return path.strip("/")


def encode_remote_path(path: str) -> str:
    """Percent-encode each path segment independently.

    Separators survive while spaces, ``#``, ``?`` and non-ASCII
    characters inside a segment are escaped.
    """
    segments = normalize_remote_path(path).split("/")
    return "/".join(quote(segment, safe="") for segment in segments)


def join_remote_path(*parts: str) -> str:
    """Join path fragments and normalise the result."""
    return normalize_remote_path("/".join(p for p in parts if p))


def relative_to_root(path: str, root: str) -> str:
    """Strip the normalised *root* prefix from *path*.

    Paths outside *root* are returned normalised but otherwise unchanged.
    """
    path = normalize_remote_path(path)
    root = normalize_remote_path(root)
    if root and path.startswith(root + "/"):
        return path[len(root) + 1 :]
    if path == root:
        return ""
    return path


def strip_etag(etag: str | None) -> str:
    """Remove the weak-validator prefix and surrounding quotes."""
    if not etag:
        return ""
    etag = etag.strip()
    if etag.startswith("W/"):
        etag = etag[2:]
    return etag.strip('"')
