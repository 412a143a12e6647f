"""File handler module: local tree walking, fingerprinting, atomic writes.

Provides the local-disk side of a sync pass:

- ``walk_local_files`` lists syncable files relative to the local root.
- ``file_fingerprint`` computes the content fingerprint compared against
  the recorded state.
- ``write_bytes_atomic`` writes downloads without exposing partial files
  to editors watching the tree.
- ``conflict_file_path`` names the sibling that preserves a remote copy.
"""

import hashlib
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

_HASH_CHUNK = 1024 * 1024

# =============================================================================
# Tree walking
# =============================================================================


def is_hidden(relative_path: str) -> bool:
    """Return True if any segment of *relative_path* is a dotfile/dot-dir."""
    return any(
        part.startswith(".") for part in relative_path.split("/") if part
    )


def walk_local_files(root: Path) -> list[str]:
    """List every regular file below *root*, skipping dotfiles and dot-dirs.

    Args:
        root: Local sync root.

    Returns:
        Sorted relative paths with forward-slash separators.
    """
    found: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        # Prune hidden directories in place so os.walk never enters them
        dirnames[:] = [d for d in dirnames if not d.startswith(".")]
        for name in filenames:
            if name.startswith("."):
                continue
            full = Path(dirpath) / name
            if not full.is_file():
                continue
            found.append(full.relative_to(root).as_posix())
    found.sort()
    return found


# =============================================================================
# Fingerprints and timestamps
# =============================================================================


def file_fingerprint(path: Path) -> str:
    """MD5 hex digest of the file content.

    MD5 is a change detector here, not a security primitive.
    """
    digest = hashlib.md5(usedforsecurity=False)
    with open(path, "rb") as fh:
        for block in iter(lambda: fh.read(_HASH_CHUNK), b""):
            digest.update(block)
    return digest.hexdigest()


def bytes_fingerprint(data: bytes) -> str:
    """MD5 hex digest of in-memory content."""
    return hashlib.md5(data, usedforsecurity=False).hexdigest()


def looks_like_md5(value: str) -> bool:
    """True if *value* is 32 hex characters."""
    if len(value) != 32:
        return False
    try:
        int(value, 16)
    except ValueError:
        return False
    return True


def local_mtime(path: Path) -> datetime:
    """Modification time of *path* as an aware UTC datetime."""
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)


# =============================================================================
# Writing
# =============================================================================


def write_bytes_atomic(path: Path, data: bytes) -> int:
    """Write *data* to *path*, creating parent directories as needed.

    Writes to a temp file in the target directory then ``os.replace()``s
    it so readers never see a half-written file.

    Returns:
        Number of bytes written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    return len(data)


# =============================================================================
# Conflict artifacts
# =============================================================================


def conflict_file_path(original: Path, when: datetime | None = None) -> Path:
    """Sibling path for a conflict copy of *original*.

    ``notes/story.md`` becomes ``notes/story.conflict-20251026-143045.md``.
    If that name is taken a counter is appended before the extension.
    """
    stamp = (when or datetime.now()).strftime("%Y%m%d-%H%M%S")
    suffix = original.suffix
    stem = original.name[: -len(suffix)] if suffix else original.name

    candidate = original.with_name(f"{stem}.conflict-{stamp}{suffix}")
    counter = 1
    while candidate.exists():
        candidate = original.with_name(
            f"{stem}.conflict-{stamp}-{counter}{suffix}"
        )
        counter += 1
    return candidate
