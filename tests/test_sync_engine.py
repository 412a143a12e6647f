"""Tests for the core sync engine."""

from __future__ import annotations

import json
import os
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from conftest import FakeWebDavClient
from davsync.exceptions import (
    SyncCancelledError,
    SyncPreconditionError,
    WebDavError,
)
from davsync.file_handler import bytes_fingerprint
from davsync.sync.engine import SyncEngine, decide_action, fingerprints_equal
from davsync.sync.events import SyncEvents
from davsync.sync.models import (
    FileDownloadedEvent,
    FileSyncState,
    SyncAction,
    SyncStatus,
    SyncStatusEvent,
)
from davsync.sync.state import SyncStateStore

OLD = datetime(2020, 1, 1, tzinfo=timezone.utc)
NEW = datetime(2025, 6, 1, tzinfo=timezone.utc)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class Recorder:
    """Collects every event published on a SyncEvents hub."""

    def __init__(self, events: SyncEvents) -> None:
        self.statuses: list[SyncStatusEvent] = []
        self.downloads: list[FileDownloadedEvent] = []
        events.on_status_changed(self.statuses.append)
        events.on_file_downloaded(self.downloads.append)

    @property
    def status_sequence(self) -> list[SyncStatus]:
        return [e.status for e in self.statuses]


def _write(root: Path, rel: str, content: str, mtime: datetime | None = None):
    path = root.joinpath(*rel.split("/"))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    if mtime is not None:
        ts = mtime.timestamp()
        os.utime(path, (ts, ts))
    return path


def _make_engine(
    client,
    local_root: Path,
    state_file: Path,
    remote_folder: str = "Notes",
) -> tuple[SyncEngine, Recorder]:
    events = SyncEvents()
    recorder = Recorder(events)
    engine = SyncEngine(
        client=client,
        state_store=SyncStateStore(state_file),
        local_root=local_root,
        remote_folder=remote_folder,
        events=events,
        directory_settle_seconds=0,
    )
    return engine, recorder


# ---------------------------------------------------------------------------
# decide_action
# ---------------------------------------------------------------------------


def _prior(local_fp: str, remote_fp: str) -> FileSyncState:
    return FileSyncState(
        path="a.md",
        last_local_fingerprint=local_fp,
        last_remote_fingerprint=remote_fp,
        last_local_mod_time=OLD,
        last_remote_mod_time=OLD,
        last_sync_time=OLD,
    )


class TestDecideAction:
    """Tests for the three-way decision table."""

    def test_nothing_changed_is_skip(self):
        prior = _prior("l1", "r1")
        assert decide_action("l1", "r1", prior, NEW, NEW) == SyncAction.SKIP

    def test_local_changed_only_is_upload(self):
        prior = _prior("l1", "r1")
        assert decide_action("l2", "r1", prior, OLD, NEW) == SyncAction.UPLOAD

    def test_remote_changed_only_is_download(self):
        prior = _prior("l1", "r1")
        assert (
            decide_action("l1", "r2", prior, NEW, OLD) == SyncAction.DOWNLOAD
        )

    def test_both_changed_is_conflict(self):
        prior = _prior("l1", "r1")
        assert (
            decide_action("l2", "r2", prior, NEW, NEW) == SyncAction.CONFLICT
        )

    def test_sides_compared_to_their_own_base(self):
        """Local and remote fingerprints are never compared to each other."""
        prior = _prior("md5-local", "etag-remote")
        assert (
            decide_action("md5-local", "etag-remote", prior, NEW, NEW)
            == SyncAction.SKIP
        )

    def test_comparison_ignores_case(self):
        prior = _prior("ABCDEF", "0A0B")
        assert (
            decide_action("abcdef", "0a0b", prior, NEW, NEW) == SyncAction.SKIP
        )

    def test_first_sync_identical_is_skip(self):
        assert decide_action("x", "X", None, OLD, NEW) == SyncAction.SKIP

    def test_first_sync_local_newer_uploads(self):
        assert decide_action("x", "y", None, NEW, OLD) == SyncAction.UPLOAD

    def test_first_sync_remote_newer_downloads(self):
        assert decide_action("x", "y", None, OLD, NEW) == SyncAction.DOWNLOAD

    def test_first_sync_equal_times_downloads(self):
        assert decide_action("x", "y", None, NEW, NEW) == SyncAction.DOWNLOAD

    def test_fingerprints_equal_handles_none(self):
        assert fingerprints_equal(None, "")
        assert not fingerprints_equal("a", None)


# ---------------------------------------------------------------------------
# Full passes
# ---------------------------------------------------------------------------


class TestUploadOnly:
    """Local files with an empty remote."""

    def test_uploads_every_local_file(self, local_root, state_file):
        _write(local_root, "a.md", "alpha")
        _write(local_root, "sub/b.md", "beta")
        client = FakeWebDavClient()
        engine, _ = _make_engine(client, local_root, state_file)

        result = engine.run_pass()

        assert result.uploaded == 2
        assert result.downloaded == 0
        assert client.files["Notes/a.md"] == b"alpha"
        assert client.files["Notes/sub/b.md"] == b"beta"

    def test_creates_remote_root_and_parents(self, local_root, state_file):
        _write(local_root, "sub/deep/b.md", "beta")
        client = FakeWebDavClient()
        engine, _ = _make_engine(
            client, local_root, state_file, remote_folder="/Docs//Notes/"
        )

        engine.run_pass()

        assert client.mkcol_calls == [
            "Docs",
            "Docs/Notes",
            "Docs/Notes/sub",
            "Docs/Notes/sub/deep",
        ]
        assert "Docs/Notes/sub/deep/b.md" in client.files

    def test_records_state_for_each_upload(self, local_root, state_file):
        _write(local_root, "a.md", "alpha")
        client = FakeWebDavClient()
        engine, _ = _make_engine(client, local_root, state_file)

        engine.run_pass()

        entry = SyncStateStore(state_file).get_file_state("a.md")
        assert entry is not None
        assert entry.last_local_fingerprint == bytes_fingerprint(b"alpha")
        assert entry.last_remote_fingerprint == bytes_fingerprint(b"alpha")
        assert entry.size == 5


class TestDownloadOnly:
    """Remote files with an empty local root."""

    def test_downloads_and_notifies_once(self, local_root, state_file):
        client = FakeWebDavClient({"Notes/x.md": b"remote"})
        engine, recorder = _make_engine(client, local_root, state_file)

        result = engine.run_pass()

        assert result.downloaded == 1
        assert (local_root / "x.md").read_bytes() == b"remote"
        assert len(recorder.downloads) == 1
        assert recorder.downloads[0].relative_path == "x.md"
        assert recorder.downloads[0].local_path == str(local_root / "x.md")

    def test_creates_local_subdirectories(self, local_root, state_file):
        client = FakeWebDavClient({"Notes/a/b/c.md": b"deep"})
        engine, _ = _make_engine(client, local_root, state_file)

        engine.run_pass()

        assert (local_root / "a" / "b" / "c.md").read_bytes() == b"deep"

    def test_ignores_files_outside_remote_folder(self, local_root, state_file):
        client = FakeWebDavClient(
            {"Notes/in.md": b"in", "Other/out.md": b"out"}
        )
        engine, _ = _make_engine(client, local_root, state_file)

        engine.run_pass()

        assert (local_root / "in.md").exists()
        assert not (local_root / "out.md").exists()


class TestIdempotence:
    """A second pass with no changes transfers nothing."""

    def test_second_pass_is_noop(self, local_root, state_file):
        _write(local_root, "a.md", "alpha")
        client = FakeWebDavClient({"Notes/b.md": b"beta"})
        engine, recorder = _make_engine(client, local_root, state_file)

        engine.run_pass()
        uploads, downloads = len(client.uploads), len(client.downloads)
        recorder.downloads.clear()

        result = engine.run_pass()

        assert result.uploaded == 0
        assert result.downloaded == 0
        assert result.unchanged == 2
        assert len(client.uploads) == uploads
        assert len(client.downloads) == downloads
        assert recorder.downloads == []

    def test_idempotent_across_restarts(self, local_root, state_file):
        """State persisted on disk is enough for the next pass."""
        _write(local_root, "a.md", "alpha")
        client = FakeWebDavClient()
        first, _ = _make_engine(client, local_root, state_file)
        first.run_pass()

        second, _ = _make_engine(client, local_root, state_file)
        result = second.run_pass()

        assert result.transferred == 0
        assert result.unchanged == 1


class TestChangePropagation:
    """One-sided edits after an initial sync."""

    def test_local_edit_is_uploaded(self, local_root, state_file):
        path = _write(local_root, "a.md", "v1")
        client = FakeWebDavClient()
        engine, _ = _make_engine(client, local_root, state_file)
        engine.run_pass()

        path.write_text("v2", encoding="utf-8")
        result = engine.run_pass()

        assert result.uploaded == 1
        assert client.files["Notes/a.md"] == b"v2"

    def test_remote_edit_is_downloaded(self, local_root, state_file):
        _write(local_root, "a.md", "v1")
        client = FakeWebDavClient()
        engine, recorder = _make_engine(client, local_root, state_file)
        engine.run_pass()

        client.put("Notes/a.md", b"v2 from server")
        result = engine.run_pass()

        assert result.downloaded == 1
        assert (local_root / "a.md").read_bytes() == b"v2 from server"
        assert [e.relative_path for e in recorder.downloads] == ["a.md"]


class TestConflict:
    """Both sides edited since the last agreement."""

    def test_saves_both_versions(self, local_root, state_file):
        path = _write(local_root, "notes/story.md", "base")
        client = FakeWebDavClient()
        engine, recorder = _make_engine(client, local_root, state_file)
        engine.run_pass()

        path.write_text("local edit", encoding="utf-8")
        client.put("Notes/notes/story.md", b"remote edit")
        result = engine.run_pass()

        assert result.conflicts == ["notes/story.md"]
        assert client.files["Notes/notes/story.md"] == b"local edit"
        assert path.read_text(encoding="utf-8") == "local edit"

        copies = list((local_root / "notes").glob("story.conflict-*.md"))
        assert len(copies) == 1
        assert copies[0].read_bytes() == b"remote edit"

        final = recorder.statuses[-1]
        assert final.status == SyncStatus.SUCCESS
        assert "1 conflicts (saved both versions)" in final.message

    def test_conflict_copy_uploaded_next_pass(self, local_root, state_file):
        path = _write(local_root, "a.md", "base")
        client = FakeWebDavClient()
        engine, _ = _make_engine(client, local_root, state_file)
        engine.run_pass()

        path.write_text("local", encoding="utf-8")
        client.put("Notes/a.md", b"remote")
        engine.run_pass()
        result = engine.run_pass()

        assert result.uploaded == 1
        assert any(
            key.startswith("Notes/a.conflict-") for key in client.files
        )

    def test_state_agrees_after_conflict(self, local_root, state_file):
        path = _write(local_root, "a.md", "base")
        client = FakeWebDavClient()
        engine, _ = _make_engine(client, local_root, state_file)
        engine.run_pass()

        path.write_text("local", encoding="utf-8")
        client.put("Notes/a.md", b"remote")
        engine.run_pass()

        entry = engine.state_store.get_file_state("a.md")
        assert entry.last_local_fingerprint == bytes_fingerprint(b"local")
        assert entry.last_remote_fingerprint == bytes_fingerprint(b"local")


class TestFirstSync:
    """Both sides present with no recorded state."""

    def test_identical_content_skips_and_records(self, local_root, state_file):
        _write(local_root, "a.md", "same")
        client = FakeWebDavClient({"Notes/a.md": b"same"})
        engine, _ = _make_engine(client, local_root, state_file)

        result = engine.run_pass()

        assert result.unchanged == 1
        assert result.transferred == 0
        assert engine.state_store.get_file_state("a.md") is not None

    def test_newer_local_wins(self, local_root, state_file):
        _write(local_root, "a.md", "local", mtime=NEW)
        client = FakeWebDavClient()
        client.put("Notes/a.md", b"remote", modified=OLD)
        engine, _ = _make_engine(client, local_root, state_file)

        result = engine.run_pass()

        assert result.uploaded == 1
        assert client.files["Notes/a.md"] == b"local"

    def test_newer_remote_wins(self, local_root, state_file):
        _write(local_root, "a.md", "local", mtime=OLD)
        client = FakeWebDavClient()
        client.put("Notes/a.md", b"remote", modified=NEW)
        engine, _ = _make_engine(client, local_root, state_file)

        result = engine.run_pass()

        assert result.downloaded == 1
        assert (local_root / "a.md").read_bytes() == b"remote"
        assert result.conflicts == []


class TestStateRecovery:
    """Unreadable state behaves like a first sync."""

    def test_corrupt_state_file(self, local_root, state_file):
        state_file.parent.mkdir(parents=True)
        state_file.write_text("{ not json", encoding="utf-8")
        _write(local_root, "a.md", "same")
        client = FakeWebDavClient({"Notes/a.md": b"same"})
        engine, _ = _make_engine(client, local_root, state_file)

        result = engine.run_pass()

        assert result.unchanged == 1
        data = json.loads(state_file.read_text(encoding="utf-8"))
        assert "a.md" in data["files"]

    def test_prunes_paths_gone_from_both_sides(self, local_root, state_file):
        path = _write(local_root, "gone.md", "x")
        client = FakeWebDavClient()
        engine, _ = _make_engine(client, local_root, state_file)
        engine.run_pass()

        path.unlink()
        del client.files["Notes/gone.md"]
        engine.run_pass()

        assert engine.state_store.get_file_state("gone.md") is None


class TestHiddenFiles:
    """Dotfiles are never synchronised in either direction."""

    def test_hidden_paths_skipped(self, local_root, state_file):
        _write(local_root, ".secret", "local")
        _write(local_root, ".git/config", "local")
        client = FakeWebDavClient({"Notes/.hidden/x.md": b"remote"})
        engine, _ = _make_engine(client, local_root, state_file)

        result = engine.run_pass()

        assert result.transferred == 0
        assert not (local_root / ".hidden").exists()
        assert client.uploads == []


# ---------------------------------------------------------------------------
# Status and failure handling
# ---------------------------------------------------------------------------


class TestStatusEvents:
    def test_success_sequence(self, local_root, state_file):
        _write(local_root, "a.md", "alpha")
        engine, recorder = _make_engine(
            FakeWebDavClient(), local_root, state_file
        )

        result = engine.run_pass()

        assert recorder.status_sequence == [
            SyncStatus.SYNCING,
            SyncStatus.SUCCESS,
        ]
        final = recorder.statuses[-1]
        assert final.message == (
            "Sync complete: 1 uploaded, 0 downloaded, 0 unchanged"
        )
        assert final.last_sync_time == result.completed_at
        assert engine.status == SyncStatus.SUCCESS

    def test_failing_listener_does_not_abort(self, local_root, state_file):
        client = FakeWebDavClient({"Notes/x.md": b"remote"})
        engine, _ = _make_engine(client, local_root, state_file)

        def boom(event):
            raise RuntimeError("listener bug")

        engine.events.on_file_downloaded(boom)
        result = engine.run_pass()

        assert result.downloaded == 1


class TestPreconditions:
    def test_missing_client(self, local_root, state_file):
        engine, recorder = _make_engine(None, local_root, state_file)

        with pytest.raises(SyncPreconditionError, match="not configured"):
            engine.run_pass()

        assert recorder.status_sequence == [SyncStatus.ERROR]
        assert not state_file.exists()

    def test_missing_local_root(self, tmp_path, state_file):
        client = FakeWebDavClient()
        engine, recorder = _make_engine(
            client, tmp_path / "does-not-exist", state_file
        )

        with pytest.raises(SyncPreconditionError):
            engine.run_pass()

        assert recorder.status_sequence == [SyncStatus.ERROR]
        assert client.mkcol_calls == []


class TestFailureAbortsPass:
    def test_partial_progress_retained(self, local_root, state_file):
        _write(local_root, "a.md", "alpha")
        _write(local_root, "b.md", "beta")
        _write(local_root, "c.md", "gamma")
        client = FakeWebDavClient()
        client.fail_uploads.add("Notes/b.md")
        engine, recorder = _make_engine(client, local_root, state_file)

        with pytest.raises(WebDavError):
            engine.run_pass()

        reloaded = SyncStateStore(state_file)
        assert reloaded.get_file_state("a.md") is not None
        assert reloaded.get_file_state("b.md") is None
        assert reloaded.get_file_state("c.md") is None
        assert "Notes/c.md" not in client.files

        final = recorder.statuses[-1]
        assert final.status == SyncStatus.ERROR
        assert final.message.startswith("Sync failed: PUT")

    def test_retry_resumes_incrementally(self, local_root, state_file):
        _write(local_root, "a.md", "alpha")
        _write(local_root, "b.md", "beta")
        client = FakeWebDavClient()
        client.fail_uploads.add("Notes/b.md")
        engine, _ = _make_engine(client, local_root, state_file)
        with pytest.raises(WebDavError):
            engine.run_pass()

        client.fail_uploads.clear()
        result = engine.run_pass()

        assert result.uploaded == 1
        assert result.unchanged == 1

    def test_last_sync_time_preserved(self, local_root, state_file):
        _write(local_root, "a.md", "alpha")
        client = FakeWebDavClient()
        engine, recorder = _make_engine(client, local_root, state_file)
        first = engine.run_pass()

        _write(local_root, "b.md", "beta")
        client.fail_uploads.add("Notes/b.md")
        with pytest.raises(WebDavError):
            engine.run_pass()

        assert engine.last_sync_time == first.completed_at
        assert recorder.statuses[-1].last_sync_time == first.completed_at


class TestCancellation:
    def test_cancel_before_pass(self, local_root, state_file):
        _write(local_root, "a.md", "alpha")
        client = FakeWebDavClient()
        engine, recorder = _make_engine(client, local_root, state_file)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(SyncCancelledError):
            engine.run_pass(cancel)

        assert recorder.statuses[-1].status == SyncStatus.IDLE
        assert recorder.statuses[-1].message == "Sync cancelled"
        assert client.uploads == []

    def test_cancel_mid_pass_keeps_completed(self, local_root, state_file):
        _write(local_root, "a.md", "alpha")
        _write(local_root, "b.md", "beta")
        client = FakeWebDavClient()
        cancel = threading.Event()

        def cancel_on_second(key: str) -> None:
            if key == "Notes/b.md":
                cancel.set()

        client.before_upload = cancel_on_second
        engine, _ = _make_engine(client, local_root, state_file)

        with pytest.raises(SyncCancelledError):
            engine.run_pass(cancel)

        reloaded = SyncStateStore(state_file)
        assert reloaded.get_file_state("a.md") is not None
        assert reloaded.get_file_state("b.md") is None
        assert reloaded.last_successful_sync is None


class TestEtagHandling:
    def test_opaque_etag_warns_once(self, local_root, state_file, caplog):
        _write(local_root, "a.md", "one")
        _write(local_root, "b.md", "two")

        class OpaqueEtagClient(FakeWebDavClient):
            def _resource(self, key):
                resource = super()._resource(key)
                return resource.model_copy(update={"etag": f"opaque-{key}"})

        client = OpaqueEtagClient()
        client.put("Notes/a.md", b"one", modified=OLD)
        client.put("Notes/b.md", b"two", modified=OLD)
        engine, _ = _make_engine(client, local_root, state_file)

        with caplog.at_level("WARNING", logger="davsync.sync.engine"):
            engine.run_pass()

        warnings = [r for r in caplog.records if "not an MD5" in r.getMessage()]
        assert len(warnings) == 1

    def test_upload_records_server_etag(self, local_root, state_file):
        _write(local_root, "a.md", "alpha")

        class CountingEtagClient(FakeWebDavClient):
            def _resource(self, key):
                resource = super()._resource(key)
                return resource.model_copy(update={"etag": "v-1"})

        client = CountingEtagClient()
        engine, _ = _make_engine(client, local_root, state_file)
        engine.run_pass()

        entry = engine.state_store.get_file_state("a.md")
        assert entry.last_remote_fingerprint == "v-1"
        assert engine.run_pass().transferred == 0

    def test_missing_etag_falls_back_to_size_and_time(
        self, local_root, state_file
    ):
        class NoEtagClient(FakeWebDavClient):
            def _resource(self, key):
                resource = super()._resource(key)
                return resource.model_copy(update={"etag": ""})

        client = NoEtagClient()
        client.put("Notes/a.md", b"remote", modified=OLD)
        engine, _ = _make_engine(client, local_root, state_file)
        engine.run_pass()

        assert engine.run_pass().transferred == 0

        client.put("Notes/a.md", b"remote, longer", modified=NEW)
        assert engine.run_pass().downloaded == 1
