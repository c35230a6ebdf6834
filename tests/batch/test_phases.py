"""
Tests for the individual phase executors.
"""

from threading import Lock
from typing import List
from unittest.mock import patch

import pytest

from sharepack.batch.collaborators import ArchiveCancelled, TransformTarget
from sharepack.batch.phases import (
    ArchiveExecutor,
    CleanupExecutor,
    PhaseContext,
    TransformExecutor,
    UploadExecutor,
    safe_file_name,
)
from sharepack.core.cancellation import BatchCancellation
from sharepack.core.models import ArchiveDescriptor, BatchProgress, OutcomeStatus, Phase, WorkItem
from sharepack.upload.errors import UploadCancelled, UploadNetworkError


class EventRecorder:
    """Thread-safe collector for BatchProgress events."""

    def __init__(self):
        self.events: List[BatchProgress] = []
        self._lock = Lock()

    def __call__(self, event: BatchProgress):
        with self._lock:
            self.events.append(event)

    def percents(self, item_name: str) -> List[int]:
        return [e.percent for e in self.events if e.item_name == item_name and e.percent is not None]

    def messages(self, item_name: str) -> List[str]:
        return [e.message for e in self.events if e.item_name == item_name and e.message]


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def ctx(recorder):
    cancellation = BatchCancellation()
    return PhaseContext(cancellation, recorder, min_progress_interval=60)


def with_archives(items, tmp_path):
    """Give each item a real archive file, as the archive phase would."""
    for item in items:
        path = tmp_path / f"{item.name}.7z"
        path.write_bytes(b"7z" + item.name.encode())
        item.archive = ArchiveDescriptor(path=path, size_bytes=path.stat().st_size, duration=0.1)
    return items


class TestSafeFileName:
    def test_replaces_reserved_characters(self):
        assert safe_file_name('Game: Remastered "GOTY"?') == "Game_ Remastered _GOTY__"

    def test_empty_after_cleaning(self):
        assert safe_file_name(" ... ") == "archive"


class TestCleanupExecutor:
    """Tests for the cleanup phase."""

    def test_always_success(self, make_items, ctx):
        items = make_items("game-a", "game-b")
        CleanupExecutor().run(items, ctx)
        assert all(item.outcome(Phase.CLEANUP).ok for item in items)

    def test_errors_become_warnings(self, make_items, ctx):
        items = make_items("game-a")
        with patch("sharepack.batch.phases.clean_directory", side_effect=OSError("disk gone")):
            CleanupExecutor().run(items, ctx)

        assert items[0].outcome(Phase.CLEANUP).ok
        assert items[0].warnings == ["Cleanup failed: disk gone"]

    def test_ignores_cancel_all(self, make_items, ctx):
        items = make_items("game-a")
        ctx.cancellation.begin_phase(Phase.CLEANUP)
        ctx.cancellation.cancel_all()

        CleanupExecutor().run(items, ctx)

        assert items[0].outcome(Phase.CLEANUP).ok


class TestTransformExecutor:
    """Tests for the transform phase."""

    def test_success_while_holding_target(self, make_items, ctx, fakes):
        items = make_items("game-a", "game-b")
        crack = fakes.Crack()

        TransformExecutor(crack).run(items, ctx)

        assert crack.calls == ["1", "2"]
        assert crack.held_target == [True, True]
        assert all(item.outcome(Phase.TRANSFORM).ok for item in items)

    def test_missing_app_id(self, make_items, ctx, fakes):
        items = make_items("game-a", app_id=None)
        crack = fakes.Crack()

        TransformExecutor(crack).run(items, ctx)

        assert crack.calls == []
        assert items[0].outcome(Phase.TRANSFORM).reason == "No AppID"

    def test_no_operation_configured(self, make_items, ctx):
        items = make_items("game-a")
        TransformExecutor(None).run(items, ctx)
        assert items[0].outcome(Phase.TRANSFORM).status == OutcomeStatus.FAILED

    def test_failure_isolated(self, make_items, ctx, fakes):
        items = make_items("game-a", "game-b")
        TransformExecutor(fakes.Crack(fail={"1"})).run(items, ctx)

        assert items[0].outcome(Phase.TRANSFORM).reason == "crack broke"
        assert items[1].outcome(Phase.TRANSFORM).ok

    def test_busy_target_fails_item(self, make_items, ctx, fakes):
        items = make_items("game-a", "game-b")
        target = TransformTarget()

        with target.hold(items[1]):
            TransformExecutor(fakes.Crack(), target).run(items[:1], ctx)

        outcome = items[0].outcome(Phase.TRANSFORM)
        assert outcome.status == OutcomeStatus.FAILED
        assert "held by game-b" in outcome.reason

    def test_cancelled_items_not_started(self, make_items, ctx, fakes):
        items = make_items("game-a", "game-b")
        crack = fakes.Crack()
        ctx.cancellation.begin_phase(Phase.TRANSFORM)
        ctx.cancellation.cancel_all()

        TransformExecutor(crack).run(items, ctx)

        assert crack.calls == []
        assert all(item.outcome(Phase.TRANSFORM).status == OutcomeStatus.CANCELLED for item in items)


class TestArchiveExecutor:
    """Tests for the parallel archive phase."""

    def test_archives_every_item(self, make_items, ctx, fakes, tmp_path):
        items = make_items("game-a", "game-b", "game-c")
        executor = ArchiveExecutor(fakes.Archiver(), tmp_path / "out", prefix="[TEST]", max_workers=2)

        executor.run(items, ctx)

        for item in items:
            assert item.outcome(Phase.ARCHIVE).ok
            assert item.archive.path == tmp_path / "out" / f"[TEST] {item.name}.7z"
            assert item.archive.size_bytes == item.archive.path.stat().st_size

    def test_parallelism_is_bounded(self, make_items, ctx, fakes, tmp_path):
        items = make_items(*[f"game-{i}" for i in range(6)])
        archiver = fakes.Archiver(delay=0.02)

        ArchiveExecutor(archiver, tmp_path / "out", max_workers=2).run(items, ctx)

        assert len(archiver.calls) == 6
        assert 1 <= archiver.max_active <= 2

    def test_failure_does_not_affect_others(self, make_items, ctx, fakes, tmp_path):
        items = make_items("game-a", "game-b", "game-c")

        ArchiveExecutor(fakes.Archiver(fail={"game-b"}), tmp_path / "out").run(items, ctx)

        assert items[0].outcome(Phase.ARCHIVE).ok
        assert items[1].outcome(Phase.ARCHIVE).reason == "disk full"
        assert items[1].archive is None
        assert items[2].outcome(Phase.ARCHIVE).ok

    def test_same_folder_names_get_separate_archives(self, ctx, fakes, tmp_path):
        items = []
        for index, library in enumerate(("lib-a", "lib-b"), 1):
            path = tmp_path / library / "Game"
            path.mkdir(parents=True)
            (path / "game.exe").write_bytes(b"MZ" + library.encode())
            items.append(WorkItem(item_id=str(index), name="Game", path=path))

        ArchiveExecutor(fakes.Archiver(delay=0.02), tmp_path / "out", max_workers=2).run(items, ctx)

        assert all(item.outcome(Phase.ARCHIVE).ok for item in items)
        assert items[0].archive.path == tmp_path / "out" / "Game.7z"
        assert items[1].archive.path == tmp_path / "out" / "Game (2).7z"
        for item in items:
            assert item.archive.path.read_bytes() == b"archive:" + str(item.path).encode()

    def test_assign_outputs_ignores_case(self, fakes, tmp_path):
        items = [
            WorkItem(item_id="1", name="Game", path=tmp_path / "a" / "Game"),
            WorkItem(item_id="2", name="GAME", path=tmp_path / "b" / "GAME"),
            WorkItem(item_id="3", name="Other", path=tmp_path / "Other"),
        ]

        outputs = ArchiveExecutor(fakes.Archiver(), tmp_path / "out").assign_outputs(items)

        assert [path.name for path in outputs.values()] == ["Game.7z", "GAME (2).7z", "Other.7z"]

    def test_missing_source(self, make_items, ctx, fakes, tmp_path):
        items = make_items("game-a")
        items[0].path = tmp_path / "gone"

        ArchiveExecutor(fakes.Archiver(), tmp_path / "out").run(items, ctx)

        assert "not found" in items[0].outcome(Phase.ARCHIVE).reason

    def test_archiver_cancelled(self, make_items, ctx, fakes, tmp_path):
        items = make_items("game-a")
        archiver = fakes.Archiver()

        with patch.object(archiver, "compress", side_effect=ArchiveCancelled("stop")):
            ArchiveExecutor(archiver, tmp_path / "out").run(items, ctx)

        assert items[0].outcome(Phase.ARCHIVE).status == OutcomeStatus.CANCELLED

    def test_archiver_exception_recorded_as_failure(self, make_items, ctx, fakes, tmp_path):
        items = make_items("game-a")
        archiver = fakes.Archiver()

        with patch.object(archiver, "compress", side_effect=RuntimeError("segfault")):
            ArchiveExecutor(archiver, tmp_path / "out").run(items, ctx)

        assert items[0].outcome(Phase.ARCHIVE).reason == "segfault"

    def test_progress_monotonic_per_item(self, make_items, ctx, fakes, recorder, tmp_path):
        items = make_items("game-a", "game-b")

        ArchiveExecutor(fakes.Archiver(), tmp_path / "out").run(items, ctx)

        for item in items:
            percents = recorder.percents(item.name)
            assert percents == sorted(percents)
            assert percents[0] == 0
            assert percents[-1] == 100


class TestUploadExecutor:
    """Tests for the sequential upload phase and its retry loop."""

    def test_success_records_result(self, make_items, ctx, fakes, tmp_path):
        items = with_archives(make_items("game-a"), tmp_path)
        client = fakes.Uploader()

        UploadExecutor(client, max_attempts=3, retry_delay=0).run(items, ctx)

        assert items[0].outcome(Phase.UPLOAD).ok
        assert items[0].upload.download_url == "https://1fichier.com/?game-a"

    def test_attempt_cap(self, make_items, ctx, fakes, tmp_path):
        items = with_archives(make_items("game-a"), tmp_path)
        error = UploadNetworkError("connection reset")
        client = fakes.Uploader({"game-a": [error, error, error, error]})

        UploadExecutor(client, max_attempts=3, retry_delay=0).run(items, ctx)

        assert client.calls == ["game-a"] * 3
        outcome = items[0].outcome(Phase.UPLOAD)
        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.reason == "connection reset"

    def test_retry_then_success(self, make_items, ctx, fakes, tmp_path):
        items = with_archives(make_items("game-a"), tmp_path)
        client = fakes.Uploader({"game-a": [UploadNetworkError("timeout")]})

        UploadExecutor(client, max_attempts=3, retry_delay=0).run(items, ctx)

        assert client.calls == ["game-a", "game-a"]
        assert items[0].outcome(Phase.UPLOAD).ok

    def test_progress_restarts_each_attempt(self, make_items, ctx, fakes, recorder, tmp_path):
        items = with_archives(make_items("game-a"), tmp_path)
        client = fakes.Uploader({"game-a": [UploadNetworkError("timeout")]})

        UploadExecutor(client, max_attempts=3, retry_delay=0).run(items, ctx)

        assert recorder.percents("game-a") == [50, 50, 100]
        assert "Uploading (attempt 2/3)" in recorder.messages("game-a")

    def test_missing_archive(self, make_items, ctx, fakes):
        items = make_items("game-a")
        client = fakes.Uploader()

        UploadExecutor(client).run(items, ctx)

        assert client.calls == []
        assert items[0].outcome(Phase.UPLOAD).reason == "No archive"

    def test_skip_only_affects_current_item(self, make_items, ctx, fakes, tmp_path):
        items = with_archives(make_items("game-a", "game-b"), tmp_path)
        ctx.cancellation.begin_phase(Phase.UPLOAD)

        def skip(cancel_flag):
            assert ctx.cancellation.skip_current()
            return UploadCancelled("aborted")

        client = fakes.Uploader({"game-a": [skip]})

        UploadExecutor(client, retry_delay=0).run(items, ctx)

        assert items[0].outcome(Phase.UPLOAD).status == OutcomeStatus.SKIPPED
        assert items[1].outcome(Phase.UPLOAD).ok
        assert client.calls == ["game-a", "game-b"]

    def test_skip_stops_retries(self, make_items, ctx, fakes, tmp_path):
        items = with_archives(make_items("game-a"), tmp_path)
        ctx.cancellation.begin_phase(Phase.UPLOAD)

        def fail_and_skip(cancel_flag):
            ctx.cancellation.skip_current()
            return UploadNetworkError("timeout")

        client = fakes.Uploader({"game-a": [fail_and_skip]})

        UploadExecutor(client, max_attempts=3, retry_delay=60).run(items, ctx)

        assert client.calls == ["game-a"]
        assert items[0].outcome(Phase.UPLOAD).status == OutcomeStatus.SKIPPED

    def test_cancel_all_mid_upload(self, make_items, ctx, fakes, tmp_path):
        items = with_archives(make_items("game-a", "game-b"), tmp_path)
        ctx.cancellation.begin_phase(Phase.UPLOAD)

        def cancel(cancel_flag):
            ctx.cancellation.cancel_all()
            return UploadCancelled("aborted")

        client = fakes.Uploader({"game-a": [cancel]})

        UploadExecutor(client, retry_delay=0).run(items, ctx)

        assert client.calls == ["game-a"]
        assert items[0].outcome(Phase.UPLOAD).status == OutcomeStatus.CANCELLED
        assert items[1].outcome(Phase.UPLOAD).status == OutcomeStatus.CANCELLED
