"""Fake collaborators shared by the batch tests."""

import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from sharepack.batch.collaborators import ArchiveCancelled, ArchiveOperation, CrackOperation, OperationResult
from sharepack.core.models import BatchSettings, UploadResult, WorkItem


class RecordingCrack(CrackOperation):
    """Transform that records calls and checks it holds the target."""

    def __init__(self, fail=(), on_call: Optional[Callable[[WorkItem], None]] = None):
        self.calls: List[str] = []
        self.fail = set(fail)
        self.on_call = on_call
        self.held_target = []

    def crack(self, item, target, status_callback=None):
        self.calls.append(item.item_id)
        self.held_target.append(target.current is item and target.busy)
        if self.on_call:
            self.on_call(item)
        if item.item_id in self.fail:
            return OperationResult.fail("crack broke")
        return OperationResult.ok()


class FakeArchiver(ArchiveOperation):
    """Writes a tiny archive and reports a few progress steps.

    ``gates`` maps a source folder name to an Event the archiver waits on
    before its first progress step. The cancel flag is checked between steps.
    """

    extension = ".7z"

    def __init__(self, fail=(), delay: float = 0.0, gates: Optional[Dict[str, threading.Event]] = None):
        self.fail = set(fail)
        self.delay = delay
        self.gates = gates or {}
        self.calls: List[str] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def compress(self, source, output, progress_callback=None, cancel_flag=None):
        name = Path(source).name
        with self._lock:
            self.calls.append(name)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            gate = self.gates.get(name)
            if gate is not None:
                gate.wait(timeout=5)
            for percent in (10, 50, 90):
                if cancel_flag is not None and cancel_flag.is_set():
                    raise ArchiveCancelled(f"{name} cancelled")
                if progress_callback:
                    progress_callback(percent)
                if self.delay:
                    time.sleep(self.delay)
            if name in self.fail:
                return OperationResult.fail("disk full")
            Path(output).write_bytes(b"archive:" + str(source).encode())
            return OperationResult.ok()
        finally:
            with self._lock:
                self.active -= 1


class FakeUploadClient:
    """Upload client driven by a per-archive script.

    ``script`` maps an archive stem to a list of actions, one per attempt:
    an exception to raise, or a callable ``(cancel_flag) -> None`` run before
    the attempt succeeds or raises what it returns.
    """

    def __init__(self, script: Optional[Dict[str, list]] = None):
        self.script = script or {}
        self.calls: List[str] = []
        self.progress: List[float] = []

    def upload(self, path, progress_callback=None, status_callback=None, cancel_flag=None):
        path = Path(path)
        self.calls.append(path.stem)
        attempt = self.calls.count(path.stem)
        actions = self.script.get(path.stem, [])
        action = actions[attempt - 1] if attempt <= len(actions) else None

        if callable(action) and not isinstance(action, Exception):
            action = action(cancel_flag)
        if progress_callback:
            progress_callback(0.5)
        if isinstance(action, Exception):
            raise action
        if progress_callback:
            progress_callback(1.0)
        if status_callback:
            status_callback("complete", "Download link ready")
        return UploadResult(
            download_url=f"https://1fichier.com/?{path.stem}",
            file_name=path.name,
            file_size=path.stat().st_size,
            remote_id=path.stem,
        )


@pytest.fixture
def make_items(tmp_path):
    """Create work item directories under tmp_path/games."""

    def factory(*names: str, app_id: Optional[str] = "480") -> List[WorkItem]:
        items = []
        for index, name in enumerate(names, 1):
            path = tmp_path / "games" / name
            path.mkdir(parents=True)
            (path / "game.exe").write_bytes(b"MZ" + name.encode())
            items.append(WorkItem(item_id=str(index), name=name, path=path, app_id=app_id))
        return items

    return factory


@pytest.fixture
def batch_settings(tmp_path):
    return BatchSettings(
        transform=True,
        archive=True,
        upload=True,
        output_dir=tmp_path / "out",
        archive_prefix="",
        max_parallel_archives=3,
        upload_max_retries=3,
        upload_retry_delay=0,
    )


@pytest.fixture
def fakes():
    """The fake collaborator classes, for tests that need their own instances."""

    class Fakes:
        Crack = RecordingCrack
        Archiver = FakeArchiver
        Uploader = FakeUploadClient

    return Fakes
