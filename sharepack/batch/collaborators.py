"""Pluggable operations the batch phases delegate to.

The pipeline only relies on the abstract interfaces here. The stock
implementations run an external transform command and build archives with
7-Zip or :mod:`zipfile`.
"""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import zipfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Callable, Iterator, List, Optional

from sharepack.core.logger import setup_logger
from sharepack.core.models import WorkItem

logger = setup_logger(__name__)

ProgressCallback = Callable[[float], None]
StatusCallback = Callable[[str, Optional[str]], None]


@dataclass(frozen=True)
class OperationResult:
    """Outcome reported by a collaborator."""
    success: bool
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "OperationResult":
        return cls(True)

    @classmethod
    def fail(cls, error: str) -> "OperationResult":
        return cls(False, error)


# =============================================================================
# Transform
# =============================================================================


class TransformTargetBusy(RuntimeError):
    """Raised when a second item tries to hold the transform target."""
    pass


class TransformTarget:
    """Single-slot handle on the item currently being transformed.

    The transform collaborator works against one shared "current target",
    so only one item may hold it at a time. ``hold`` never blocks: a second
    holder is a programming error and raises ``TransformTargetBusy``.
    """

    def __init__(self):
        self._lock = Lock()
        self._current: Optional[WorkItem] = None

    @property
    def current(self) -> Optional[WorkItem]:
        return self._current

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self, item: WorkItem) -> Iterator["TransformTarget"]:
        if not self._lock.acquire(blocking=False):
            holder = self._current.name if self._current else "another item"
            raise TransformTargetBusy(f"Transform target is held by {holder}")
        self._current = item
        try:
            yield self
        finally:
            self._current = None
            self._lock.release()


class CrackOperation(ABC):
    """Transforms one item in place while it holds the target."""

    @abstractmethod
    def crack(
        self,
        item: WorkItem,
        target: TransformTarget,
        status_callback: Optional[StatusCallback] = None,
    ) -> OperationResult:
        ...


class CommandCrackOperation(CrackOperation):
    """Runs ``<command> <path> <app_id>`` and treats exit code 0 as success."""

    def __init__(self, command: str, timeout: float = 600):
        self.command = command
        self.timeout = timeout

    def crack(self, item, target, status_callback=None):
        if status_callback:
            status_callback("transforming", f"Running transform for {item.name}")
        logger.info(f"Item {item.item_id}: running transform command {self.command}")
        try:
            result = subprocess.run(
                [self.command, str(item.path), str(item.app_id)],
                check=True,
                timeout=self.timeout,
                capture_output=True,
                text=True,
            )
            if result.stdout:
                logger.debug(f"Item {item.item_id}: transform stdout: {result.stdout.strip()}")
        except FileNotFoundError:
            logger.error(f"Item {item.item_id}: transform command not found: {self.command}")
            return OperationResult.fail(f"Transform command not found: {self.command}")
        except PermissionError:
            logger.error(f"Item {item.item_id}: transform command not executable: {self.command}")
            return OperationResult.fail(f"Transform command not executable: {self.command}")
        except subprocess.TimeoutExpired:
            logger.error(f"Item {item.item_id}: transform timed out after {self.timeout}s")
            return OperationResult.fail(f"Transform timed out after {self.timeout}s")
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.strip() if e.stderr else "No error output"
            logger.error(f"Item {item.item_id}: transform failed (exit code {e.returncode}): {stderr}")
            return OperationResult.fail(f"Transform failed: {stderr[:100]}")
        return OperationResult.ok()


# =============================================================================
# Archive
# =============================================================================


ARCHIVE_EXTENSIONS = {"7z": ".7z", "zip": ".zip"}

SEVEN_ZIP_LEVELS = {
    "none": ["-mx0"],
    "fast": ["-mx1"],
    "normal": ["-mx5"],
    "maximum": ["-mx9"],
    "ultra": ["-mx9", "-mfb=273", "-ms=on"],
}

# Used for a second attempt when 7-Zip runs out of memory.
LOW_MEMORY_SWITCHES = ["-mx5", "-md=64m"]

ZIP_LEVELS = {
    "none": (zipfile.ZIP_STORED, None),
    "fast": (zipfile.ZIP_DEFLATED, 1),
    "normal": (zipfile.ZIP_DEFLATED, 6),
    "maximum": (zipfile.ZIP_DEFLATED, 9),
    "ultra": (zipfile.ZIP_DEFLATED, 9),
}

_PERCENT_RE = re.compile(r"(\d+)%")

_SEVEN_ZIP_CANDIDATES = [
    r"C:\Program Files\7-Zip\7z.exe",
    r"C:\Program Files (x86)\7-Zip\7z.exe",
]


class ArchiveCancelled(Exception):
    """Raised inside an archiver when its cancel flag trips."""
    pass


def find_seven_zip() -> Optional[str]:
    """Locate a 7-Zip executable on PATH or in the usual install folders."""
    for name in ("7z", "7zz", "7za"):
        found = shutil.which(name)
        if found:
            return found
    for candidate in _SEVEN_ZIP_CANDIDATES:
        if os.path.isfile(candidate):
            return candidate
    return None


def _iter_source_files(source: Path) -> List[Path]:
    return sorted(p for p in source.rglob("*") if p.is_file())


class ArchiveOperation(ABC):
    """Packs a directory into a single archive file."""

    extension = ".7z"

    @abstractmethod
    def compress(
        self,
        source: Path,
        output: Path,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_flag=None,
    ) -> OperationResult:
        """Write ``source`` into ``output``. Progress is 0-100."""
        ...


class ZipArchiveOperation(ArchiveOperation):
    """Pure-Python zip archiver. No password support."""

    extension = ".zip"

    def __init__(self, level: str = "normal"):
        self.level = level

    def compress(self, source, output, progress_callback=None, cancel_flag=None):
        source, output = Path(source), Path(output)
        compression, compresslevel = ZIP_LEVELS.get(self.level, ZIP_LEVELS["normal"])
        files = _iter_source_files(source)
        total = sum(f.stat().st_size for f in files) or 1
        done = 0

        try:
            with zipfile.ZipFile(output, "w", compression=compression, compresslevel=compresslevel) as zf:
                for file_path in files:
                    if cancel_flag is not None and cancel_flag.is_set():
                        raise ArchiveCancelled(f"Archiving {source.name} cancelled")
                    zf.write(file_path, file_path.relative_to(source).as_posix())
                    done += file_path.stat().st_size
                    if progress_callback:
                        progress_callback(done * 100.0 / total)
        except ArchiveCancelled:
            output.unlink(missing_ok=True)
            raise
        except (OSError, zipfile.BadZipFile) as e:
            logger.error_trace(f"Zip archive failed for {source}: {e}")
            output.unlink(missing_ok=True)
            return OperationResult.fail(f"Zip failed: {e}")

        if progress_callback:
            progress_callback(100.0)
        return OperationResult.ok()


class SevenZipArchiveOperation(ArchiveOperation):
    """Archiver driving the 7-Zip command line.

    Progress comes from ``-bsp1`` percentages on stdout. A run that fails
    with a memory error is retried once with a smaller dictionary. Without a
    7-Zip binary, unprotected zip archives fall back to :mod:`zipfile`.
    """

    def __init__(
        self,
        archive_format: str = "7z",
        level: str = "normal",
        password: str = "",
        executable: Optional[str] = None,
    ):
        self.archive_format = archive_format if archive_format in ARCHIVE_EXTENSIONS else "7z"
        self.level = level
        self.password = password
        self.executable = executable
        self.extension = ARCHIVE_EXTENSIONS[self.archive_format]

    def build_command(self, executable: str, source: Path, output: Path, level_switches: List[str]) -> List[str]:
        command = [executable, "a", f"-t{self.archive_format}", *level_switches]
        if self.password:
            command.append(f"-p{self.password}")
            if self.archive_format == "7z":
                command.append("-mhe=on")
        command += ["-bsp1", "-y", str(output), os.path.join(str(source), "*"), "-r"]
        return command

    def compress(self, source, output, progress_callback=None, cancel_flag=None):
        source, output = Path(source), Path(output)
        executable = self.executable or find_seven_zip()
        if executable is None:
            if self.archive_format == "zip" and not self.password:
                logger.info(f"7-Zip not found, using built-in zip for {source.name}")
                return ZipArchiveOperation(self.level).compress(source, output, progress_callback, cancel_flag)
            return OperationResult.fail("7-Zip not found")

        switches = SEVEN_ZIP_LEVELS.get(self.level, SEVEN_ZIP_LEVELS["normal"])
        returncode, output_text = self._run(executable, source, output, switches, progress_callback, cancel_flag)

        if returncode != 0 and ("Can't allocate" in output_text or "memory" in output_text.lower()):
            logger.warning(f"7-Zip ran out of memory on {source.name}, retrying with {' '.join(LOW_MEMORY_SWITCHES)}")
            output.unlink(missing_ok=True)
            returncode, output_text = self._run(
                executable, source, output, LOW_MEMORY_SWITCHES, progress_callback, cancel_flag
            )

        if returncode != 0:
            output.unlink(missing_ok=True)
            tail = output_text.strip().splitlines()[-1:] or ["no output"]
            return OperationResult.fail(f"7-Zip exited with code {returncode}: {tail[0][:200]}")

        if progress_callback:
            progress_callback(100.0)
        return OperationResult.ok()

    def _run(self, executable, source, output, switches, progress_callback, cancel_flag):
        command = self.build_command(executable, source, output, switches)
        masked = " ".join(c if not c.startswith("-p") else "-p***" for c in command)
        logger.debug(f"Running 7-Zip: {masked}")
        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except OSError as e:
            return -1, f"Failed to start 7-Zip: {e}"

        captured = []
        try:
            while True:
                if cancel_flag is not None and cancel_flag.is_set():
                    process.terminate()
                    process.wait()
                    output.unlink(missing_ok=True)
                    raise ArchiveCancelled(f"Archiving {source.name} cancelled")
                # -bsp1 redraws the percentage with backspaces, so read raw chunks.
                chunk = process.stdout.read1(4096)
                if not chunk:
                    break
                text = chunk.decode("utf-8", errors="replace")
                captured.append(text)
                if progress_callback:
                    for match in _PERCENT_RE.findall(text):
                        progress_callback(float(match))
            returncode = process.wait()
        finally:
            if process.stdout:
                process.stdout.close()
        return returncode, "".join(captured)


def get_archive_operation(archive_format: str, level: str = "normal", password: str = "") -> ArchiveOperation:
    """Pick the archiver for a format/password combination."""
    if archive_format == "zip" and not password and find_seven_zip() is None:
        return ZipArchiveOperation(level)
    return SevenZipArchiveOperation(archive_format, level, password)
