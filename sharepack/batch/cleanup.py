"""Best-effort removal of leftovers from earlier transform runs.

Every step is independent: a file that cannot be restored or deleted is
recorded as an error and the rest of the cleanup carries on.
"""

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from sharepack.core.logger import setup_logger

logger = setup_logger(__name__)

BACKUP_PATTERNS = ("*.dll.bak", "*.exe.bak")
SETTINGS_DIR_NAME = "steam_settings"
TOP_LEVEL_PREFIX = "_["
TOP_LEVEL_SUFFIX = ".lnk"
RECURSIVE_PATTERNS = ("_lobby_connect*", "lobby_connect*")
KNOWN_ARTIFACTS = (
    "CreamAPI.dll",
    "cream_api.ini",
    "CreamLinux",
    "steam_api_o.dll",
    "steam_api64_o.dll",
    "local_save.txt",
)


@dataclass
class CleanupReport:
    restored: List[Path] = field(default_factory=list)
    removed: List[Path] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.restored or self.removed)


def _restore_backups(root: Path, report: CleanupReport) -> None:
    for pattern in BACKUP_PATTERNS:
        for backup in sorted(root.rglob(pattern)):
            original = backup.with_name(backup.name[:-len(".bak")])
            try:
                if original.exists():
                    original.unlink()
                backup.rename(original)
                report.restored.append(original)
            except OSError as e:
                report.errors.append(f"Could not restore {backup.name}: {e}")


def _remove_file(path: Path, report: CleanupReport) -> None:
    try:
        path.unlink()
        report.removed.append(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        report.errors.append(f"Could not delete {path.name}: {e}")


def _remove_settings_dirs(root: Path, report: CleanupReport) -> None:
    # Collect first; deleting while rglob walks would skip entries.
    found = [p for p in root.rglob(SETTINGS_DIR_NAME) if p.is_dir()]
    for directory in found:
        if not directory.exists():
            continue
        try:
            shutil.rmtree(directory)
            report.removed.append(directory)
        except OSError as e:
            report.errors.append(f"Could not delete {directory}: {e}")


def clean_directory(root: Path) -> CleanupReport:
    """Restore backed-up binaries and delete known artifacts under ``root``."""
    root = Path(root)
    report = CleanupReport()
    if not root.is_dir():
        report.errors.append(f"Directory not found: {root}")
        return report

    _restore_backups(root, report)
    _remove_settings_dirs(root, report)

    for path in sorted(root.iterdir()):
        if path.is_file() and (path.name.startswith(TOP_LEVEL_PREFIX) or path.name.lower().endswith(TOP_LEVEL_SUFFIX)):
            _remove_file(path, report)

    for pattern in RECURSIVE_PATTERNS + KNOWN_ARTIFACTS:
        for path in sorted(root.rglob(pattern)):
            if path.is_file():
                _remove_file(path, report)

    logger.debug(
        f"Cleanup of {root.name}: {len(report.restored)} restored, "
        f"{len(report.removed)} removed, {len(report.errors)} errors"
    )
    return report
