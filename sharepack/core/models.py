"""Data structures shared by the batch pipeline and the upload clients."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


class Phase(str, Enum):
    """Pipeline stages, in execution order."""
    CLEANUP = "cleanup"
    TRANSFORM = "transform"
    ARCHIVE = "archive"
    UPLOAD = "upload"


PHASE_ORDER: Tuple[Phase, ...] = (Phase.CLEANUP, Phase.TRANSFORM, Phase.ARCHIVE, Phase.UPLOAD)


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PhaseOutcome:
    """Result of one phase for one work item."""
    status: OutcomeStatus
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> "PhaseOutcome":
        return cls(OutcomeStatus.SUCCESS)

    @classmethod
    def failed(cls, reason: str) -> "PhaseOutcome":
        return cls(OutcomeStatus.FAILED, reason)

    @classmethod
    def skipped(cls, reason: str = "Skipped by operator") -> "PhaseOutcome":
        return cls(OutcomeStatus.SKIPPED, reason)

    @classmethod
    def cancelled(cls, reason: str = "Cancelled") -> "PhaseOutcome":
        return cls(OutcomeStatus.CANCELLED, reason)

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


@dataclass(frozen=True)
class ArchiveDescriptor:
    """Archive produced for a work item."""
    path: Path
    size_bytes: int
    duration: float  # seconds


@dataclass(frozen=True)
class UploadServer:
    """Per-upload endpoint handed out by the host."""
    url: str        # Host name, e.g. "up2.1fichier.com"
    upload_id: str


@dataclass
class UploadSession:
    """State of a single upload attempt. Never reused across retries."""
    server: UploadServer
    session_id: Optional[str] = None  # xid from the redirect
    bytes_sent: int = 0


@dataclass(frozen=True)
class UploadResult:
    """Durable reference for an uploaded file."""
    download_url: str
    file_name: str
    file_size: int
    remote_id: str = ""


@dataclass
class WorkItem:
    """One directory processed end-to-end by a batch run."""
    item_id: str
    name: str
    path: Path
    app_id: Optional[str] = None
    build_id: Optional[str] = None
    branch: str = "Public"
    platform: str = "Win64"
    last_updated: int = 0                                   # Unix timestamp from the manifest
    depots: Dict[str, Tuple[str, int]] = field(default_factory=dict)  # depot -> (manifest, size)
    outcomes: Dict[Phase, PhaseOutcome] = field(default_factory=dict)
    archive: Optional[ArchiveDescriptor] = None
    upload: Optional[UploadResult] = None
    converted_url: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.path = Path(self.path)

    def outcome(self, phase: Phase) -> Optional[PhaseOutcome]:
        return self.outcomes.get(phase)

    def record(self, phase: Phase, outcome: PhaseOutcome) -> None:
        self.outcomes[phase] = outcome

    @property
    def final_url(self) -> Optional[str]:
        """Converted link when available, otherwise the host link."""
        if self.converted_url:
            return self.converted_url
        return self.upload.download_url if self.upload else None

    @property
    def last_phase(self) -> Optional[Phase]:
        """Latest phase with a recorded outcome."""
        reached = [phase for phase in PHASE_ORDER if phase in self.outcomes]
        return reached[-1] if reached else None


@dataclass
class BatchSettings:
    """Options for one batch run."""
    transform: bool = False
    archive: bool = True
    upload: bool = True
    convert_links: bool = False
    archive_format: str = "7z"
    archive_level: str = "normal"
    archive_password: str = ""
    output_dir: Optional[Path] = None
    archive_prefix: str = "[SHAREPACK]"
    max_parallel_archives: int = 4
    upload_max_retries: int = 3
    upload_retry_delay: float = 2.0

    @classmethod
    def from_config(cls, **overrides: Any) -> "BatchSettings":
        """Build settings from configuration, with keyword overrides."""
        from sharepack.config import env
        from sharepack.core.config import config

        output_dir = config.get("ARCHIVE_OUTPUT_DIR", "")
        values: Dict[str, Any] = {
            "transform": bool(config.get("BATCH_TRANSFORM", False)),
            "archive": bool(config.get("BATCH_ARCHIVE", True)),
            "upload": bool(config.get("BATCH_UPLOAD", True)),
            "convert_links": bool(config.get("CONVERT_LINKS", False)),
            "archive_format": config.get("ARCHIVE_FORMAT", "7z"),
            "archive_level": config.get("ARCHIVE_LEVEL", "normal"),
            "archive_password": config.get("ARCHIVE_PASSWORD", ""),
            "output_dir": Path(output_dir) if output_dir else env.TMP_DIR,
            "archive_prefix": config.get("ARCHIVE_PREFIX", "[SHAREPACK]"),
            "max_parallel_archives": int(config.get("MAX_PARALLEL_ARCHIVES", 4)),
            "upload_max_retries": int(config.get("UPLOAD_MAX_RETRIES", 3)),
            "upload_retry_delay": float(config.get("UPLOAD_RETRY_DELAY", 2)),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass(frozen=True)
class BatchProgress:
    """Progress event emitted to the caller of a batch run."""
    phase: str
    item_name: Optional[str] = None
    index: int = 0          # 1-based position within the phase
    total: int = 0
    percent: Optional[int] = None
    message: str = ""


@dataclass
class BatchResult:
    """Aggregated per-item outcomes of a batch run."""
    items: List[WorkItem]
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    cancelled: bool = False

    def _count(self, phase: Phase, status: OutcomeStatus) -> int:
        return sum(
            1 for item in self.items
            if item.outcome(phase) is not None and item.outcome(phase).status == status
        )

    @property
    def transformed_count(self) -> int:
        return self._count(Phase.TRANSFORM, OutcomeStatus.SUCCESS)

    @property
    def archived_count(self) -> int:
        return self._count(Phase.ARCHIVE, OutcomeStatus.SUCCESS)

    @property
    def uploaded_count(self) -> int:
        return self._count(Phase.UPLOAD, OutcomeStatus.SUCCESS)

    @property
    def upload_results(self) -> List[Tuple[WorkItem, UploadResult]]:
        return [(item, item.upload) for item in self.items if item.upload is not None]

    @property
    def failures(self) -> List[Tuple[str, str]]:
        """(item name, reason) for every failed phase."""
        failures = []
        for item in self.items:
            for phase in PHASE_ORDER:
                outcome = item.outcome(phase)
                if outcome is not None and outcome.status == OutcomeStatus.FAILED:
                    failures.append((item.name, f"{phase.value}: {outcome.reason}"))
        return failures

    @property
    def has_failures(self) -> bool:
        return bool(self.failures)

    @property
    def elapsed(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.time()
        return end - self.started_at

    def get_summary(self) -> str:
        parts = []
        labels = (
            (Phase.TRANSFORM, "transformed", "transform failed"),
            (Phase.ARCHIVE, "archived", "archive failed"),
            (Phase.UPLOAD, "uploaded", "upload failed"),
        )
        for phase, ok_label, _ in labels:
            count = self._count(phase, OutcomeStatus.SUCCESS)
            if count:
                parts.append(f"{count} {ok_label}")
        for phase, _, failed_label in labels:
            count = self._count(phase, OutcomeStatus.FAILED)
            if count:
                parts.append(f"{count} {failed_label}")
        skipped = sum(self._count(phase, OutcomeStatus.SKIPPED) for phase in PHASE_ORDER)
        cancelled = sum(
            1 for item in self.items
            if any(o.status == OutcomeStatus.CANCELLED for o in item.outcomes.values())
        )
        if skipped:
            parts.append(f"{skipped} skipped")
        if cancelled:
            parts.append(f"{cancelled} cancelled")
        return ", ".join(parts) if parts else "No operations performed"
