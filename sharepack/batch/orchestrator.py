"""Batch orchestrator: runs Cleanup -> Transform -> Archive -> Upload.

Only items whose previous phase succeeded move on. Items stopped by a
cancel-all are recorded as Cancelled in every later enabled phase so the
final report shows where each item stopped and why.
"""

from __future__ import annotations

import time
from enum import Enum
from threading import Lock
from typing import Callable, List, Optional, Sequence

from sharepack.batch.collaborators import (
    ArchiveOperation,
    CommandCrackOperation,
    CrackOperation,
    TransformTarget,
    get_archive_operation,
)
from sharepack.batch.phases import (
    ArchiveExecutor,
    CleanupExecutor,
    PhaseContext,
    TransformExecutor,
    UploadExecutor,
)
from sharepack.core.cancellation import BatchCancellation
from sharepack.core.config import config
from sharepack.core.logger import setup_logger
from sharepack.core.models import (
    BatchProgress,
    BatchResult,
    BatchSettings,
    OutcomeStatus,
    Phase,
    PhaseOutcome,
    WorkItem,
)

logger = setup_logger(__name__)


class BatchState(str, Enum):
    IDLE = "idle"
    CLEANUP = "cleanup"
    TRANSFORM = "transform"
    ARCHIVE = "archive"
    UPLOAD = "upload"
    DONE = "done"
    CANCELLED = "cancelled"


class BatchOrchestrator:
    """Runs one batch of work items through the pipeline.

    Collaborators default to the configured ones; pass them explicitly to
    swap in other implementations. ``progress_callback`` receives
    ``BatchProgress`` events from the coordinating thread and from archive
    workers, so it must be thread-safe.
    """

    def __init__(
        self,
        settings: Optional[BatchSettings] = None,
        crack_operation: Optional[CrackOperation] = None,
        archive_operation: Optional[ArchiveOperation] = None,
        upload_client=None,
        link_converter=None,
        progress_callback: Optional[Callable[[BatchProgress], None]] = None,
        transform_target: Optional[TransformTarget] = None,
        min_progress_interval: Optional[float] = None,
    ):
        self.settings = settings or BatchSettings.from_config()
        self._crack_operation = crack_operation
        self._archive_operation = archive_operation
        self._upload_client = upload_client
        self._link_converter = link_converter
        self._progress_callback = progress_callback
        self._transform_target = transform_target or TransformTarget()
        self._min_progress_interval = min_progress_interval

        self.cancellation = BatchCancellation()
        self._state = BatchState.IDLE
        self._state_lock = Lock()

    # -- operator actions ----------------------------------------------------

    @property
    def state(self) -> BatchState:
        with self._state_lock:
            return self._state

    def cancel_all(self) -> None:
        """Cancel every unfinished item; the state reads CANCELLED from here on."""
        self.cancellation.cancel_all()
        with self._state_lock:
            if self._state == BatchState.DONE:
                return
            self._state = BatchState.CANCELLED
        logger.debug(f"Batch state: {BatchState.CANCELLED.value}")

    def skip_current(self, item_id: Optional[str] = None) -> bool:
        return self.cancellation.skip_current(item_id)

    # -- collaborators -------------------------------------------------------

    def _crack(self) -> Optional[CrackOperation]:
        if self._crack_operation is None:
            command = config.get("TRANSFORM_COMMAND", "")
            if command:
                self._crack_operation = CommandCrackOperation(command, float(config.get("TRANSFORM_TIMEOUT", 600)))
        return self._crack_operation

    def _archiver(self) -> ArchiveOperation:
        if self._archive_operation is None:
            self._archive_operation = get_archive_operation(
                self.settings.archive_format,
                self.settings.archive_level,
                self.settings.archive_password,
            )
        return self._archive_operation

    def _uploader(self):
        if self._upload_client is None:
            from sharepack.upload.onefichier import OneFichierClient
            self._upload_client = OneFichierClient()
        return self._upload_client

    def _converter(self):
        if self._link_converter is None:
            from sharepack.upload.conversion import LinkConverter
            self._link_converter = LinkConverter()
        return self._link_converter

    # -- run -----------------------------------------------------------------

    def _set_state(self, state: BatchState) -> None:
        with self._state_lock:
            self._state = state
        logger.debug(f"Batch state: {state.value}")

    def _enter_phase(self, phase: Phase) -> None:
        with self._state_lock:
            if self._state == BatchState.CANCELLED:
                return
            self._state = BatchState(phase.value)
        logger.debug(f"Batch state: {phase.value}")

    def _emit(self, event: BatchProgress) -> None:
        if not self._progress_callback:
            return
        try:
            self._progress_callback(event)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def _executor_for(self, phase: Phase):
        settings = self.settings
        if phase == Phase.TRANSFORM:
            return TransformExecutor(self._crack(), self._transform_target)
        if phase == Phase.ARCHIVE:
            return ArchiveExecutor(
                self._archiver(),
                settings.output_dir,
                settings.archive_prefix,
                settings.max_parallel_archives,
            )
        if phase == Phase.UPLOAD:
            return UploadExecutor(self._uploader(), settings.upload_max_retries, settings.upload_retry_delay)
        return CleanupExecutor()

    def _enabled_phases(self) -> List[Phase]:
        toggles = {
            Phase.TRANSFORM: self.settings.transform,
            Phase.ARCHIVE: self.settings.archive,
            Phase.UPLOAD: self.settings.upload,
        }
        return [Phase.CLEANUP] + [phase for phase, enabled in toggles.items() if enabled]

    def _eligible(self, items: Sequence[WorkItem], previous: Phase, phase: Phase) -> List[WorkItem]:
        """Items whose ``previous`` outcome is success; carries cancellations forward."""
        eligible = []
        for item in items:
            outcome = item.outcome(previous)
            if outcome is None:
                continue
            if outcome.status == OutcomeStatus.CANCELLED:
                item.record(phase, PhaseOutcome.cancelled(outcome.reason or "Cancelled"))
            elif outcome.ok:
                eligible.append(item)
        return eligible

    def run(self, items: Sequence[WorkItem]) -> BatchResult:
        """Process ``items`` and return the aggregated result. Never raises per item."""
        items = list(items)
        result = BatchResult(items=items)
        ctx = PhaseContext(self.cancellation, self._emit, self._min_progress_interval)
        logger.info(f"Starting batch of {len(items)} item(s)")

        previous: Optional[Phase] = None
        for phase in self._enabled_phases():
            self._enter_phase(phase)
            self.cancellation.begin_phase(phase)
            phase_items = items if previous is None else self._eligible(items, previous, phase)
            self._emit(BatchProgress(phase.value, total=len(phase_items), message=f"Starting {phase.value}"))

            if phase_items:
                try:
                    self._executor_for(phase).run(phase_items, ctx)
                except Exception as e:
                    # Executors classify per item; this only guards collaborator construction.
                    logger.error_trace(f"{phase.value} phase failed: {e}")
                    for item in phase_items:
                        if item.outcome(phase) is None:
                            item.record(phase, PhaseOutcome.failed(str(e)))
            previous = phase

        if self.settings.convert_links and self.settings.upload:
            self._convert_links(items)

        result.cancelled = self.cancellation.cancel_all_requested
        result.finished_at = time.time()
        self._set_state(BatchState.CANCELLED if result.cancelled else BatchState.DONE)
        logger.info(f"Batch finished in {result.elapsed:.1f}s: {result.get_summary()}")
        return result

    def _convert_links(self, items: Sequence[WorkItem]) -> None:
        uploaded = [item for item in items if item.upload is not None]
        if not uploaded:
            return
        converter = self._converter()
        total = len(uploaded)
        for position, item in enumerate(uploaded, 1):
            flag = self.cancellation.flag_for(item.item_id)
            if flag.is_cancelled():
                continue

            def status_callback(status: str, message: Optional[str] = None, item=item, position=position) -> None:
                self._emit(BatchProgress("convert", item.name, position, total, None, message or status))

            original = item.upload.download_url
            converted = converter.convert(original, status_callback=status_callback, cancel_flag=flag)
            if converted and converted != original:
                item.converted_url = converted
