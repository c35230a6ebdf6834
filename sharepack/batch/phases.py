"""Phase executors for a batch run.

Each executor receives only the items eligible for its phase, records one
``PhaseOutcome`` per item and never lets an exception escape a single
item's processing. Cleanup is not gated by cancellation; every other
phase checks the cancel-all signal before touching an item.
"""

from __future__ import annotations

import re
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from sharepack.batch.cleanup import clean_directory
from sharepack.batch.collaborators import (
    ArchiveCancelled,
    ArchiveOperation,
    CrackOperation,
    TransformTarget,
)
from sharepack.core.cancellation import BatchCancellation
from sharepack.core.logger import setup_logger
from sharepack.core.models import (
    ArchiveDescriptor,
    BatchProgress,
    Phase,
    PhaseOutcome,
    WorkItem,
)
from sharepack.core.progress import ProgressReporter
from sharepack.core.retry import OperationCancelled, RetryPolicy, RetryState, retry_call

logger = setup_logger(__name__)

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def safe_file_name(name: str) -> str:
    """Strip characters that are not allowed in file names."""
    cleaned = _UNSAFE_CHARS.sub("_", name).strip().rstrip(".")
    return cleaned or "archive"


@dataclass
class PhaseContext:
    """What every executor needs from the orchestrator."""
    cancellation: BatchCancellation
    emit: Callable[[BatchProgress], None]
    min_progress_interval: Optional[float] = None

    def notify(self, phase: Phase, item: WorkItem, position: int, total: int, message: str) -> None:
        self.emit(BatchProgress(phase.value, item.name, position, total, None, message))

    def reporter_for(self, phase: Phase, items: List[WorkItem]) -> ProgressReporter:
        """Progress reporter whose contexts are item ids of ``items``."""
        index: Dict[str, Tuple[int, WorkItem]] = {
            item.item_id: (position, item) for position, item in enumerate(items, 1)
        }
        total = len(items)

        def sink(percent: int, item_id: str) -> None:
            position, item = index[item_id]
            self.emit(BatchProgress(phase.value, item.name, position, total, percent))

        return ProgressReporter(sink, self.min_progress_interval)


class CleanupExecutor:
    """Best-effort cleanup. Always records Success; problems become warnings."""

    phase = Phase.CLEANUP

    def run(self, items: List[WorkItem], ctx: PhaseContext) -> None:
        total = len(items)
        for position, item in enumerate(items, 1):
            ctx.notify(self.phase, item, position, total, f"Cleaning {item.name}")
            try:
                report = clean_directory(item.path)
                item.warnings.extend(report.errors)
                for error in report.errors:
                    logger.warning(f"Item {item.item_id}: cleanup: {error}")
            except Exception as e:
                logger.error_trace(f"Cleanup failed for {item.name}: {e}")
                item.warnings.append(f"Cleanup failed: {e}")
            item.record(self.phase, PhaseOutcome.success())


class TransformExecutor:
    """Runs the transform collaborator one item at a time."""

    phase = Phase.TRANSFORM

    def __init__(self, operation: Optional[CrackOperation], target: Optional[TransformTarget] = None):
        self.operation = operation
        self.target = target or TransformTarget()

    def run(self, items: List[WorkItem], ctx: PhaseContext) -> None:
        total = len(items)
        for position, item in enumerate(items, 1):
            if ctx.cancellation.is_cancelled(item.item_id):
                logger.info(f"Item {item.item_id}: transform cancelled before starting")
                item.record(self.phase, PhaseOutcome.cancelled())
                continue

            ctx.cancellation.begin_item(item.item_id)
            try:
                item.record(self.phase, self._transform(item, position, total, ctx))
            except Exception as e:
                logger.error_trace(f"Transform failed for {item.name}: {e}")
                item.record(self.phase, PhaseOutcome.failed(str(e)))
            finally:
                ctx.cancellation.finish_item(item.item_id)

    def _transform(self, item: WorkItem, position: int, total: int, ctx: PhaseContext) -> PhaseOutcome:
        if not item.app_id:
            return PhaseOutcome.failed("No AppID")
        if self.operation is None:
            return PhaseOutcome.failed("No transform operation configured")

        def status_callback(status: str, message: Optional[str] = None) -> None:
            ctx.notify(self.phase, item, position, total, message or status)

        ctx.notify(self.phase, item, position, total, f"Transforming {item.name}")
        with self.target.hold(item):
            result = self.operation.crack(item, self.target, status_callback)

        if not result.success:
            return PhaseOutcome.failed(result.error or "Transform failed")
        logger.info(f"Item {item.item_id}: transform complete")
        return PhaseOutcome.success()


class ArchiveExecutor:
    """Archives all eligible items in parallel, bounded by ``max_workers``."""

    phase = Phase.ARCHIVE

    def __init__(
        self,
        operation: ArchiveOperation,
        output_dir: Path,
        prefix: str = "",
        max_workers: int = 4,
    ):
        self.operation = operation
        self.output_dir = Path(output_dir)
        self.prefix = prefix
        self.max_workers = max(1, int(max_workers))

    def archive_path(self, item: WorkItem, suffix: Optional[str] = None) -> Path:
        name = safe_file_name(item.name)
        if self.prefix:
            name = f"{self.prefix} {name}"
        if suffix:
            name = f"{name} ({suffix})"
        return self.output_dir / f"{name}{self.operation.extension}"

    def assign_outputs(self, items: List[WorkItem]) -> Dict[str, Path]:
        """One archive path per item; folders sharing a name get their item id appended."""
        outputs: Dict[str, Path] = {}
        taken = set()
        for item in items:
            output = self.archive_path(item)
            if output.name.lower() in taken:
                output = self.archive_path(item, item.item_id)
                counter = 2
                while output.name.lower() in taken:
                    output = self.archive_path(item, f"{item.item_id}-{counter}")
                    counter += 1
                logger.warning(f"Item {item.item_id}: archive name already used, writing {output.name}")
            taken.add(output.name.lower())
            outputs[item.item_id] = output
        return outputs

    def run(self, items: List[WorkItem], ctx: PhaseContext) -> None:
        pending = []
        for item in items:
            if ctx.cancellation.is_cancelled(item.item_id):
                item.record(self.phase, PhaseOutcome.cancelled())
            else:
                pending.append(item)
        if not pending:
            return

        self.output_dir.mkdir(parents=True, exist_ok=True)
        outputs = self.assign_outputs(pending)
        reporter = ctx.reporter_for(self.phase, items)
        workers = min(self.max_workers, len(pending))
        logger.info(f"Archiving {len(pending)} item(s) with {workers} worker(s)")

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="Archive") as executor:
            futures = {
                executor.submit(self._archive_item, item, outputs[item.item_id], ctx, reporter): item
                for item in pending
            }
            for future in as_completed(futures):
                item = futures[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    logger.error_trace(f"Archive failed for {item.name}: {e}")
                    outcome = PhaseOutcome.failed(str(e))
                item.record(self.phase, outcome)

    def _archive_item(
        self,
        item: WorkItem,
        output: Path,
        ctx: PhaseContext,
        reporter: ProgressReporter,
    ) -> PhaseOutcome:
        flag = ctx.cancellation.flag_for(item.item_id)
        if flag.is_cancelled():
            return PhaseOutcome.cancelled()
        if not item.path.is_dir():
            return PhaseOutcome.failed(f"Source directory not found: {item.path}")

        if output.exists():
            output.unlink()

        started = time.monotonic()
        reporter.report(0, item.item_id)
        try:
            result = self.operation.compress(
                item.path,
                output,
                progress_callback=lambda percent: reporter.report(percent, item.item_id),
                cancel_flag=flag,
            )
        except ArchiveCancelled:
            logger.info(f"Item {item.item_id}: archive cancelled")
            return PhaseOutcome.cancelled()

        if not result.success:
            return PhaseOutcome.failed(result.error or "Archive failed")
        if not output.is_file():
            return PhaseOutcome.failed("Archive was not created")

        item.archive = ArchiveDescriptor(
            path=output,
            size_bytes=output.stat().st_size,
            duration=time.monotonic() - started,
        )
        reporter.report(100, item.item_id)
        ctx.cancellation.finish_item(item.item_id)
        logger.info(
            f"Item {item.item_id}: archived to {output.name} "
            f"({item.archive.size_bytes} bytes, {item.archive.duration:.1f}s)"
        )
        return PhaseOutcome.success()


class UploadExecutor:
    """Uploads archives one at a time with a bounded, interruptible retry loop."""

    phase = Phase.UPLOAD

    def __init__(self, client, max_attempts: int = 3, retry_delay: float = 2.0):
        self.client = client
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay = float(retry_delay)

    def run(self, items: List[WorkItem], ctx: PhaseContext) -> None:
        reporter = ctx.reporter_for(self.phase, items)
        total = len(items)
        for position, item in enumerate(items, 1):
            if ctx.cancellation.is_cancelled(item.item_id):
                logger.info(f"Item {item.item_id}: upload cancelled before starting")
                item.record(self.phase, PhaseOutcome.cancelled())
                continue

            ctx.cancellation.begin_item(item.item_id)
            try:
                item.record(self.phase, self._upload_item(item, position, total, ctx, reporter))
            except Exception as e:
                logger.error_trace(f"Upload failed for {item.name}: {e}")
                item.record(self.phase, PhaseOutcome.failed(str(e)))
            finally:
                ctx.cancellation.finish_item(item.item_id)

    def _upload_item(
        self,
        item: WorkItem,
        position: int,
        total: int,
        ctx: PhaseContext,
        reporter: ProgressReporter,
    ) -> PhaseOutcome:
        if item.archive is None or not Path(item.archive.path).is_file():
            return PhaseOutcome.failed("No archive")

        flag = ctx.cancellation.flag_for(item.item_id)
        max_attempts = self.max_attempts

        def status_callback(status: str, message: Optional[str] = None) -> None:
            ctx.notify(self.phase, item, position, total, message or status)

        def upload_archive(state: RetryState):
            reporter.reset(item.item_id)
            ctx.notify(self.phase, item, position, total, f"Uploading (attempt {state.attempt}/{max_attempts})")
            return self.client.upload(
                item.archive.path,
                progress_callback=lambda fraction: reporter.report(fraction * 100, item.item_id),
                status_callback=status_callback,
                cancel_flag=flag,
            )

        def countdown(remaining: int, state: RetryState) -> None:
            ctx.notify(self.phase, item, position, total, f"Retry in {remaining}s (attempt {state.attempt}/{max_attempts})")

        def on_retry(state: RetryState) -> None:
            logger.warning(f"Item {item.item_id}: upload attempt {state.attempt}/{max_attempts} failed: {state.last_error}")

        policy = RetryPolicy(
            max_attempts=max_attempts,
            delay=lambda attempt, error: attempt * self.retry_delay,
        )
        try:
            result = retry_call(upload_archive, policy, cancel_flag=flag, on_retry=on_retry, on_tick=countdown)
        except OperationCancelled:
            if flag.is_cancelled():
                logger.info(f"Item {item.item_id}: upload cancelled")
                return PhaseOutcome.cancelled()
            logger.info(f"Item {item.item_id}: upload skipped")
            return PhaseOutcome.skipped()
        except Exception as e:
            logger.error(f"Item {item.item_id}: upload failed after {max_attempts} attempt(s): {e}")
            return PhaseOutcome.failed(str(e) or type(e).__name__)

        item.upload = result
        reporter.report(100, item.item_id)
        logger.info(f"Item {item.item_id}: uploaded -> {result.download_url}")
        return PhaseOutcome.success()
