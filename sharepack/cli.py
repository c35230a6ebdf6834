"""Command line entry point.

    sharepack run DIR [DIR ...]   clean, transform, archive and upload directories
    sharepack upload FILE         upload one file
    sharepack convert URL         convert one host link
"""

import argparse
import sys
import threading
from pathlib import Path
from typing import List, Optional, Sequence

from sharepack import __version__
from sharepack.batch.collaborators import CommandCrackOperation
from sharepack.batch.orchestrator import BatchOrchestrator
from sharepack.batch.report import format_forum_links, format_text_report
from sharepack.core import settings_registry
from sharepack.core.config import config
from sharepack.core.logger import setup_logger
from sharepack.core.models import BatchProgress, BatchSettings, WorkItem
from sharepack.core.progress import LoggingProgressSink, ProgressReporter
from sharepack.core.retry import OperationCancelled
from sharepack.upload.errors import UploadError

logger = setup_logger(__name__)


def build_work_items(paths: Sequence[Path], app_id: Optional[str] = None) -> List[WorkItem]:
    items = []
    for index, path in enumerate(paths, 1):
        path = Path(path).expanduser().resolve()
        items.append(WorkItem(item_id=str(index), name=path.name, path=path, app_id=app_id))
    return items


class _ProgressPrinter:
    """Routes batch events to the log: percentages through a logging sink."""

    def __init__(self):
        self._sink = LoggingProgressSink(label="Progress")

    def __call__(self, event: BatchProgress) -> None:
        label = f"[{event.phase}]"
        if event.item_name:
            label += f" {event.item_name} ({event.index}/{event.total})"
        if event.percent is not None:
            self._sink(event.percent, label)
        elif event.message:
            logger.info(f"{label} {event.message}")


def _status_logger(status: str, message: Optional[str] = None) -> None:
    logger.info(message or status)


def _run_with_interrupt(target, on_interrupt) -> None:
    """Run ``target`` in a worker thread; Ctrl+C calls ``on_interrupt`` instead of killing it."""
    worker = threading.Thread(target=target, name="Batch", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(timeout=0.5)
        except KeyboardInterrupt:
            on_interrupt()


def cmd_run(args: argparse.Namespace) -> int:
    settings = BatchSettings.from_config(
        transform=True if args.transform_command else None,
        archive=False if args.no_archive else None,
        upload=False if args.no_upload else None,
        convert_links=True if args.convert else None,
        archive_format=args.format,
        archive_level=args.level,
        archive_password=args.password,
        output_dir=args.output_dir,
        max_parallel_archives=args.parallel,
    )
    logger.debug("Effective settings:")
    for line in settings_registry.describe_settings():
        logger.debug(f"  {line}")

    crack = None
    if args.transform_command:
        crack = CommandCrackOperation(args.transform_command, float(config.get("TRANSFORM_TIMEOUT", 600)))

    orchestrator = BatchOrchestrator(
        settings=settings,
        crack_operation=crack,
        progress_callback=_ProgressPrinter(),
    )
    items = build_work_items(args.paths, args.app_id)
    outcome = {}

    def interrupt() -> None:
        if orchestrator.cancellation.cancel_all_requested:
            raise KeyboardInterrupt
        logger.warning("Interrupted: cancelling remaining items (press Ctrl+C again to force quit)")
        orchestrator.cancel_all()

    _run_with_interrupt(lambda: outcome.setdefault("result", orchestrator.run(items)), interrupt)

    result = outcome.get("result")
    if result is None:
        logger.error("Batch did not produce a result")
        return 1
    print(format_text_report(result))
    links = format_forum_links(result)
    if links:
        print()
        print(links)
    return 1 if result.has_failures else 0


def cmd_upload(args: argparse.Namespace) -> int:
    from sharepack.upload.onefichier import OneFichierClient

    cancel_flag = threading.Event()
    reporter = ProgressReporter(LoggingProgressSink(label="Uploading"))
    outcome = {}

    def upload() -> None:
        with OneFichierClient() as client:
            try:
                outcome["result"] = client.upload(
                    args.file,
                    progress_callback=lambda fraction: reporter.report(fraction * 100, args.file.name),
                    status_callback=_status_logger,
                    cancel_flag=cancel_flag,
                )
            except OperationCancelled:
                logger.warning("Upload cancelled")
            except UploadError as e:
                logger.error(f"Upload failed: {e}")

    _run_with_interrupt(upload, cancel_flag.set)
    result = outcome.get("result")
    if result is None:
        return 1
    print(result.download_url)
    return 0


def cmd_convert(args: argparse.Namespace) -> int:
    from sharepack.upload.conversion import LinkConverter

    cancel_flag = threading.Event()
    outcome = {}

    def convert() -> None:
        outcome["url"] = LinkConverter().convert(args.url, status_callback=_status_logger, cancel_flag=cancel_flag)

    _run_with_interrupt(convert, cancel_flag.set)
    converted = outcome.get("url", args.url)
    print(converted)
    return 0 if converted != args.url else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sharepack",
        description="Clean, archive and upload directories to 1fichier",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run the batch pipeline over directories")
    run.add_argument("paths", nargs="+", type=Path, help="Directories to process")
    run.add_argument("--no-archive", action="store_true", help="Skip the archive phase")
    run.add_argument("--no-upload", action="store_true", help="Skip the upload phase")
    run.add_argument("--convert", action="store_true", help="Convert uploaded links")
    run.add_argument(
        "--transform-command",
        help="Run `<command> <dir> <app_id>` on each directory before archiving",
    )
    run.add_argument("--app-id", help="App id passed to the transform command")
    run.add_argument("--format", choices=["7z", "zip"], help="Archive format")
    run.add_argument(
        "--level",
        choices=["none", "fast", "normal", "maximum", "ultra"],
        help="Compression level",
    )
    run.add_argument("--password", help="Archive password")
    run.add_argument("--output-dir", type=Path, help="Where to write archives")
    run.add_argument("--parallel", type=int, help="Parallel archive jobs")
    run.set_defaults(func=cmd_run)

    upload = subparsers.add_parser("upload", help="Upload a single file")
    upload.add_argument("file", type=Path)
    upload.set_defaults(func=cmd_upload)

    convert = subparsers.add_parser("convert", help="Convert a single host link")
    convert.add_argument("url")
    convert.set_defaults(func=cmd_convert)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except KeyboardInterrupt:
        logger.warning("Aborted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
