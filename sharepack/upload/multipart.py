"""Streaming multipart/form-data body for large file uploads.

``requests`` sends any object with ``read()`` and ``__len__`` as a raw body
with a ``Content-Length`` header, so the file is never held in memory. The
stream reports progress as bytes are consumed and aborts the request when
the cancel flag trips.
"""

import time
import uuid
from pathlib import Path
from threading import Lock
from typing import Callable, Optional

from tqdm import tqdm

from sharepack.core.logger import setup_logger
from sharepack.upload.errors import UploadCancelled, UploadError

logger = setup_logger(__name__)

CHUNK_SIZE = 80 * 1024
STATUS_INTERVAL = 0.5


def format_size(num_bytes: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if abs(num_bytes) < 1024:
            return f"{num_bytes:.1f} {unit}"
        num_bytes /= 1024
    return f"{num_bytes:.1f} TB"


def format_eta(seconds: float) -> str:
    seconds = int(max(0, seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


class BandwidthLimiter:
    """Bytes/sec cap split evenly between the streams currently sending."""

    def __init__(self, limit: int = 0):
        self.limit = max(0, int(limit))
        self._active = 0
        self._lock = Lock()

    def register(self) -> None:
        with self._lock:
            self._active += 1

    def unregister(self) -> None:
        with self._lock:
            self._active = max(0, self._active - 1)

    @property
    def per_stream_limit(self) -> float:
        with self._lock:
            active = max(1, self._active)
        return self.limit / active if self.limit else 0.0

    def delay_for(self, sent: int, elapsed: float) -> float:
        """Seconds to pause so ``sent`` bytes over ``elapsed`` stays under the cap."""
        limit = self.per_stream_limit
        if not limit:
            return 0.0
        return max(0.0, sent / limit - elapsed)


class MultipartFileStream:
    """File-like multipart body: form fields, one file part, closing boundary.

    Args:
        path: File to send.
        field_name: Form field for the file part.
        fields: Plain form fields written before the file part.
        progress_callback: Receives the fraction of file bytes read, 0.0-1.0.
        status_callback: ``(status, message)`` with speed and ETA every 0.5s.
        cancel_flag: Checked before every chunk; raises ``UploadCancelled``.
        limiter: Optional shared ``BandwidthLimiter``.
    """

    def __init__(
        self,
        path: Path,
        field_name: str = "file[]",
        fields: Optional[dict] = None,
        progress_callback: Optional[Callable[[float], None]] = None,
        status_callback: Optional[Callable[[str, Optional[str]], None]] = None,
        cancel_flag=None,
        limiter: Optional[BandwidthLimiter] = None,
        boundary: Optional[str] = None,
        show_progress: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.path = Path(path)
        self.file_name = self.path.name
        self.file_size = self.path.stat().st_size
        self.boundary = boundary or f"----sharepack{uuid.uuid4().hex}"
        self._progress_callback = progress_callback
        self._status_callback = status_callback
        self._cancel_flag = cancel_flag
        self._limiter = limiter
        self._clock = clock
        self._show_progress = show_progress

        self._header = self._build_header(field_name, fields or {})
        self._footer = f"\r\n--{self.boundary}--\r\n".encode("utf-8")

        self._stage = 0  # 0 header, 1 file, 2 footer, 3 done
        self._offset = 0
        self._fh = None
        self._pbar = None
        self._started: Optional[float] = None
        self._last_status = 0.0
        self.bytes_sent = 0

    def _build_header(self, field_name: str, fields: dict) -> bytes:
        lines = []
        for name, value in fields.items():
            lines.append(f"--{self.boundary}\r\n")
            lines.append(f'Content-Disposition: form-data; name="{name}"\r\n\r\n')
            lines.append(f"{value}\r\n")
        safe_name = self.file_name.replace('"', "'")
        lines.append(f"--{self.boundary}\r\n")
        lines.append(f'Content-Disposition: form-data; name="{field_name}"; filename="{safe_name}"\r\n')
        lines.append("Content-Type: application/octet-stream\r\n\r\n")
        return "".join(lines).encode("utf-8")

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"

    def __len__(self) -> int:
        return len(self._header) + self.file_size + len(self._footer)

    def read(self, size: int = -1) -> bytes:
        if self._cancel_flag is not None and self._cancel_flag.is_set():
            self.close()
            raise UploadCancelled(f"Upload of {self.file_name} cancelled")

        if size is None or size < 0:
            size = CHUNK_SIZE

        out = bytearray()
        while len(out) < size and self._stage < 3:
            need = size - len(out)
            if self._stage == 0:
                out += self._header[self._offset:self._offset + need]
                self._offset += need
                if self._offset >= len(self._header):
                    self._stage, self._offset = 1, 0
            elif self._stage == 1:
                data = self._read_file(min(need, CHUNK_SIZE))
                if not data:
                    self._finish_file()
                    self._stage = 2
                    continue
                out += data
            else:
                out += self._footer[self._offset:self._offset + need]
                self._offset += need
                if self._offset >= len(self._footer):
                    self._stage = 3
                    self.close()
        return bytes(out)

    def _read_file(self, size: int) -> bytes:
        if self._fh is None:
            self._open()
        remaining = self.file_size - self.bytes_sent
        if remaining <= 0:
            return b""
        data = self._fh.read(min(size, remaining))
        if data:
            self._on_bytes(len(data))
        return data

    def _open(self) -> None:
        self._fh = open(self.path, "rb")
        self._started = self._clock()
        self._last_status = self._started
        if self._limiter is not None:
            self._limiter.register()
        if self._show_progress:
            self._pbar = tqdm(total=self.file_size, unit='B', unit_scale=True, desc='Uploading')
        logger.debug(f"Streaming {self.file_name} ({format_size(self.file_size)})")

    def _finish_file(self) -> None:
        if self._fh is None:
            self._open()
        if self.bytes_sent < self.file_size:
            self.close()
            raise UploadError(
                f"{self.file_name} changed size during upload "
                f"({self.bytes_sent} of {self.file_size} bytes read)"
            )
        if self._progress_callback and self.file_size == 0:
            self._progress_callback(1.0)
        self._release_file()

    def _on_bytes(self, count: int) -> None:
        self.bytes_sent += count
        if self._pbar is not None:
            self._pbar.update(count)
        if self._progress_callback and self.file_size > 0:
            self._progress_callback(self.bytes_sent / self.file_size)

        now = self._clock()
        elapsed = now - self._started
        if self._status_callback and now - self._last_status >= STATUS_INTERVAL:
            self._last_status = now
            self._status_callback("uploading", self._status_line(elapsed))

        if self._limiter is not None:
            pause = min(self._limiter.delay_for(self.bytes_sent, elapsed), STATUS_INTERVAL)
            if pause > 0:
                if self._cancel_flag is not None:
                    self._cancel_flag.wait(timeout=pause)
                else:
                    time.sleep(pause)

    def _status_line(self, elapsed: float) -> str:
        speed = self.bytes_sent / elapsed if elapsed > 0 else 0.0
        percent = self.bytes_sent * 100.0 / self.file_size if self.file_size else 100.0
        line = (
            f"{percent:.1f}% - {format_size(self.bytes_sent)} / {format_size(self.file_size)} "
            f"@ {format_size(speed)}/s"
        )
        if speed > 0:
            line += f" - ETA {format_eta((self.file_size - self.bytes_sent) / speed)}"
        return line

    def _release_file(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
            if self._limiter is not None:
                self._limiter.unregister()
        if self._pbar is not None:
            self._pbar.close()
            self._pbar = None

    def close(self) -> None:
        self._release_file()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


__all__ = [
    "BandwidthLimiter",
    "CHUNK_SIZE",
    "MultipartFileStream",
    "format_eta",
    "format_size",
]
