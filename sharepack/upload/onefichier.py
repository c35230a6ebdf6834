"""1fichier upload client.

An upload is four steps:

1. ask the API for an upload server and id,
2. stream the file as multipart to that server,
3. read the redirect (or inline page) that answers the upload,
4. poll ``end.pl`` until the host has scanned the file and hands out links.

Every attempt gets a fresh server and session. Retrying whole uploads is the
caller's job; this client only retries the processing poll.
"""

import json
import re
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import parse_qs, urlparse

import requests

from sharepack.core.config import config
from sharepack.core.logger import setup_logger
from sharepack.core.models import UploadResult, UploadServer, UploadSession
from sharepack.core.retry import RetryPolicy, RetryState, fixed_delay, retry_call
from sharepack.upload.errors import (
    ProcessingPending,
    UploadCancelled,
    UploadError,
    UploadNetworkError,
    UploadProcessingTimeout,
    UploadRejected,
    UploadServerError,
)
from sharepack.upload.multipart import BandwidthLimiter, MultipartFileStream

logger = setup_logger(__name__)

HOST_URL = "https://1fichier.com/"
HOST_LINK_PATTERN = re.compile(r"https://1fichier\.com/\?(\w+)")
PENDING_MARKERS = ("Veuillez patienter", "Please wait")
NO_FILE_MARKER = "Pas de fichier"

# (connect, read). Uploads have no read timeout: the host answers only after
# the last byte arrives.
API_TIMEOUT = (10, 30)
UPLOAD_TIMEOUT = (30, None)

StatusCallback = Callable[[str, Optional[str]], None]
ProgressCallback = Callable[[float], None]


class OneFichierClient:
    """Uploads files to 1fichier and returns durable download links."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        poll_attempts: Optional[int] = None,
        poll_delay: Optional[float] = None,
        bandwidth_limit: Optional[int] = None,
        user_agent: Optional[str] = None,
        show_progress: bool = True,
    ):
        self.api_key = api_key if api_key is not None else config.get("ONEFICHIER_API_KEY", "")
        self.api_url = (api_url or config.get("ONEFICHIER_API_URL", "https://api.1fichier.com/v1")).rstrip("/")
        self.poll_attempts = int(poll_attempts if poll_attempts is not None else config.get("UPLOAD_POLL_ATTEMPTS", 10))
        self.poll_delay = float(poll_delay if poll_delay is not None else config.get("UPLOAD_POLL_DELAY", 30))
        limit = bandwidth_limit if bandwidth_limit is not None else config.get("UPLOAD_BANDWIDTH_LIMIT", 0)
        self.limiter = BandwidthLimiter(int(limit or 0))
        self.show_progress = show_progress

        self._session = session or requests.Session()
        self._session.headers.update({
            "User-Agent": user_agent or config.get("UPLOAD_USER_AGENT", "sharepack/1.0"),
        })
        if self.api_key:
            self._session.headers["Authorization"] = f"Bearer {self.api_key}"

    def close(self) -> None:
        self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    # -- step 1 --------------------------------------------------------------

    def get_upload_server(self) -> UploadServer:
        """Ask the API for a per-upload endpoint.

        Raises:
            UploadServerError: on any transport, HTTP or payload problem.
        """
        url = f"{self.api_url}/upload/get_upload_server.cgi"
        try:
            response = self._session.get(url, timeout=API_TIMEOUT)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise UploadServerError(f"Failed to get upload server: {e}") from e
        except ValueError as e:
            raise UploadServerError(f"Upload server response was not JSON: {e}") from e

        if not isinstance(data, dict) or not data.get("url") or not data.get("id"):
            raise UploadServerError(f"Upload server response missing url/id: {data!r}")

        server = UploadServer(url=str(data["url"]), upload_id=str(data["id"]))
        logger.debug(f"Upload server: {server.url} (id {server.upload_id})")
        return server

    # -- full upload ---------------------------------------------------------

    def upload(
        self,
        path: Path,
        progress_callback: Optional[ProgressCallback] = None,
        status_callback: Optional[StatusCallback] = None,
        cancel_flag=None,
    ) -> UploadResult:
        """Upload ``path`` and wait for its download link.

        ``progress_callback`` receives 0.0-1.0 while bytes are sent.
        ``status_callback(status, message)`` receives human-readable updates.

        Raises:
            UploadCancelled: the cancel flag tripped mid-transfer.
            OperationCancelled: the cancel flag tripped while polling.
            UploadError: any classified failure.
        """
        path = Path(path)
        if not path.is_file():
            raise UploadError(f"File not found: {path}")

        def status(state: str, message: Optional[str] = None) -> None:
            if status_callback:
                status_callback(state, message)

        status("connecting", "Requesting upload server")
        session = UploadSession(server=self.get_upload_server())

        logger.info(f"Uploading {path.name} to {session.server.url}")
        status("uploading", f"Uploading {path.name}")
        response = self._stream_file(path, session, progress_callback, status, cancel_flag)

        result = self._resolve_response(response, path, session, status, cancel_flag)
        status("complete", "Download link ready")
        logger.info(f"Upload complete: {path.name} -> {result.download_url}")
        return result

    # -- step 2 --------------------------------------------------------------

    def _stream_file(
        self,
        path: Path,
        session: UploadSession,
        progress_callback: Optional[ProgressCallback],
        status: StatusCallback,
        cancel_flag,
    ) -> requests.Response:
        url = f"https://{session.server.url}/upload.cgi?id={session.server.upload_id}"
        stream = MultipartFileStream(
            path,
            field_name="file[]",
            fields={"domain": "0"},
            progress_callback=progress_callback,
            status_callback=status,
            cancel_flag=cancel_flag,
            limiter=self.limiter,
            show_progress=self.show_progress,
        )
        try:
            response = self._session.post(
                url,
                data=stream,
                headers={"Content-Type": stream.content_type},
                allow_redirects=False,
                timeout=UPLOAD_TIMEOUT,
            )
        except requests.exceptions.RequestException as e:
            if cancel_flag is not None and cancel_flag.is_set():
                raise UploadCancelled(f"Upload of {path.name} cancelled") from e
            raise UploadNetworkError(f"Upload request failed: {e}") from e
        finally:
            session.bytes_sent = stream.bytes_sent
            stream.close()

        logger.debug(f"Upload response: HTTP {response.status_code}, {session.bytes_sent} bytes sent")
        return response

    # -- step 3 --------------------------------------------------------------

    def _resolve_response(
        self,
        response: requests.Response,
        path: Path,
        session: UploadSession,
        status: StatusCallback,
        cancel_flag,
    ) -> UploadResult:
        file_size = path.stat().st_size

        if response.status_code in (301, 302, 303):
            location = response.headers.get("Location", "")
            xid = parse_qs(urlparse(location).query).get("xid", [""])[0]
            if not xid:
                raise UploadRejected(f"Redirect did not include a session id: {location!r}")
            session.session_id = xid
            return self._await_download_link(session, path.name, file_size, status, cancel_flag)

        body = response.text or ""
        if response.status_code == 200:
            if NO_FILE_MARKER in body:
                raise UploadRejected("Upload failed: no file was received by the server")
            match = HOST_LINK_PATTERN.search(body)
            if match:
                return UploadResult(
                    download_url=match.group(0),
                    file_name=path.name,
                    file_size=file_size,
                    remote_id=match.group(1),
                )
            raise UploadRejected("Upload response did not contain a download link")

        snippet = body[:200].strip()
        raise UploadError(f"Upload failed: HTTP {response.status_code} {snippet}".rstrip())

    # -- step 4 --------------------------------------------------------------

    def _await_download_link(
        self,
        session: UploadSession,
        file_name: str,
        file_size: int,
        status: StatusCallback,
        cancel_flag,
    ) -> UploadResult:
        end_url = f"https://{session.server.url}/end.pl?xid={session.session_id}"
        max_attempts = self.poll_attempts

        def poll_download_link(state: RetryState) -> UploadResult:
            response = self._session.get(end_url, headers={"JSON": "1"}, timeout=API_TIMEOUT)
            body = response.text or ""
            if any(marker in body for marker in PENDING_MARKERS):
                status(
                    "processing",
                    f"1fichier is still processing upload... retrying ({state.attempt}/{max_attempts})",
                )
                raise ProcessingPending(body[:100])
            response.raise_for_status()
            return self._parse_links(body, session, file_name, file_size)

        policy = RetryPolicy(
            max_attempts=max_attempts,
            delay=fixed_delay(self.poll_delay),
            retry_on=(ProcessingPending, requests.exceptions.RequestException),
        )
        try:
            return retry_call(poll_download_link, policy, cancel_flag=cancel_flag)
        except ProcessingPending as e:
            raise UploadProcessingTimeout(
                f"1fichier did not finish processing after {max_attempts} attempts"
            ) from e
        except requests.exceptions.RequestException as e:
            raise UploadNetworkError(f"Failed to fetch download link: {e}") from e

    def _parse_links(self, body: str, session: UploadSession, file_name: str, file_size: int) -> UploadResult:
        try:
            data = json.loads(body)
        except ValueError:
            logger.debug("end.pl returned a non-JSON page; using the session link")
            return UploadResult(
                download_url=f"{HOST_URL}?{session.session_id}",
                file_name=file_name,
                file_size=file_size,
                remote_id=session.session_id,
            )

        links = data.get("links") if isinstance(data, dict) else None
        if not links or not isinstance(links[0], dict) or not links[0].get("download"):
            raise UploadRejected(f"Processing response had no download link: {body[:200]}")

        link = links[0]
        try:
            size = int(link.get("size") or file_size)
        except (TypeError, ValueError):
            size = file_size
        return UploadResult(
            download_url=link["download"],
            file_name=link.get("filename") or file_name,
            file_size=size,
            remote_id=session.session_id,
        )


def is_host_url(url: str) -> bool:
    return bool(url) and "1fichier.com" in url.lower()
