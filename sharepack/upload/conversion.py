"""Conversion of 1fichier links into direct-download links.

The conversion service needs the host to finish scanning a file first, so
fresh uploads usually answer "not ready" a few times. ``LinkConverter``
keeps asking with a growing delay and falls back to the original link when
it runs out of attempts or is cancelled.
"""

from typing import Callable, Optional
from urllib.parse import urlparse

import requests

from sharepack.core.config import config
from sharepack.core.logger import setup_logger
from sharepack.core.retry import (
    OperationCancelled,
    RetryPolicy,
    RetryState,
    linear_delay,
    retry_call,
)
from sharepack.upload.errors import ConversionFailed, ConversionPending

logger = setup_logger(__name__)

DEFAULT_API_URL = "https://pydrive.harryeffingpotter.com/convert-1fichier"
NOT_READY_MARKERS = ("link_down", "wait", "still processing")

StatusCallback = Callable[[str, Optional[str]], None]


def force_https(url: str) -> str:
    if url.lower().startswith("http://"):
        return "https://" + url[len("http://"):]
    return url


def is_converted_url(url: str, api_url: Optional[str] = None) -> bool:
    """True if ``url`` points at the conversion service's host."""
    host = urlparse(api_url or config.get("CONVERSION_API_URL", DEFAULT_API_URL)).netloc.lower()
    return bool(url) and bool(host) and host in url.lower()


class LinkConverter:
    """Converts host links through the conversion service. Never raises."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        delay_step: Optional[float] = None,
        max_delay: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        def setting(value, key, default):
            return value if value is not None else config.get(key, default)

        self.api_url = setting(api_url, "CONVERSION_API_URL", DEFAULT_API_URL)
        self.max_attempts = int(setting(max_attempts, "CONVERSION_MAX_ATTEMPTS", 30))
        self.base_delay = float(setting(base_delay, "CONVERSION_BASE_DELAY", 10))
        self.delay_step = float(setting(delay_step, "CONVERSION_DELAY_STEP", 2))
        self.max_delay = float(setting(max_delay, "CONVERSION_MAX_DELAY", 60))
        self.timeout = float(setting(timeout, "CONVERSION_TIMEOUT", 30))
        self._session = session or requests.Session()
        self._not_ready_delay = linear_delay(self.base_delay, self.delay_step, self.max_delay)

    def close(self) -> None:
        self._session.close()

    def _delay(self, attempt: int, error: BaseException) -> float:
        if isinstance(error, ConversionPending):
            return self._not_ready_delay(attempt, error)
        return self.base_delay

    def convert(
        self,
        reference: str,
        status_callback: Optional[StatusCallback] = None,
        cancel_flag=None,
    ) -> str:
        """Return the converted link, or ``reference`` unchanged on failure."""
        if not reference:
            return reference

        link = force_https(reference)
        max_attempts = self.max_attempts

        def status(state: str, message: str) -> None:
            if status_callback:
                status_callback(state, message)

        def convert_link(state: RetryState) -> str:
            status("converting", f"Converting... (attempt {state.attempt}/{max_attempts})")
            logger.debug(f"Converting {link} (attempt {state.attempt}/{max_attempts})")
            response = self._session.post(self.api_url, json={"link": link}, timeout=self.timeout)

            if response.ok:
                try:
                    data = response.json()
                except ValueError as e:
                    raise ConversionFailed(f"Conversion response was not JSON: {e}") from e
                converted = data.get("link") if isinstance(data, dict) else None
                if not converted:
                    raise ConversionFailed("Conversion response had no link")
                return converted

            body = response.text or ""
            logger.debug(f"Conversion failed with HTTP {response.status_code}: {body[:200]}")
            if any(marker in body.lower() for marker in NOT_READY_MARKERS):
                raise ConversionPending(body[:200])
            raise ConversionFailed(f"HTTP {response.status_code}")

        def countdown(remaining: int, state: RetryState) -> None:
            if isinstance(state.last_error, ConversionPending):
                message = f"1fichier scanning... retry in {remaining}s (attempt {state.attempt}/{max_attempts})"
            else:
                message = f"Error, retry in {remaining}s (attempt {state.attempt}/{max_attempts})"
            status("waiting", message)

        policy = RetryPolicy(max_attempts=max_attempts, delay=self._delay, retry_on=(Exception,))
        try:
            converted = retry_call(convert_link, policy, cancel_flag=cancel_flag, on_tick=countdown)
        except OperationCancelled:
            logger.info(f"Conversion cancelled for {reference}")
            return reference
        except Exception as e:
            logger.warning(f"Conversion gave up after {max_attempts} attempts for {reference}: {e}")
            return reference

        logger.info(f"Converted {reference} -> {converted}")
        return converted
