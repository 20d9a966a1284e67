"""
HTTP access to the remote weight repository

Blocking requests-based client; callers on the event loop run it in a worker
thread. Transient failures (5xx, connection errors, timeouts) are retried with
exponential backoff, everything else propagates immediately.
"""

import time
from typing import BinaryIO, Callable, Optional

import requests

from lm_runtime.benchmark_utils import BenchmarkAwareLogger
from lm_runtime.config_loader import Config, get_config
from lm_runtime.errors import NetworkError

_logger = BenchmarkAwareLogger("http")

# (loaded_bytes, total_bytes, speed_bytes_per_second)
ByteProgress = Callable[[int, int, float], None]

_TRANSIENT_EXCEPTIONS = (
    requests.ConnectionError,
    requests.Timeout,
    requests.exceptions.ChunkedEncodingError,
)


def is_transient_status(status: int) -> bool:
    return status >= 500


class HttpClient:
    """Retrying client for HEAD/GET of versioned repository files"""

    def __init__(
        self,
        config: Optional[Config] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or get_config()
        self.session = session or requests.Session()
        self._sleep = sleep

    def _backoff(self, attempt: int) -> None:
        delay = self.config.get_retry_base_delay_seconds() * (2 ** attempt)
        if delay > 0:
            self._sleep(delay)

    def get_with_retry(self, url: str, stream: bool = False) -> requests.Response:
        """
        GET a URL, retrying transient failures

        Raises:
            NetworkError: transient=True once retries are exhausted, transient=False for 4xx
        """
        attempts = self.config.retry_attempts
        for attempt in range(attempts):
            last_try = attempt == attempts - 1
            try:
                response = self.session.get(url, stream=stream, timeout=self.config.request_timeout_s)
            except _TRANSIENT_EXCEPTIONS as exc:
                if last_try:
                    raise NetworkError(url, str(exc), transient=True) from exc
                _logger.warning("request failed, retrying", url=url, attempt=attempt + 1, error=exc)
                self._backoff(attempt)
                continue

            if response.ok:
                return response

            response.close()
            if is_transient_status(response.status_code) and not last_try:
                _logger.warning("server error, retrying", url=url, status=response.status_code, attempt=attempt + 1)
                self._backoff(attempt)
                continue

            raise NetworkError(
                url,
                f"HTTP {response.status_code} {response.reason}",
                status=response.status_code,
                transient=is_transient_status(response.status_code),
            )

        raise NetworkError(url, "no attempts made", transient=True)

    def content_length(self, url: str) -> int:
        """
        Probe the byte size of a remote file

        HEAD is preferred so large files are not fetched just to learn their
        size; when HEAD is refused the GET response headers are used instead.
        Returns 0 when the size cannot be determined.
        """
        attempts = self.config.retry_attempts
        for attempt in range(attempts):
            try:
                head = self.session.head(url, allow_redirects=True, timeout=self.config.request_timeout_s)
            except _TRANSIENT_EXCEPTIONS:
                if attempt < attempts - 1:
                    self._backoff(attempt)
                    continue
                break

            if head.ok:
                return _size_from_headers(head.headers)
            if is_transient_status(head.status_code) and attempt < attempts - 1:
                self._backoff(attempt)
                continue
            break

        try:
            response = self.get_with_retry(url, stream=True)
        except NetworkError as exc:
            _logger.debug("size probe failed", url=url, error=exc.reason)
            return 0
        try:
            return _size_from_headers(response.headers)
        finally:
            response.close()

    def download(self, url: str, sink: BinaryIO, on_progress: Optional[ByteProgress] = None) -> int:
        """
        Stream a remote file into ``sink``

        A transient failure mid-body restarts the file from the beginning
        (the sink is truncated), up to the configured number of attempts.

        Returns:
            Number of bytes written
        """
        attempts = self.config.retry_attempts
        for attempt in range(attempts):
            sink.seek(0)
            sink.truncate()
            response = self.get_with_retry(url, stream=True)
            try:
                return self._stream_body(response, sink, on_progress)
            except _TRANSIENT_EXCEPTIONS as exc:
                if attempt == attempts - 1:
                    raise NetworkError(url, f"download interrupted: {exc}", transient=True) from exc
                _logger.warning("download interrupted, restarting", url=url, attempt=attempt + 1)
                self._backoff(attempt)
            finally:
                response.close()

        raise NetworkError(url, "no attempts made", transient=True)

    def _stream_body(self, response: requests.Response, sink: BinaryIO, on_progress: Optional[ByteProgress]) -> int:
        total = _size_from_headers(response.headers)
        interval = self.config.get_progress_interval_seconds()
        loaded = 0
        last_time = time.perf_counter()
        last_loaded = 0
        speed = 0.0

        for chunk in response.iter_content(chunk_size=self.config.download_chunk_bytes):
            if not chunk:
                continue
            sink.write(chunk)
            loaded += len(chunk)
            now = time.perf_counter()
            elapsed = now - last_time
            if elapsed >= interval:
                if elapsed > 0:
                    speed = (loaded - last_loaded) / elapsed
                last_time = now
                last_loaded = loaded
                if on_progress is not None:
                    on_progress(loaded, total, speed)

        sink.flush()
        if on_progress is not None:
            on_progress(loaded, total, speed)
        return loaded


def _size_from_headers(headers) -> int:
    # The hub reports the LFS object size separately from the redirect body
    value = headers.get("x-linked-size") or headers.get("content-length")
    try:
        return int(value) if value else 0
    except ValueError:
        return 0
