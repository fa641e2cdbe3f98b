"""Conditional HTTP retrieval of calendar feeds."""
import logging
import threading
import time
from typing import Optional

import requests
from urllib3.exceptions import ProtocolError, ReadTimeoutError

from processor.models import FETCH_ERROR, FETCH_NOT_MODIFIED, FETCH_OK, FetchResult
from security.credential_vault import mask_url

logger = logging.getLogger(__name__)


class FeedFetcher:
    """Fetcher for ICS/webcal feeds using ETag and Last-Modified validators."""

    USER_AGENT = 'CalendarFeedSync/1.0 (Calendar Sync)'
    ACCEPT = 'text/calendar, application/ics'
    MAX_RESPONSE_BYTES = 5 * 1024 * 1024
    CHUNK_SIZE = 64 * 1024

    def __init__(self, timeout: int = 30, session: Optional[requests.Session] = None):
        """
        Initialize the feed fetcher.

        The timeout bounds the whole fetch, body included, not only each
        socket read. Sessions are not shared between threads: the given
        session serves the creating thread and other threads get their own.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
            session: Optional requests session to reuse connections
        """
        self.timeout = timeout
        self.clock = time.monotonic
        self._owner = threading.get_ident()
        self._shared_session = session
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        session = getattr(self._local, 'session', None)
        if session is None:
            if self._shared_session is not None and threading.get_ident() == self._owner:
                session = self._shared_session
            else:
                session = requests.Session()
            self._local.session = session
        return session

    def fetch(
        self,
        url: str,
        prior_etag: Optional[str] = None,
        prior_last_modified: Optional[str] = None
    ) -> FetchResult:
        """
        Fetch a feed, sending prior validators when present.

        Failed fetches are not retried here; the source is retried at its
        next scheduled run.

        Args:
            url: Plaintext feed URL (already normalized)
            prior_etag: ETag from the last successful fetch
            prior_last_modified: Last-Modified from the last successful fetch

        Returns:
            FetchResult with status ok, not_modified or error
        """
        masked = mask_url(url)
        logger.info(f"Fetching feed {masked}")
        deadline = self.clock() + self.timeout

        try:
            response = self.session.get(
                url,
                headers=self._build_headers(prior_etag, prior_last_modified),
                timeout=self.timeout,
                stream=True
            )
        except requests.Timeout as e:
            logger.warning(f"Timed out fetching feed {masked}: {type(e).__name__}")
            return self._error('timeout', 'Request timed out')
        except requests.RequestException as e:
            logger.warning(f"Failed to fetch feed {masked}: {type(e).__name__}")
            return self._error('unreachable', type(e).__name__)

        try:
            return self._handle_response(response, masked, deadline)
        finally:
            response.close()

    def _build_headers(
        self,
        etag: Optional[str],
        last_modified: Optional[str]
    ) -> dict:
        headers = {
            'User-Agent': self.USER_AGENT,
            'Accept': self.ACCEPT,
        }
        if etag:
            headers['If-None-Match'] = etag
        if last_modified:
            headers['If-Modified-Since'] = last_modified
        return headers

    def _handle_response(
        self,
        response: requests.Response,
        masked: str,
        deadline: float
    ) -> FetchResult:
        if response.status_code == 304:
            logger.info(f"Feed {masked} not modified (304)")
            return FetchResult(
                status=FETCH_NOT_MODIFIED,
                etag=response.headers.get('ETag'),
                last_modified=response.headers.get('Last-Modified')
            )

        if not response.ok:
            code = self._classify_status(response.status_code)
            logger.warning(f"Feed {masked} returned HTTP {response.status_code} ({code})")
            return self._error(code, f"HTTP {response.status_code}")

        content_length = response.headers.get('Content-Length')
        if content_length and content_length.isdigit() \
                and int(content_length) > self.MAX_RESPONSE_BYTES:
            logger.warning(f"Feed {masked} declared {content_length} bytes, over limit")
            return self._error('too_large', f"Content-Length {content_length}")

        try:
            body = self._read_body(response, deadline)
        except requests.Timeout:
            logger.warning(f"Feed {masked} exceeded the {self.timeout}s fetch timeout")
            return self._error('timeout', 'Body read timed out')
        except requests.RequestException as e:
            return self._error('unreachable', type(e).__name__)

        if body is None:
            logger.warning(f"Feed {masked} body exceeded {self.MAX_RESPONSE_BYTES} bytes")
            return self._error('too_large', 'Response body too large')

        logger.info(f"Fetched {len(body)} characters from feed {masked}")
        return FetchResult(
            status=FETCH_OK,
            body=body,
            etag=response.headers.get('ETag'),
            last_modified=response.headers.get('Last-Modified')
        )

    def _read_body(self, response: requests.Response, deadline: float) -> Optional[str]:
        """
        Read the body up to the size cap; returns None when exceeded.

        Raises:
            requests.Timeout: If the fetch deadline passes while reading
        """
        chunks = []
        size = 0
        for chunk in self._iter_chunks(response):
            size += len(chunk)
            if size > self.MAX_RESPONSE_BYTES:
                return None
            chunks.append(chunk)
            if self.clock() > deadline:
                raise requests.Timeout("Feed body not received within the fetch timeout")

        # requests assumes ISO-8859-1 for text/* without a charset; ICS is UTF-8
        content_type = response.headers.get('Content-Type', '')
        encoding = response.encoding if 'charset=' in content_type.lower() else 'utf-8'
        return b''.join(chunks).decode(encoding or 'utf-8', errors='replace')

    def _iter_chunks(self, response: requests.Response):
        # read1 returns whatever has arrived, so a slow drip still reaches the deadline check
        raw = response.raw
        while True:
            try:
                chunk = raw.read1(self.CHUNK_SIZE, decode_content=True)
            except ReadTimeoutError as e:
                raise requests.Timeout(e)
            except ProtocolError as e:
                raise requests.ConnectionError(e)
            if not chunk:
                return
            yield chunk

    @staticmethod
    def _classify_status(status_code: int) -> str:
        if status_code in (401, 403):
            return 'auth_required'
        if status_code in (404, 410):
            return 'expired'
        if status_code >= 500:
            return 'unreachable'
        return 'unknown'

    @staticmethod
    def _error(code: str, detail: str) -> FetchResult:
        return FetchResult(status=FETCH_ERROR, error_code=code, detail=detail)
