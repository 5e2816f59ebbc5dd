"""HTTP page fetching with bounded retries.

Every fetch carries a timeout. Timeouts, connection errors, HTTP 429 and
5xx responses are retried with exponential backoff; other 4xx responses
fail immediately. Failures surface as :class:`UpstreamFetchError` with a
category that the crawl executor records as the log ``action``.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable

import requests

from harvester.config import DEFAULT_USER_AGENT
from harvester.errors import RetryExhausted, UpstreamFetchError
from harvester.retry import attempt

logger = logging.getLogger(__name__)


# Tried in order when the header declares no usable charset; cp949 covers
# legacy Korean pages. latin-1 is the last resort and never fails.
FALLBACK_ENCODINGS = ("utf-8", "cp949")

_META_CHARSET = re.compile(rb"""<meta[^>]+charset\s*=\s*["']?([A-Za-z0-9_.:-]+)""", re.IGNORECASE)


def declared_charset(content_type: str) -> str | None:
    """The ``charset`` parameter of a Content-Type header, if present."""
    for param in content_type.split(";")[1:]:
        key, _, value = param.partition("=")
        if key.strip().lower() == "charset" and value.strip():
            return value.strip().strip("\"'")
    return None


def decode_body(content: bytes, declared: str | None = None) -> str:
    """Decode a response body.

    ``requests`` reports ISO-8859-1 for any charset-less ``text/*`` response,
    so only an explicitly declared charset is trusted. After it come a
    ``<meta charset>`` in the first 2 KiB and ``FALLBACK_ENCODINGS``.
    """
    candidates = [declared]
    match = _META_CHARSET.search(content[:2048])
    if match:
        candidates.append(match.group(1).decode("ascii"))
    candidates.extend(FALLBACK_ENCODINGS)
    for encoding in candidates:
        if not encoding:
            continue
        try:
            return content.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue
    return content.decode("latin-1")


@dataclass(slots=True)
class FetchedPage:
    """A successfully fetched resource."""

    url: str
    final_url: str
    status_code: int
    content_type: str
    content: bytes
    # Charset declared by the Content-Type header, None when absent
    encoding: str | None = None

    @property
    def is_html(self) -> bool:
        return "html" in self.content_type.lower()

    @property
    def text(self) -> str:
        return decode_body(self.content, self.encoding)


def classify_status(status_code: int) -> str | None:
    """Failure category for an HTTP status, or None for 2xx/3xx."""
    if status_code == 429:
        return "RATE_LIMITED"
    if status_code >= 500:
        return "HTTP_5XX"
    if status_code >= 400:
        return "HTTP_4XX"
    return None


class PageFetcher:
    """Fetches pages through a shared ``requests.Session``."""

    def __init__(
        self,
        session: requests.Session | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 30.0,
        max_retries: int = 3,
        initial_backoff: float = 1.0,
        max_backoff: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session or requests.Session()
        self.user_agent = user_agent
        self.timeout = timeout
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self._sleep = sleep

    def _fetch_once(self, url: str) -> FetchedPage:
        try:
            response = self.session.get(
                url,
                timeout=self.timeout,
                headers={"User-Agent": self.user_agent},
                allow_redirects=True,
            )
        except requests.exceptions.Timeout as exc:
            raise UpstreamFetchError(url, "TIMEOUT", f"Timed out after {self.timeout}s") from exc
        except requests.exceptions.ConnectionError as exc:
            raise UpstreamFetchError(url, "CONNECTION_ERROR", f"Connection failed: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise UpstreamFetchError(url, "FETCH_ERROR", f"Request failed: {exc}") from exc

        category = classify_status(response.status_code)
        if category is not None:
            raise UpstreamFetchError(
                url,
                category,
                f"HTTP {response.status_code}",
                status_code=response.status_code,
            )

        content_type = response.headers.get("Content-Type", "")
        return FetchedPage(
            url=url,
            final_url=response.url or url,
            status_code=response.status_code,
            content_type=content_type,
            content=response.content or b"",
            encoding=declared_charset(content_type),
        )

    def fetch(self, url: str, retries: int | None = None) -> FetchedPage:
        """Fetch ``url``, retrying transient failures.

        Args:
            url: Absolute http(s) URL.
            retries: Retries after the first attempt; defaults to
                ``max_retries``. Pass 0 for a single attempt.

        Raises:
            UpstreamFetchError: The final failure once retries are exhausted,
                or immediately for non-retryable responses.
        """
        retries = self.max_retries if retries is None else retries
        try:
            return attempt(
                lambda: self._fetch_once(url),
                retries + 1,
                retry_on=(UpstreamFetchError,),
                should_retry=lambda exc: exc.retryable,
                initial_backoff=self.initial_backoff,
                max_backoff=self.max_backoff,
                sleep=self._sleep,
            )
        except RetryExhausted as exc:
            logger.warning("Giving up on %s after %d attempts: %s", url, exc.attempts, exc.last_error)
            raise exc.last_error from None
