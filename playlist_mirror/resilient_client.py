"""Rate-limited, retrying executor for outbound catalog calls."""

import asyncio
import functools
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Mapping, Optional

import requests

from playlist_mirror.cancellation import CancellationToken
from playlist_mirror.exceptions import AuthenticationError, CatalogError
from playlist_mirror.rate_limiter import TokenBucket
from playlist_mirror.utils.logger import get_logger


logger = get_logger()


class Outcome:
    """Tagged result of a remote call."""

    ok = False

    def __init__(self, reason: str = "", status: Optional[int] = None):
        self.reason = reason
        self.status = status

    def unwrap(self) -> Any:
        raise NotImplementedError


class Success(Outcome):

    ok = True

    def __init__(self, payload: Any):
        super().__init__()
        self.payload = payload

    def unwrap(self) -> Any:
        return self.payload

    def __repr__(self) -> str:
        return "Success()"


class RetryableFailure(Outcome):
    """Transient failure; `delay` is how long to wait before the next attempt."""

    def __init__(self, reason: str, status: Optional[int] = None, delay: float = 0.0):
        super().__init__(reason, status)
        self.delay = delay

    def unwrap(self) -> Any:
        raise CatalogError(self.reason, self.status)

    def __repr__(self) -> str:
        return f"RetryableFailure(status={self.status}, delay={self.delay}, reason={self.reason!r})"


class FatalFailure(Outcome):

    def unwrap(self) -> Any:
        if self.status == 401:
            raise AuthenticationError(self.reason)
        raise CatalogError(self.reason, self.status)

    def __repr__(self) -> str:
        return f"FatalFailure(status={self.status}, reason={self.reason!r})"


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header (delta-seconds or HTTP-date).

    Returns:
        Seconds to wait, or None if the value is absent or unparsable
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class ResilientClient:
    """
    Executes catalog calls behind a token bucket with bounded retries.

    One instance per catalog. Operations are blocking callables (spotipy or
    requests calls) run on a worker thread; they either return a
    requests.Response, which is classified by status code, return any other
    payload, which counts as success, or raise. Raised errors are classified
    from requests exceptions and from SDK exceptions exposing `http_status`
    and `headers` (spotipy's SpotifyException).
    """

    MAX_ATTEMPTS = 5
    NETWORK_BACKOFF = 1.0
    SERVER_ERROR_BACKOFF = 1.0
    RATE_LIMIT_FALLBACK = 3.0

    def __init__(
        self,
        name: str,
        limiter: TokenBucket,
        cancel_token: CancellationToken = None,
        max_attempts: int = None,
        network_backoff: float = None,
        server_error_backoff: float = None,
        rate_limit_fallback: float = None,
        max_workers: int = 4
    ):
        """
        Initialize resilient client.

        Args:
            name: Catalog name used in log messages
            limiter: Token bucket owned by this catalog
            cancel_token: Run-scoped cancellation signal
            max_attempts: Hard cap on attempts per call
            network_backoff: Delay after a connection error or timeout
            server_error_backoff: Delay after a 5xx response
            rate_limit_fallback: Delay after a 429 without Retry-After
            max_workers: Worker threads for blocking calls
        """
        self.name = name
        self.limiter = limiter
        self.cancel_token = cancel_token or CancellationToken()
        self.max_attempts = max_attempts or self.MAX_ATTEMPTS
        self.network_backoff = self.NETWORK_BACKOFF if network_backoff is None else network_backoff
        self.server_error_backoff = (
            self.SERVER_ERROR_BACKOFF if server_error_backoff is None else server_error_backoff
        )
        self.rate_limit_fallback = (
            self.RATE_LIMIT_FALLBACK if rate_limit_fallback is None else rate_limit_fallback
        )
        self._executor = ThreadPoolExecutor(max_workers=max_workers)

    def _classify_status(self, status: int, headers: Optional[Mapping], reason: str) -> Outcome:
        if status == 429:
            delay = parse_retry_after((headers or {}).get('Retry-After'))
            if delay is None:
                delay = self.rate_limit_fallback
            return RetryableFailure(f"rate limited: {reason}", status, delay)
        if status >= 500:
            return RetryableFailure(f"server error {status}: {reason}", status, self.server_error_backoff)
        return FatalFailure(f"HTTP {status}: {reason}", status)

    def classify_response(self, response: requests.Response) -> Outcome:
        if 200 <= response.status_code < 300:
            return Success(response)
        return self._classify_status(response.status_code, response.headers, response.text[:200])

    def classify_error(self, error: Exception) -> Outcome:
        if isinstance(error, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
            return RetryableFailure(f"network error: {error}", None, self.network_backoff)

        status = getattr(error, 'http_status', None)
        headers = getattr(error, 'headers', None)
        response = getattr(error, 'response', None)
        if status is None and response is not None:
            status = getattr(response, 'status_code', None)
            headers = getattr(response, 'headers', None)

        if isinstance(status, int):
            return self._classify_status(status, headers, str(error))
        return FatalFailure(f"{type(error).__name__}: {error}")

    async def execute(self, operation: Callable, *args, label: str = None, **kwargs) -> Outcome:
        """
        Run one catalog call with rate limiting and retries.

        Args:
            operation: Blocking callable performing the request
            label: Short label for log messages
            *args, **kwargs: Passed to operation

        Returns:
            Success with the payload, or FatalFailure once the call cannot succeed

        Raises:
            SyncCancelled: If the run is cancelled while waiting
        """
        label = label or getattr(operation, '__name__', 'request')
        loop = asyncio.get_running_loop()
        call = functools.partial(operation, *args, **kwargs)
        outcome: Outcome = FatalFailure("no attempt made")

        for attempt in range(1, self.max_attempts + 1):
            await self.limiter.acquire(self.cancel_token)

            try:
                result = await loop.run_in_executor(self._executor, call)
            except Exception as e:
                outcome = self.classify_error(e)
            else:
                if isinstance(result, requests.Response):
                    outcome = self.classify_response(result)
                else:
                    outcome = Success(result)

            if not isinstance(outcome, RetryableFailure):
                if not outcome.ok:
                    logger.error(f"{self.name} {label} failed: {outcome.reason}")
                return outcome

            if attempt == self.max_attempts:
                break

            logger.warning(
                f"{self.name} {label} attempt {attempt}/{self.max_attempts} failed "
                f"({outcome.reason}); retrying in {outcome.delay:.1f}s"
            )
            await self.cancel_token.sleep(outcome.delay)

        logger.error(f"{self.name} {label} gave up after {self.max_attempts} attempts: {outcome.reason}")
        return FatalFailure(
            f"gave up after {self.max_attempts} attempts: {outcome.reason}",
            outcome.status
        )

    async def call(self, operation: Callable, *args, label: str = None, **kwargs) -> Any:
        """Like execute(), but return the payload or raise CatalogError / AuthenticationError."""
        outcome = await self.execute(operation, *args, label=label, **kwargs)
        return outcome.unwrap()

    def close(self):
        self._executor.shutdown(wait=False)
