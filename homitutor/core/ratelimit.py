import logging
import time
from collections import deque
from threading import Lock

from fastapi import HTTPException, Request, status

from homitutor.core import config

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """In-process sliding window limiter keyed by an arbitrary identifier."""

    def __init__(self, max_requests: int, window_seconds: int, clock=time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = Lock()

    def hit(self, identifier: str) -> tuple[bool, int]:
        """Record a request. Returns (allowed, retry_after_seconds)."""
        now = self._clock()
        window_start = now - self.window_seconds

        with self._lock:
            self._prune(window_start)
            hits = self._hits.get(identifier)
            if hits is None:
                hits = deque()

            if len(hits) >= self.max_requests:
                retry_after = int(hits[0] + self.window_seconds - now) + 1
                return False, retry_after

            hits.append(now)
            self._hits[identifier] = hits
            return True, 0

    def _prune(self, window_start: float) -> None:
        for identifier in list(self._hits):
            hits = self._hits[identifier]
            while hits and hits[0] <= window_start:
                hits.popleft()
            if not hits:
                del self._hits[identifier]

    @property
    def tracked_identifiers(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


auth_limiter = SlidingWindowRateLimiter(
    max_requests=config.AUTH_RATE_LIMIT_REQUESTS,
    window_seconds=config.AUTH_RATE_LIMIT_WINDOW_SECONDS,
)


def get_client_ip(request: Request) -> str:
    """Socket peer address, or the first X-Forwarded-For hop when running behind a trusted proxy."""
    if config.TRUST_PROXY_HEADERS:
        forwarded_for = request.headers.get('x-forwarded-for')
        if forwarded_for:
            return forwarded_for.split(',')[0].strip()

    client = request.client
    if client is not None and client.host:
        return client.host
    return 'unknown'


def limit_auth_requests(request: Request) -> None:
    if not config.RATE_LIMIT_ENABLED:
        return

    client_ip = get_client_ip(request)
    allowed, retry_after = auth_limiter.hit(f'{request.url.path}:{client_ip}')
    if not allowed:
        logger.warning('Auth rate limit exceeded for %s on %s', client_ip, request.url.path)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail='Too many authentication requests. Please try again later.',
            headers={'Retry-After': str(retry_after)},
        )
