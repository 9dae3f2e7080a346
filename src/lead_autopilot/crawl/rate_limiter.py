"""Per-source request rate limiting."""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class RateLimit:
    """Limit for one source key."""

    max_requests: int = 10
    window_seconds: float = 60.0
    min_interval_seconds: float = 1.0

    @classmethod
    def from_config(cls, config: Optional[Dict]) -> "RateLimit":
        config = config or {}
        return cls(
            max_requests=int(config.get("max_requests", cls.max_requests)),
            window_seconds=float(config.get("window_seconds", cls.window_seconds)),
            min_interval_seconds=float(config.get("min_interval_seconds", cls.min_interval_seconds)),
        )


class RateLimiter:
    """
    Rolling-window limiter with a minimum spacing between requests.

    ``acquire`` blocks until both constraints hold, then records the request.
    The check-and-record step runs under a lock, so concurrent callers for the
    same limiter are serialized and every granted request is counted once.
    """

    def __init__(
        self,
        limit: RateLimit,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if limit.max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.limit = limit
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._requests = deque()
        self.log = logger.bind(component="rate_limiter", source=name)

    def _prune(self, now: float):
        while self._requests and now - self._requests[0] >= self.limit.window_seconds:
            self._requests.popleft()

    def _wait_time(self, now: float) -> float:
        wait = 0.0
        if len(self._requests) >= self.limit.max_requests:
            wait = self.limit.window_seconds - (now - self._requests[0])
        if self._requests:
            spacing = self.limit.min_interval_seconds - (now - self._requests[-1])
            wait = max(wait, spacing)
        return wait

    def acquire(self) -> float:
        """
        Block until a request is permitted.

        Returns:
            Total seconds spent waiting
        """
        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                self._prune(now)
                wait = self._wait_time(now)
                if wait <= 0:
                    self._requests.append(now)
                    if waited:
                        self.log.debug("Rate limit released", waited=round(waited, 3))
                    return waited
            self.log.debug("Rate limit reached, waiting", sleep=round(wait, 3))
            self._sleep(wait)
            waited += wait

    def status(self) -> Dict:
        """Current window usage."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            used = len(self._requests)
        return {
            "requests_in_window": used,
            "max_requests": self.limit.max_requests,
            "window_seconds": self.limit.window_seconds,
            "available": self.limit.max_requests - used,
        }


class RateLimiterRegistry:
    """One limiter per source key, created lazily from config."""

    def __init__(
        self,
        config: Optional[Dict] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            config: ``rate_limits`` section: source key -> limit settings,
                    with an optional ``default`` entry
        """
        config = config or {}
        self._limits = {key: RateLimit.from_config(value) for key, value in config.items()}
        self._default = self._limits.get("default", RateLimit())
        self._clock = clock
        self._sleep = sleep
        self._limiters: Dict[str, RateLimiter] = {}
        self._lock = threading.Lock()

    def get(self, source_key: str) -> RateLimiter:
        with self._lock:
            limiter = self._limiters.get(source_key)
            if limiter is None:
                limit = self._limits.get(source_key, self._default)
                limiter = RateLimiter(limit, name=source_key, clock=self._clock, sleep=self._sleep)
                self._limiters[source_key] = limiter
            return limiter

    def acquire(self, source_key: str) -> float:
        """Block until ``source_key`` may issue another request."""
        return self.get(source_key).acquire()

    def status(self) -> Dict[str, Dict]:
        with self._lock:
            limiters = dict(self._limiters)
        return {key: limiter.status() for key, limiter in limiters.items()}
