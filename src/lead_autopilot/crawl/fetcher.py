"""Shared HTTP access for listing sources and the website probe."""

import hashlib
import json
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx
import structlog

from .rate_limiter import RateLimiterRegistry

logger = structlog.get_logger()

DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
BROWSER_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}


@dataclass
class FetchResult:
    """A successful response."""

    url: str  # final URL after redirects
    status_code: int
    text: str
    elapsed_ms: int
    content_hash: str
    headers: Dict[str, str] = field(default_factory=dict)
    from_cache: bool = False


@dataclass(frozen=True)
class HttpSettings:
    connect_timeout_seconds: float = 5.0
    read_timeout_seconds: float = 15.0
    max_retries: int = 2
    retry_backoff_factor: float = 2.0
    retry_status_codes: tuple = (429, 502, 503, 504)
    rate_limit_cooldown_seconds: float = 60.0
    user_agents: tuple = (DEFAULT_USER_AGENT,)

    @classmethod
    def from_config(cls, config: Dict) -> "HttpSettings":
        http = config.get("http") or {}
        errors = config.get("error_handling") or {}
        return cls(
            connect_timeout_seconds=float(http.get("connect_timeout_seconds", cls.connect_timeout_seconds)),
            read_timeout_seconds=float(http.get("read_timeout_seconds", cls.read_timeout_seconds)),
            max_retries=int(http.get("max_retries", cls.max_retries)),
            retry_backoff_factor=float(http.get("retry_backoff_factor", cls.retry_backoff_factor)),
            retry_status_codes=tuple(errors.get("retry_status_codes") or cls.retry_status_codes),
            rate_limit_cooldown_seconds=float(errors.get("rate_limit_cooldown_seconds", cls.rate_limit_cooldown_seconds)),
            user_agents=tuple(http.get("user_agents") or cls.user_agents),
        )


class ResponseCache:
    """On-disk cache of page bodies, one JSON file per URL."""

    def __init__(self, cache_dir: Path, ttl_hours: float):
        self.cache_dir = cache_dir
        self.ttl_seconds = ttl_hours * 3600
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.log = logger.bind(component="fetch_cache")

    def _path(self, url: str) -> Path:
        return self.cache_dir / f"{hashlib.sha256(url.encode()).hexdigest()}.json"

    def get(self, url: str) -> Optional[FetchResult]:
        path = self._path(url)
        if not path.exists():
            return None
        try:
            entry = json.loads(path.read_text())
            if time.time() - entry["stored_at"] > self.ttl_seconds:
                path.unlink()
                return None
            return FetchResult(**{**entry["result"], "from_cache": True})
        except (OSError, ValueError, KeyError, TypeError) as e:
            self.log.warning("Unreadable cache entry", url=url, error=str(e))
            return None

    def put(self, url: str, result: FetchResult):
        try:
            self._path(url).write_text(json.dumps({"stored_at": time.time(), "result": asdict(result)}))
        except (OSError, TypeError) as e:
            self.log.warning("Cache write failed", url=url, error=str(e))


class Fetcher:
    """
    GET with per-source rate limiting, retries and an optional cache.

    Every attempt (retries included) first acquires the limiter for its rate
    key, so retries count against the source's budget.
    """

    def __init__(
        self,
        config: Dict,
        rate_limiters: Optional[RateLimiterRegistry] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            config: Runtime config (``http``, ``cache``, ``error_handling``, ``rate_limits``)
            rate_limiters: Shared limiter registry (built from ``rate_limits`` if omitted)
            transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        """
        self.settings = HttpSettings.from_config(config)
        self.rate_limiters = rate_limiters or RateLimiterRegistry(config.get("rate_limits") or {})
        self._sleep = sleep
        self._agent_index = 0
        self.log = logger.bind(component="fetcher")

        cache_config = config.get("cache") or {}
        self.cache: Optional[ResponseCache] = None
        if cache_config.get("enabled"):
            self.cache = ResponseCache(Path(cache_config.get("cache_dir", "data/cache")), float(cache_config.get("ttl_hours", 24)))

        self.client = httpx.Client(
            timeout=httpx.Timeout(self.settings.read_timeout_seconds, connect=self.settings.connect_timeout_seconds),
            follow_redirects=True,
            transport=transport,
        )

    def _user_agent(self) -> str:
        agents: List[str] = list(self.settings.user_agents)
        agent = agents[self._agent_index % len(agents)]
        self._agent_index += 1
        return agent

    def _retry_delay(self, error: httpx.HTTPError, attempt: int) -> Optional[float]:
        """Seconds to wait before retrying, or None when ``error`` is final."""
        if attempt >= self.settings.max_retries:
            return None
        if isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code
            if status not in self.settings.retry_status_codes:
                return None
            if status == 429:
                return self.settings.rate_limit_cooldown_seconds
        return self.settings.retry_backoff_factor ** attempt

    def _get(self, url: str, headers: Optional[Dict[str, str]], params: Optional[Dict]) -> FetchResult:
        request_headers = {"User-Agent": self._user_agent(), **BROWSER_HEADERS, **(headers or {})}
        started = time.monotonic()
        response = self.client.get(url, headers=request_headers, params=params)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        response.raise_for_status()
        text = response.text
        return FetchResult(
            url=str(response.url),
            status_code=response.status_code,
            text=text,
            elapsed_ms=elapsed_ms,
            content_hash=hashlib.sha256(text.encode("utf-8")).hexdigest(),
            headers=dict(response.headers),
        )

    def fetch(
        self,
        url: str,
        rate_key: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict] = None,
    ) -> FetchResult:
        """
        Fetch a URL.

        Args:
            url: URL to fetch
            rate_key: Rate limiter key (source id); defaults to the URL's host
            headers: Extra request headers (e.g. API authorization)
            params: Query parameters (requests with params are never cached)

        Returns:
            FetchResult

        Raises:
            httpx.HTTPStatusError / httpx.RequestError once retries are exhausted
        """
        cacheable = self.cache is not None and not params and not headers
        if cacheable:
            cached = self.cache.get(url)
            if cached is not None:
                self.log.debug("Cache hit", url=url)
                return cached

        key = rate_key or urlparse(url).netloc.lower()
        attempt = 0
        while True:
            self.rate_limiters.acquire(key)
            try:
                result = self._get(url, headers, params)
            except httpx.HTTPError as e:
                delay = self._retry_delay(e, attempt)
                if delay is None:
                    raise
                attempt += 1
                self.log.warning("Fetch failed, retrying", url=url, rate_key=key, error=str(e), attempt=attempt, retry_in=delay)
                self._sleep(delay)
                continue

            if cacheable:
                self.cache.put(url, result)
            self.log.debug("Fetched", url=url, rate_key=key, status=result.status_code, size=len(result.text), elapsed_ms=result.elapsed_ms)
            return result

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
