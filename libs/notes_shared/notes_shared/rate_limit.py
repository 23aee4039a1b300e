import logging
import os
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Iterable, Optional

import redis
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse


logger = logging.getLogger("notes_shared.rate_limit")

_AUTH_PATH_CAP = 20
_OTP_PATHS = ("/auth/signup", "/auth/verify-otp", "/auth/signin", "/auth/verify-signin-otp")

# Returns the subject of a session the server itself issued, or None.
Identify = Callable[[Request], Optional[str]]


def _limited_response(retry_after: int) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"error": {"code": "rate_limited", "message": "Too many requests", "details": {"retry_after": retry_after}}},
        headers={"Retry-After": str(retry_after)},
    )


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


class _LimiterBase(BaseHTTPMiddleware):
    """Per-client request budget.

    Clients are keyed by IP. Only a session the `identify` hook accepts gets
    its own bucket and the auth boost, so arbitrary Authorization headers
    cannot mint fresh budgets. /auth/* paths are capped and never boosted.
    """

    def __init__(
        self,
        app,
        limit_per_minute: int = 60,
        auth_boost: int = 2,
        exclude_paths: Iterable[str] | None = None,
        exempt_otp: bool = True,
        identify: Optional[Identify] = None,
        auth_path_cap: int = _AUTH_PATH_CAP,
    ):
        super().__init__(app)
        self.limit_per_minute = limit_per_minute
        self.auth_boost = auth_boost
        self.exclude_paths = set(exclude_paths or ("/health", "/metrics"))
        self.exempt_otp = exempt_otp
        self.identify = identify
        self.auth_path_cap = auth_path_cap

    def _subject(self, request: Request) -> Optional[str]:
        if self.identify is None:
            return None
        return self.identify(request)

    def _client_key(self, request: Request, subject: Optional[str]) -> str:
        if subject:
            return f"user:{subject}"
        client = request.client.host if request.client else "unknown"
        return f"ip:{client}"

    def _limit_for(self, request: Request, subject: Optional[str]) -> int:
        base = _int_env("RL_LIMIT_PER_MINUTE_OVERRIDE", self.limit_per_minute)
        if request.url.path.startswith("/auth/"):
            return min(base, _int_env("RL_AUTH_PATH_CAP_OVERRIDE", self.auth_path_cap))
        if subject:
            base *= _int_env("RL_AUTH_BOOST_OVERRIDE", self.auth_boost)
        return base

    def _bypass(self, request: Request) -> bool:
        path = request.url.path
        if path in self.exclude_paths:
            return True
        dev_env = os.getenv("ENV", "dev").lower() == "dev"
        return (
            self.exempt_otp
            and dev_env
            and path in _OTP_PATHS
            and os.getenv("RL_EXEMPT_OTP", "false").lower() == "true"
        )


class SlidingWindowLimiter(_LimiterBase):
    def __init__(self, app, **kwargs):
        super().__init__(app, **kwargs)
        self.window_seconds = 60
        self.store: Dict[str, Deque[float]] = defaultdict(deque)
        self._last_prune = 0.0

    def _prune(self, now: float) -> None:
        """Drop buckets with no hit inside the window, at most once per window."""
        if now - self._last_prune < self.window_seconds:
            return
        self._last_prune = now
        idle = [k for k, dq in self.store.items() if not dq or now - dq[-1] > self.window_seconds]
        for key in idle:
            del self.store[key]

    def _hit(self, key: str, limit: int, now: float) -> Optional[int]:
        """Record a hit for `key`; returns Retry-After seconds when over `limit`."""
        self._prune(now)
        dq = self.store[key]
        while dq and now - dq[0] > self.window_seconds:
            dq.popleft()
        if len(dq) >= limit:
            return max(1, int(self.window_seconds - (now - dq[0])))
        dq.append(now)
        return None

    async def dispatch(self, request: Request, call_next):
        if self._bypass(request):
            return await call_next(request)
        subject = self._subject(request)
        retry_after = self._hit(self._client_key(request, subject), self._limit_for(request, subject), time.time())
        if retry_after is not None:
            return _limited_response(retry_after)
        return await call_next(request)


class RedisRateLimiter(_LimiterBase):
    def __init__(self, app, redis_url: str, prefix: str = "rl_notes", **kwargs):
        super().__init__(app, **kwargs)
        self.redis = redis.from_url(redis_url, decode_responses=True)
        self.prefix = prefix

    async def dispatch(self, request: Request, call_next):
        if self._bypass(request):
            return await call_next(request)
        subject = self._subject(request)
        base = self._limit_for(request, subject)
        now = int(time.time())
        key = f"{self.prefix}:{self._client_key(request, subject)}:{now // 60}"
        try:
            count = self.redis.incr(key)
            if count == 1:
                self.redis.expire(key, 70)
        except redis.RedisError as exc:
            # Fail open when Redis is unavailable.
            logger.warning("Rate limiter redis failure: %s", exc)
            return await call_next(request)
        if count > base:
            return _limited_response(60 - (now % 60))
        return await call_next(request)
