"""
Rate-limit wrapper for request handlers.

Framework-neutral: a handler takes a Request and returns a Response. The
wrapper throttles by caller and route and decorates responses with the
standard X-RateLimit headers.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .errors import RateLimited
from .rate_limit import (
    DEFAULT_RATE_LIMIT,
    RateLimitConfig,
    RateLimiter,
    caller_key_from_headers,
)


@dataclass
class Request:
    """Inbound call as seen by the metering core."""
    route: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None


@dataclass
class Response:
    status: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)


Handler = Callable[[Request], Response]

# Shared limiter for handlers wrapped without an explicit one
_default_limiter: Optional[RateLimiter] = None


def get_default_limiter() -> RateLimiter:
    """Return the process-wide limiter, creating it on first use."""
    global _default_limiter
    if _default_limiter is None:
        _default_limiter = RateLimiter()
    return _default_limiter


def with_rate_limit(
    handler: Handler,
    config: Optional[RateLimitConfig] = None,
    limiter: Optional[RateLimiter] = None,
) -> Handler:
    """Wrap a handler with a fixed-window rate limit.

    Args:
        handler: Function handling the request once it is allowed
        config: Quota for this route (defaults to 10 requests per minute)
        limiter: Limiter holding the windows (defaults to the shared one)

    Returns:
        Handler that answers 429 with a Retry-After hint when throttled
    """
    config = config or DEFAULT_RATE_LIMIT

    def wrapped(request: Request) -> Response:
        active = limiter or get_default_limiter()
        decision = active.check(caller_key_from_headers(request.headers), request.route, config)

        if not decision.allowed:
            error = RateLimited(
                "Too many requests. Please try again later.",
                retry_after=decision.retry_after,
                limit=config.limit,
            )
            return Response(
                status=429,
                body=error.to_dict(),
                headers={
                    "X-RateLimit-Limit": str(config.limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(decision.retry_after),
                    "Retry-After": str(decision.retry_after),
                },
            )

        response = handler(request)
        response.headers["X-RateLimit-Limit"] = str(config.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        response.headers["X-RateLimit-Reset"] = str(decision.retry_after)
        return response

    return wrapped
