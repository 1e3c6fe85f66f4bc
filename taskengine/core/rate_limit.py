"""
Submission rate limiting over a shared keyed counter store.

Fixed window strategy: each (owner, tier) pair gets a counter that
expires with the window. The counter store is injected, so every
process enforcing the limit shares the same counts.
"""

from dataclasses import dataclass
from typing import Protocol

import structlog

from taskengine.config import settings
from taskengine.core.exceptions import RateLimitExceededError

logger = structlog.get_logger(__name__)


class CounterStore(Protocol):
    """Keyed counters with TTL eviction (CacheManager satisfies this)."""

    async def increment(self, namespace: str, key: str, ttl: int | None = None) -> int: ...

    async def get_ttl(self, namespace: str, key: str) -> int: ...


@dataclass
class RateLimitConfig:
    """Configuration for a rate limit rule."""

    requests: int     # Max requests
    window: int       # Time window in seconds
    key_prefix: str   # Key prefix for namespacing


def default_rate_limits() -> dict[str, RateLimitConfig]:
    """Submission tiers built from settings."""
    window = settings.rate_limit_window_seconds
    return {
        "single": RateLimitConfig(requests=settings.rate_limit_single, window=window, key_prefix="rl_single"),
        "batch": RateLimitConfig(requests=settings.rate_limit_batch, window=window, key_prefix="rl_batch"),
        "product-shot": RateLimitConfig(
            requests=settings.rate_limit_product_shot, window=window, key_prefix="rl_product_shot"
        ),
    }


@dataclass
class RateLimitInfo:
    limit: int
    remaining: int
    reset: int
    current: int


class RateLimiter:
    """
    Per-identifier fixed-window limiter.

    Usage:
        limiter = RateLimiter(cache_manager)
        await limiter.check(owner_id, "batch")
    """

    def __init__(
        self,
        store: CounterStore,
        limits: dict[str, RateLimitConfig] | None = None,
        enabled: bool = True,
    ):
        self.store = store
        self.limits = limits if limits is not None else default_rate_limits()
        self.enabled = enabled

    async def check(self, identifier: str, limit_type: str) -> RateLimitInfo:
        """
        Count one request for identifier against a tier.

        Raises:
            RateLimitExceededError: when the window's budget is spent
        """
        config = self.limits[limit_type]

        if not self.enabled:
            return RateLimitInfo(config.requests, config.requests, 0, 0)

        key = f"{identifier}:{limit_type}"

        try:
            current_count = await self.store.increment(
                namespace=config.key_prefix,
                key=key,
                ttl=config.window,
            )
            ttl = await self.store.get_ttl(config.key_prefix, key)
        except Exception as e:
            # Counter store unavailable: fail open rather than block submissions
            logger.error("rate_limit_store_error", identifier=identifier, limit_type=limit_type, error=str(e))
            return RateLimitInfo(config.requests, config.requests, 0, 0)

        if current_count > config.requests:
            retry_after = max(ttl, 0)
            logger.warning(
                "rate_limit_exceeded",
                identifier=identifier,
                limit_type=limit_type,
                current=current_count,
                limit=config.requests,
            )
            raise RateLimitExceededError(
                f"Rate limit exceeded: at most {config.requests} {limit_type} "
                f"submissions per {config.window}s",
                retry_after=retry_after,
                details={"limit": config.requests, "window": config.window},
            )

        return RateLimitInfo(
            limit=config.requests,
            remaining=max(0, config.requests - current_count),
            reset=ttl,
            current=current_count,
        )
