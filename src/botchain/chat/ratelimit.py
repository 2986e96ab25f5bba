"""Per-key token-bucket rate limiting.

Buckets refill lazily: each check adds ``floor(elapsed / interval) * amount``
tokens (capped at capacity) and advances the refill timestamp by the whole
intervals consumed, not to "now", so partial intervals are never lost.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, Hashable, Optional, Union

from ..core.clock import Clock, MonotonicClock
from ..core.locks import KeyedLocks
from ..core.logging_utils import log_event
from .context import Context
from .errors import RateLimiterConfigError
from .handlers import CONTINUE, STOP, HandlerResult
from .models import Update

KeyExtractor = Callable[[Update], Hashable]
LimitedHook = Callable[
    [Context, Update, "RateLimitDecision"], Union[None, Awaitable[None]]
]


@dataclass
class Bucket:
    capacity: int
    tokens: int
    last_refill: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: float = 0.0


def key_by_scope(update: Update) -> Hashable:
    return update.scope


def key_by_chat(update: Update) -> Hashable:
    return ("chat", update.chat_id)


def key_by_user(update: Update) -> Hashable:
    return ("user", update.scope.user_id)


def key_global(update: Update) -> Hashable:
    return "global"


KEY_EXTRACTORS: dict[str, KeyExtractor] = {
    "scope": key_by_scope,
    "chat": key_by_chat,
    "user": key_by_user,
    "global": key_global,
}


class RateLimiter:
    def __init__(
        self,
        *,
        capacity: int,
        refill_amount: int,
        refill_interval: float,
        clock: Optional[Clock] = None,
        max_tracked_keys: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity <= 0:
            raise RateLimiterConfigError(
                f"capacity must be a positive integer, got {capacity!r}"
            )
        if (
            isinstance(refill_amount, bool)
            or not isinstance(refill_amount, int)
            or refill_amount <= 0
        ):
            raise RateLimiterConfigError(
                f"refill_amount must be a positive integer, got {refill_amount!r}"
            )
        if (
            isinstance(refill_interval, bool)
            or not isinstance(refill_interval, (int, float))
            or not math.isfinite(refill_interval)
            or refill_interval <= 0
        ):
            raise RateLimiterConfigError(
                f"refill_interval must be a positive number of seconds, "
                f"got {refill_interval!r}"
            )
        if max_tracked_keys is not None and max_tracked_keys <= 0:
            raise RateLimiterConfigError("max_tracked_keys must be positive")
        self.capacity = capacity
        self.refill_amount = refill_amount
        self.refill_interval = float(refill_interval)
        self._clock = clock or MonotonicClock()
        self._max_tracked_keys = max_tracked_keys
        self._logger = logger or logging.getLogger(__name__)
        self._buckets: "OrderedDict[Hashable, Bucket]" = OrderedDict()
        self._locks = KeyedLocks()

    def __len__(self) -> int:
        return len(self._buckets)

    def bucket(self, key: Hashable) -> Optional[Bucket]:
        return self._buckets.get(key)

    async def check(self, key: Hashable) -> RateLimitDecision:
        """Consume one token for ``key`` if available."""

        async with self._locks.hold(key):
            bucket = self._bucket_for(key)
            self._refill(bucket)
            if bucket.tokens > 0:
                bucket.tokens -= 1
                return RateLimitDecision(allowed=True, remaining=bucket.tokens)
            retry_after = max(
                0.0, bucket.last_refill + self.refill_interval - self._clock.now()
            )
            return RateLimitDecision(
                allowed=False, remaining=0, retry_after=retry_after
            )

    def _bucket_for(self, key: Hashable) -> Bucket:
        bucket = self._buckets.get(key)
        if bucket is not None:
            self._buckets.move_to_end(key)
            return bucket
        bucket = Bucket(
            capacity=self.capacity,
            tokens=self.capacity,
            last_refill=self._clock.now(),
        )
        self._buckets[key] = bucket
        self._evict(keep=key)
        return bucket

    def _refill(self, bucket: Bucket) -> None:
        elapsed = self._clock.now() - bucket.last_refill
        if elapsed < self.refill_interval:
            return
        intervals = math.floor(elapsed / self.refill_interval)
        bucket.tokens = min(
            bucket.capacity, bucket.tokens + intervals * self.refill_amount
        )
        bucket.last_refill += intervals * self.refill_interval

    def _evict(self, *, keep: Hashable) -> None:
        if self._max_tracked_keys is None:
            return
        while len(self._buckets) > self._max_tracked_keys:
            victim = next(
                (
                    key
                    for key in self._buckets
                    if key != keep and not self._locks.locked(key)
                ),
                None,
            )
            if victim is None:
                return
            del self._buckets[victim]
            log_event(
                self._logger,
                logging.DEBUG,
                "chat.ratelimit.evicted",
                key=repr(victim),
            )


class RateLimitHandler:
    """Chain entry: stops the chain when the update's bucket is empty."""

    name = "ratelimit"

    def __init__(
        self,
        limiter: RateLimiter,
        *,
        key_extractor: KeyExtractor = key_by_scope,
        on_limited: Optional[LimitedHook] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._limiter = limiter
        self._key_extractor = key_extractor
        self._on_limited = on_limited
        self._logger = logger or logging.getLogger(__name__)

    async def handle(self, context: Context, update: Update) -> HandlerResult:
        key = self._key_extractor(update)
        decision = await self._limiter.check(key)
        if decision.allowed:
            return CONTINUE
        log_event(
            self._logger,
            logging.INFO,
            "chat.ratelimit.denied",
            update_id=update.update_id,
            key=repr(key),
            retry_after=round(decision.retry_after, 3),
        )
        if self._on_limited is not None:
            result = self._on_limited(context, update, decision)
            if asyncio.iscoroutine(result):
                await result
        return STOP
