"""Response cache for identical non-streaming requests.

Keys are the SHA-256 of the canonical JSON of a request's messages,
generation parameters, and pinned model. Entries expire after
``ttl_seconds``; when full, the least recently used (``lru``) or least
frequently used (``lfu``) entry is evicted.

Typical usage::

    cache = ResponseCache(max_size=256, ttl_seconds=300)
    if (hit := await cache.get(request)) is not None:
        return hit
    response = await call_provider(request)
    await cache.set(request, response)
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, replace

from switchboard.config import CacheConfig, CacheStrategy
from switchboard.models import CompletionRequest, CompletionResponse


def cache_key(request: CompletionRequest) -> str:
    """Stable hash of everything that shapes a completion."""
    payload = {
        "messages": [m.to_dict() for m in request.messages],
        "model": request.model,
        "temperature": request.temperature,
        "max_tokens": request.max_tokens,
        "top_p": request.top_p,
        "stop": request.stop,
        "tool_choice": request.tool_choice,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def is_cacheable(request: CompletionRequest) -> bool:
    return not request.stream and not request.tools


@dataclass
class _Slot:
    response: CompletionResponse
    expires_at: float
    hits: int = 0


class ResponseCache:
    """Bounded in-process cache of completion responses.

    Args:
        max_size: Entries kept before eviction (at least 1).
        ttl_seconds: Lifetime of an entry.
        strategy: Eviction policy.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        max_size: int = 256,
        ttl_seconds: float = 300.0,
        strategy: CacheStrategy = CacheStrategy.LRU,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_size = max(1, max_size)
        self.ttl_seconds = ttl_seconds
        self.strategy = strategy
        self._clock = clock
        self._slots: OrderedDict[str, _Slot] = OrderedDict()
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    @classmethod
    def from_config(cls, config: CacheConfig) -> ResponseCache:
        return cls(config.max_size, config.ttl_seconds, config.strategy)

    def __len__(self) -> int:
        return len(self._slots)

    async def get(self, request: CompletionRequest) -> CompletionResponse | None:
        """Return a copy of the cached response marked ``cached=True``."""
        if not is_cacheable(request):
            return None
        key = cache_key(request)
        async with self._lock:
            slot = self._slots.get(key)
            if slot is None or slot.expires_at <= self._clock():
                if slot is not None:
                    del self._slots[key]
                self.misses += 1
                return None
            slot.hits += 1
            self._slots.move_to_end(key)
            self.hits += 1
            return replace(copy.deepcopy(slot.response), cached=True)

    async def set(self, request: CompletionRequest, response: CompletionResponse) -> None:
        if not is_cacheable(request):
            return
        key = cache_key(request)
        async with self._lock:
            now = self._clock()
            if key not in self._slots and len(self._slots) >= self.max_size:
                self._evict(now)
            self._slots[key] = _Slot(copy.deepcopy(response), now + self.ttl_seconds)
            self._slots.move_to_end(key)

    async def clear(self) -> None:
        async with self._lock:
            self._slots.clear()

    def _evict(self, now: float) -> None:
        expired = [k for k, s in self._slots.items() if s.expires_at <= now]
        for key in expired:
            del self._slots[key]
        if len(self._slots) < self.max_size:
            return
        if self.strategy == CacheStrategy.LFU:
            # min() keeps the first of equal counts, which is the least recent.
            victim = min(self._slots, key=lambda k: self._slots[k].hits)
        else:
            victim = next(iter(self._slots))
        del self._slots[victim]
