"""Read-through cache for website domains.

the self-referrer exclusion needs each website's own domain, which lives in
another service. lookups are cached per website id:
  - fresh for `ttl_seconds` (24h by default)
  - then served stale for `stale_seconds` while one background refresh runs
  - concurrent misses for the same id share a single upstream fetch

a failed fetch is logged and yields None; callers then skip the exclusion.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DomainFetcher = Callable[[str], Awaitable[str | None]]

DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_STALE_SECONDS = 60 * 60


@dataclass
class _Entry:
    value: str | None
    fresh_until: float
    stale_until: float


class DomainCache:
    """Website id -> domain, with single-flight population."""

    def __init__(
        self,
        fetch: DomainFetcher,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        stale_seconds: float = DEFAULT_STALE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self.ttl_seconds = ttl_seconds
        self.stale_seconds = stale_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    async def get(self, website_id: str) -> str | None:
        now = self._clock()
        entry = self._entries.get(website_id)

        if entry is not None and now < entry.fresh_until:
            return entry.value

        if entry is not None and now < entry.stale_until:
            # serve stale, refresh behind the caller's back
            self._start_fetch(website_id)
            return entry.value

        task = self._start_fetch(website_id)
        # shield so one caller giving up doesn't cancel the fetch for the others
        return await asyncio.shield(task)

    def _start_fetch(self, website_id: str) -> asyncio.Task:
        task = self._inflight.get(website_id)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._populate(website_id))
            self._inflight[website_id] = task
        return task

    async def _populate(self, website_id: str) -> str | None:
        try:
            value = await self._fetch(website_id)
        except Exception as e:
            logger.warning("Domain lookup failed for website %s: %s", website_id, e)
            previous = self._entries.get(website_id)
            return previous.value if previous is not None else None
        finally:
            self._inflight.pop(website_id, None)

        now = self._clock()
        self._entries[website_id] = _Entry(
            value=value,
            fresh_until=now + self.ttl_seconds,
            stale_until=now + self.ttl_seconds + self.stale_seconds,
        )
        return value

    def invalidate(self, website_id: str) -> None:
        self._entries.pop(website_id, None)

    def __len__(self) -> int:
        return len(self._entries)


def static_fetcher(domains: Mapping[str, str]) -> DomainFetcher:
    """Fetcher backed by a fixed mapping, e.g. the WEBSITE_DOMAINS setting."""

    async def fetch(website_id: str) -> str | None:
        return domains.get(website_id)

    return fetch
