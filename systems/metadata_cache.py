# Copyright (C) 2026 grodz
#
# This file is part of Encore.
#
# Encore is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Metadata cache with TTL expiry and in-flight lookup sharing."""

import asyncio
from dataclasses import dataclass
from time import monotonic
from typing import Any, Callable

from loguru import logger


@dataclass(slots=True)
class CacheEntry:
    """Either a pending lookup or a resolved value with an expiry.

    Exactly one of ``pending`` / ``value`` is meaningful at a time.
    """

    pending: asyncio.Future | None = None
    value: Any = None
    expires_at: float = 0.0


class MetadataCache:
    """Keyed cache for track metadata lookups.

    Keys are canonical reference strings (watch URLs or search targets).
    While a lookup is running its future is stored so that concurrent callers
    await the same result instead of starting their own. Resolved values live
    for ``ttl`` seconds and are dropped lazily when read after expiry. Failures
    are never stored.

    Usage:
        cached = cache.get(key)
        if isinstance(cached, asyncio.Future):
            value = await cached
        elif cached is None:
            cache.set_pending(key, future)
            ...
            cache.set_resolved(key, value)

    Attributes:
        ttl: Default lifetime for resolved values, in seconds
    """

    def __init__(self, ttl: float = 60.0, clock: Callable[[], float] = monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def get(self, key: str) -> Any:
        """Return the cached value, the pending future, or None.

        Reading an expired entry removes it.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.pending is not None:
            return entry.pending
        if entry.expires_at > self._clock():
            return entry.value
        del self._entries[key]
        logger.debug(f"metadata expired: {key}")
        return None

    def set_pending(self, key: str, future: asyncio.Future) -> asyncio.Future:
        """Register an in-flight lookup for key and return its future."""
        self._entries[key] = CacheEntry(pending=future)
        return future

    def set_resolved(self, key: str, value: Any, ttl: float | None = None) -> Any:
        """Replace the pending entry with a value that expires after ttl seconds."""
        lifetime = self.ttl if ttl is None else ttl
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + lifetime)
        return value

    def mark_failed(self, key: str) -> None:
        """Forget key so the next lookup starts over."""
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
