from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Tuple

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: Any
    stored_at: float


@dataclass
class SeasonCache:
    """
    Explicit cache for season-derived tables.

    Entries are keyed by ``(season, generation, key)``. Two invalidation
    policies apply together:

    - TTL: an entry older than ``ttl_seconds`` is recomputed on next access.
      ``ttl_seconds=None`` disables expiry.
    - Version bump: ``bump_generation()`` makes every existing entry
      unreachable (and drops them), so callers can force a refresh after the
      underlying store changes.

    The cache is an ordinary object passed to the loader; nothing is stored
    at module level.
    """

    ttl_seconds: float | None = 3600.0
    clock: Callable[[], float] = time.monotonic
    generation: int = 0
    _entries: Dict[Tuple[int, int, Hashable], _Entry] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        if self.ttl_seconds is not None and self.ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0 or None; got {self.ttl_seconds}")

    def get_or_compute(self, season: int, key: Hashable, compute: Callable[[int], Any]) -> Any:
        """Return the cached value for (season, key), computing it via ``compute(season)`` on a miss."""
        cache_key = (int(season), self.generation, key)
        now = self.clock()
        entry = self._entries.get(cache_key)
        if entry is not None:
            if self.ttl_seconds is None or now - entry.stored_at < self.ttl_seconds:
                return entry.value
            logger.debug("Cache entry expired for season=%s key=%s", season, key)

        value = compute(int(season))
        self._entries[cache_key] = _Entry(value=value, stored_at=now)
        return value

    def bump_generation(self) -> int:
        """Invalidate everything cached so far and return the new generation."""
        self.generation += 1
        self._entries.clear()
        logger.info("Season cache invalidated; generation=%s", self.generation)
        return self.generation

    def __len__(self) -> int:
        return len(self._entries)
