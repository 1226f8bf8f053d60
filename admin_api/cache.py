"""In-process cache for settings regions.

Each region holds one loaded value (for example the full system settings
mapping). ``forget`` evicts a region so the next ``remember`` reloads it.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional, Tuple


class SettingsCache:
    """Thread-safe region cache with explicit invalidation."""

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self._regions: Dict[str, Any] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._lock = threading.Lock()
        self.log = logger or logging.getLogger("admin_api.cache")

    def get(self, region: str) -> Optional[Any]:
        with self._lock:
            return self._regions.get(region)

    def remember(self, region: str, loader: Callable[[], Any]) -> Any:
        """Return the cached region value, loading and storing it on a miss.

        A value loaded while the region was invalidated is returned to the
        caller but not stored, so it cannot outlive the invalidation.
        """
        with self._lock:
            if region in self._regions:
                return self._regions[region]
            stamp = self._stamp(region)
        value = loader()
        with self._lock:
            if self._stamp(region) != stamp:
                self.log.debug("Cache region '%s' invalidated during load; not storing", region)
                return value
            # a concurrent loader may have filled the region first
            return self._regions.setdefault(region, value)

    def forget(self, region: str) -> bool:
        """Evict one region; return whether anything was cached."""
        with self._lock:
            removed = self._regions.pop(region, None) is not None
            self._generations[region] = self._generations.get(region, 0) + 1
        self.log.info("Cache region '%s' invalidated (was_cached=%s)", region, removed)
        return removed

    def _stamp(self, region: str) -> Tuple[int, int]:
        return (self._epoch, self._generations.get(region, 0))

    def has(self, region: str) -> bool:
        with self._lock:
            return region in self._regions

    def clear(self) -> None:
        with self._lock:
            self._regions.clear()
            self._epoch += 1
