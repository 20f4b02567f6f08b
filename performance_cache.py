"""
Performance caching utilities
Simple in-memory TTL cache for catalog data read on every quote
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

class SimpleCache:
    """Simple in-memory cache with TTL support"""

    def __init__(self, default_ttl: int = 300, clock: Callable[[], float] = time.monotonic):
        self.cache: Dict[str, Dict[str, Any]] = {}
        self.default_ttl = default_ttl
        self._clock = clock

    def get(self, key: str) -> Optional[Any]:
        """Get cached value, None when missing or expired"""
        entry = self.cache.get(key)
        if entry is None:
            return None
        if entry['expires'] > self._clock():
            return entry['value']
        del self.cache[key]
        return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        now = self._clock()
        self.cache[key] = {
            'value': value,
            'expires': now + ttl,
            'created': now
        }

    def delete(self, key: str) -> None:
        self.cache.pop(key, None)

    def clear(self) -> None:
        """Clear all cached values"""
        self.cache.clear()

