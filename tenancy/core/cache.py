"""Lightweight in-memory TTL cache.

Used by the connection registry to avoid a master round trip on every
lookup. Holds whatever the caller stores; the registry only ever stores
ciphertext rows, never decrypted credentials.
"""

import time
from collections.abc import Hashable
from typing import Any

# Default TTL in seconds
DEFAULT_TTL = 300.0


class TTLCache:
    def __init__(self, ttl: float = DEFAULT_TTL) -> None:
        self.ttl = ttl
        self._entries: dict[Hashable, tuple[float, Any]] = {}

    def get(self, key: Hashable) -> Any | None:
        """Return cached value if present and not expired, else None."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if time.monotonic() - stored_at > self.ttl:
            self._entries.pop(key, None)
            return None
        return value

    def put(self, key: Hashable, value: Any) -> None:
        """Store a value in the cache."""
        if self.ttl <= 0:
            return
        self._entries[key] = (time.monotonic(), value)

    def invalidate(self, key: Hashable) -> None:
        """Remove a specific cache entry."""
        self._entries.pop(key, None)

    def clear(self) -> None:
        """Clear all cached entries."""
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
