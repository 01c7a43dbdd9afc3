"""In-memory digest cache (deny-fast).

Rejects obviously duplicate inserts without a DB round trip. The store remains
authoritative for acceptance: a digest is recorded here *only after* the store
has confirmed it exists (successful insert or a unique-constraint conflict).
Because the trail is append-only, a cached digest can never become stale.

Env:
- CHAINLOG_DIGEST_CACHE_MAX_ITEMS (default: 50000)
"""

from __future__ import annotations

import os
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class DigestCacheConfig:
    max_items: int = 50000

    @classmethod
    def from_env(cls) -> "DigestCacheConfig":
        try:
            max_items = int(os.getenv("CHAINLOG_DIGEST_CACHE_MAX_ITEMS", str(cls.max_items)))
        except ValueError:
            max_items = cls.max_items
        # 0 disables the cache entirely.
        max_items = max(0, min(max_items, 5_000_000))
        return cls(max_items=max_items)


class DigestHotPath:
    def __init__(self, config: Optional[DigestCacheConfig] = None):
        self.config = config or DigestCacheConfig.from_env()
        self._lock = threading.Lock()
        self._digests: "OrderedDict[str, None]" = OrderedDict()

    def seen(self, digest: str) -> bool:
        with self._lock:
            if digest not in self._digests:
                return False
            self._digests.move_to_end(digest)
            return True

    def record(self, digest: str) -> None:
        if self.config.max_items <= 0:
            return
        with self._lock:
            self._digests[digest] = None
            self._digests.move_to_end(digest)
            while len(self._digests) > self.config.max_items:
                self._digests.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._digests)
