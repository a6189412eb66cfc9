"""Per-merchant permission denial cache.

Owned by a reconciler instance. Once a merchant's invoice read is denied,
passes for that merchant short-circuit without remote calls until the entry is
invalidated (e.g. after the merchant re-authorizes) or, when a TTL is set,
until it expires.
"""

import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from reconciliation.models import ScopeDenial


class ScopeDenialCache:
    """Thread-safe map of merchant_id -> ScopeDenial.

    Args:
        ttl_seconds: Expire entries after this long; None keeps them until invalidated
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[ScopeDenial, float]] = {}
        self._lock = threading.Lock()

    def _expired(self, recorded: float) -> bool:
        return self.ttl_seconds is not None and self._clock() - recorded >= self.ttl_seconds

    def record(self, merchant_id: str, reason: str) -> ScopeDenial:
        denial = ScopeDenial(merchant_id=merchant_id, reason=reason)
        with self._lock:
            self._entries[merchant_id] = (denial, self._clock())
        return denial

    def get(self, merchant_id: str) -> Optional[ScopeDenial]:
        with self._lock:
            entry = self._entries.get(merchant_id)
            if entry is None:
                return None
            denial, recorded = entry
            if self._expired(recorded):
                del self._entries[merchant_id]
                return None
            return denial

    def is_denied(self, merchant_id: str) -> bool:
        return self.get(merchant_id) is not None

    def invalidate(self, merchant_id: str) -> bool:
        """Forget the merchant's denial. Returns True if one was cached."""
        with self._lock:
            return self._entries.pop(merchant_id, None) is not None

    def prune(self) -> int:
        """Drop expired entries. Returns how many were dropped."""
        with self._lock:
            expired = [m for m, (_, recorded) in self._entries.items() if self._expired(recorded)]
            for merchant_id in expired:
                del self._entries[merchant_id]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def merchants(self) -> List[str]:
        with self._lock:
            return sorted(
                m for m, (_, recorded) in self._entries.items() if not self._expired(recorded)
            )

    def __len__(self) -> int:
        return len(self.merchants())
