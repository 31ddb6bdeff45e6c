"""
ResultCache - TTL cache of report results keyed by report and parameters.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from ..models import CacheEntry, ReportResult, utcnow

logger = logging.getLogger(__name__)


def canonical_parameters(parameters: Optional[Dict[str, Any]]) -> str:
    """Serialize parameters with sorted keys so equal sets give equal strings."""
    return json.dumps(parameters or {}, sort_keys=True, separators=(",", ":"), default=str)


def make_key(report_id: str, parameters: Optional[Dict[str, Any]]) -> str:
    return f"{report_id}_{canonical_parameters(parameters)}"


class ResultCache:
    """
    In-memory result cache.

    Expiry is checked lazily on read; expired entries are only evicted when
    the next entry is written.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow, default_ttl: int = 3600):
        self._clock = clock
        self.default_ttl = default_ttl
        self._entries: Dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[ReportResult]:
        entry = self._entries.get(key)
        if entry is None or entry.is_expired(self._clock()):
            self._misses += 1
            return None
        self._hits += 1
        return entry.result

    def put(self, key: str, result: ReportResult, ttl: Optional[int] = None) -> None:
        now = self._clock()
        self.evict_expired(now)
        ttl = self.default_ttl if ttl is None else ttl
        # Entry is fully built before it becomes visible
        self._entries[key] = CacheEntry(
            key=key,
            result=result,
            expires_at=now + timedelta(seconds=ttl),
        )

    def evict_expired(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Evicted {len(expired)} expired cache entries")
        return len(expired)

    def invalidate(self, report_id: str) -> int:
        """Drop every entry belonging to a report."""
        prefix = f"{report_id}_{{"
        keys = [k for k in self._entries if k.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def get_stats(self) -> Dict[str, int]:
        return {
            "entries": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
        }

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self._clock())

    def __len__(self) -> int:
        return len(self._entries)
