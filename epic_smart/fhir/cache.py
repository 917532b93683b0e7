"""
Read-through cache for FHIR resources, keyed by resource type and id.
"""

import copy
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple


class ResourceCache(ABC):
    """get/set/delete of resources by (resource type, id)"""

    @abstractmethod
    def get(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def set(self, resource_type: str, resource_id: str, resource: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def delete(self, resource_type: str, resource_id: str) -> None:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


@dataclass
class CacheEntry:
    """Cached resource with expiry"""

    data: Dict[str, Any]
    expires_at: datetime


class InMemoryResourceCache(ResourceCache):
    """Simple in-memory cache with TTL and oldest-first eviction. Entries are stored and returned as copies."""

    def __init__(self, ttl_seconds: int = 300, max_entries: int = 1000):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._cache: "OrderedDict[Tuple[str, str], CacheEntry]" = OrderedDict()

    def get(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        """Get cached resource if not expired"""
        key = (resource_type, resource_id)
        entry = self._cache.get(key)
        if entry is None:
            return None

        if datetime.now(timezone.utc) > entry.expires_at:
            del self._cache[key]
            return None

        return copy.deepcopy(entry.data)

    def set(self, resource_type: str, resource_id: str, resource: Dict[str, Any]) -> None:
        key = (resource_type, resource_id)
        if key in self._cache:
            del self._cache[key]
        elif len(self._cache) >= self.max_entries:
            # Evict oldest entry
            self._cache.popitem(last=False)

        self._cache[key] = CacheEntry(
            data=copy.deepcopy(resource),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.ttl_seconds),
        )

    def delete(self, resource_type: str, resource_id: str) -> None:
        self._cache.pop((resource_type, resource_id), None)

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
