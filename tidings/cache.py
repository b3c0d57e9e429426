import fnmatch
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

import lmdb
from pydantic import ValidationError as PydanticValidationError

from tidings.datastore import ExpiringDatastore
from tidings.events import EventBus
from tidings.types import RegionScope, UpdateResponse

logger = logging.getLogger(__name__)

# Anything the shared tier can throw at us that should degrade, not fail
SHARED_TIER_ERRORS = (lmdb.Error, OSError, ValueError, TypeError)

DEFAULT_TTLS = {
    "update": 3600,
    "no_update": 600,
    "changed_files": 900,
    "news": 900,
    "weather": 600,
    "recipes": 7200,
    "stories": 7200,
    "discoveries": 21600,
    "default": 1800,
}


class MemoryTier:
    """
    Fast in-process cache tier: a size-bounded, least-recently-used map with
    a per-entry expiry. Safe to share between threads.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        max_ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries
        self.max_ttl = max_ttl
        self.clock = clock
        self.entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self.lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self.lock:
            entry = self.entries.get(key)
            if entry is None:
                return None
            expires, value = entry
            if expires <= self.clock():
                del self.entries[key]
                return None
            self.entries.move_to_end(key)
            return value

    def put(self, key: str, value: Any, ttl: float) -> None:
        if self.max_ttl is not None:
            ttl = min(ttl, self.max_ttl)
        with self.lock:
            self.entries[key] = (self.clock() + ttl, value)
            self.entries.move_to_end(key)
            while len(self.entries) > self.max_entries:
                self.entries.popitem(last=False)

    def evict(self, pattern: str) -> int:
        with self.lock:
            doomed = [key for key in self.entries if fnmatch.fnmatchcase(key, pattern)]
            for key in doomed:
                del self.entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self.lock:
            self.entries.clear()

    def __len__(self) -> int:
        with self.lock:
            return len(self.entries)


class ResponseCache:
    """
    Two-tier cache in front of update responses and resolved change sets.

    Reads try the in-process tier, then the shared (cross-process) tier,
    copying shared hits back into the in-process tier. Writes go to both.
    The shared tier is optional: if it is missing or failing, the cache
    carries on with the in-process tier alone and logs a warning.

    Values are stored as plain msgpack-able data, never as live objects, so
    callers can't mutate what another request will read.
    """

    def __init__(
        self,
        shared: ExpiringDatastore | None = None,
        ttls: dict[str, int] | None = None,
        memory_max_entries: int = 1000,
        memory_ttl: float | None = None,
        events: EventBus | None = None,
        enabled: bool = True,
        memory_clock: Callable[[], float] = time.monotonic,
        shared_clock: Callable[[], float] = time.time,
    ):
        self.memory = MemoryTier(memory_max_entries, memory_ttl, memory_clock)
        self.shared = shared
        self.ttls = {**DEFAULT_TTLS, **(ttls or {})}
        self.events = events
        self.enabled = enabled
        self.shared_clock = shared_clock
        self.counters = {
            "memory_hits": 0,
            "shared_hits": 0,
            "misses": 0,
            "writes": 0,
            "shared_errors": 0,
        }
        self.counter_lock = threading.Lock()

    ### Keys ###

    @staticmethod
    def update_key(scope: RegionScope, version: str) -> str:
        return f"update:{scope.key}:{version}"

    @staticmethod
    def changed_files_key(
        scope: RegionScope, from_version: str, to_version: str
    ) -> str:
        return f"changed_files:{scope.key}:{from_version}:{to_version}"

    @staticmethod
    def content_key(content_type: str, scope: RegionScope) -> str:
        return f"content:{content_type}:{scope.key}"

    @staticmethod
    def scope_pattern(scope: RegionScope) -> str:
        """
        Glob matching every cached update response for a scope.
        """
        return f"update:{scope.key}:*"

    def ttl_for(self, kind: str) -> int:
        return self.ttls.get(kind.lower(), self.ttls["default"])

    ### Generic get/put ###

    def _count(self, counter: str):
        with self.counter_lock:
            self.counters[counter] += 1

    def get(self, key: str) -> Any | None:
        if not self.enabled:
            return None
        value = self.memory.get(key)
        if value is not None:
            self._count("memory_hits")
            logger.debug(f"Cache hit (memory): {key}")
            return value
        if self.shared is not None:
            now = self.shared_clock()
            try:
                entry = self.shared.get_live(key, now=now)
            except SHARED_TIER_ERRORS as e:
                self._count("shared_errors")
                logger.warning(f"Error reading shared cache for {key}: {e}")
                entry = None
            if entry is not None:
                self._count("shared_hits")
                logger.debug(f"Cache hit (shared): {key}")
                self.memory.put(key, entry["value"], entry["expires"] - now)
                return entry["value"]
        self._count("misses")
        return None

    def put(self, key: str, value: Any, kind: str) -> None:
        if not self.enabled:
            return
        ttl = self.ttl_for(kind)
        self.memory.put(key, value, ttl)
        self._count("writes")
        if self.shared is not None:
            try:
                self.shared.put(key, value, ttl, now=self.shared_clock())
            except SHARED_TIER_ERRORS as e:
                self._count("shared_errors")
                logger.warning(f"Error writing shared cache for {key}: {e}")

    def evict(self, pattern: str) -> int:
        """
        Removes every entry whose key matches the glob pattern from both
        tiers. Never raises; returns how many entries went.
        """
        removed = self.memory.evict(pattern)
        if self.shared is not None:
            try:
                removed += self.shared.delete_matching(pattern)
            except SHARED_TIER_ERRORS as e:
                self._count("shared_errors")
                logger.warning(f"Error evicting shared cache for {pattern}: {e}")
        logger.info(f"Cache evicted for pattern {pattern} ({removed} entries)")
        if self.events is not None:
            self.events.cache_cleared(pattern)
        return removed

    def evict_all(self) -> None:
        self.memory.clear()
        if self.shared is not None:
            try:
                self.shared.clear()
            except SHARED_TIER_ERRORS as e:
                self._count("shared_errors")
                logger.warning(f"Error flushing shared cache: {e}")
        logger.info("All caches evicted")
        if self.events is not None:
            self.events.cache_cleared(None)

    ### Typed helpers ###

    def get_update_response(
        self, scope: RegionScope, version: str
    ) -> UpdateResponse | None:
        value = self.get(self.update_key(scope, version))
        if value is None:
            return None
        try:
            return UpdateResponse.model_validate(value)
        except PydanticValidationError as e:
            logger.warning(f"Discarding unreadable cached response: {e}")
            return None

    def put_update_response(
        self, scope: RegionScope, version: str, response: UpdateResponse
    ) -> None:
        self.put(
            self.update_key(scope, version),
            response.model_dump(mode="json"),
            "update" if response.has_updates else "no_update",
        )

    def get_changed_files(
        self, scope: RegionScope, from_version: str, to_version: str
    ) -> list[str] | None:
        value = self.get(self.changed_files_key(scope, from_version, to_version))
        return None if value is None else list(value)

    def put_changed_files(
        self,
        scope: RegionScope,
        from_version: str,
        to_version: str,
        changed_files: list[str],
    ) -> None:
        self.put(
            self.changed_files_key(scope, from_version, to_version),
            list(changed_files),
            "changed_files",
        )

    def get_content(self, content_type: str, scope: RegionScope) -> Any | None:
        return self.get(self.content_key(content_type, scope))

    def put_content(self, content_type: str, scope: RegionScope, value: Any) -> None:
        self.put(self.content_key(content_type, scope), value, content_type)

    ### Introspection ###

    def shared_available(self) -> bool:
        if self.shared is None:
            return False
        try:
            self.shared.get("ping")
            return True
        except SHARED_TIER_ERRORS as e:
            logger.warning(f"Shared cache check failed: {e}")
            return False

    def stats(self) -> dict[str, Any]:
        with self.counter_lock:
            result: dict[str, Any] = dict(self.counters)
        result["enabled"] = self.enabled
        result["memory_entries"] = len(self.memory)
        result["shared_available"] = self.shared_available()
        result["shared_entries"] = None
        if result["shared_available"]:
            try:
                result["shared_entries"] = len(self.shared)
            except SHARED_TIER_ERRORS:
                pass
        return result
