"""Position cache with TTL expiry, LRU eviction and durable persistence."""

import json
import zlib
import base64
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Dict, List, Callable, Iterable, Any

from .config import (
    CACHE_MAX_SIZE,
    CACHE_TTL_MS,
    CACHE_PERSISTENCE_ENABLED,
    CACHE_STORAGE_KEY,
    CACHE_CLEANUP_INTERVAL_MS,
    CACHE_COMPRESSION_THRESHOLD,
)
from .models import Position, CacheEntry, validate_position, cache_key, now_ms

logger = logging.getLogger(__name__)

COMPRESSED_PREFIX = "compressed:"


@dataclass
class CacheConfig:
    max_size: int = CACHE_MAX_SIZE
    ttl_ms: int = CACHE_TTL_MS
    enable_persistence: bool = CACHE_PERSISTENCE_ENABLED
    storage_key: str = CACHE_STORAGE_KEY
    cleanup_interval_ms: int = CACHE_CLEANUP_INTERVAL_MS
    enable_lru: bool = True
    compression_threshold: int = CACHE_COMPRESSION_THRESHOLD


class CacheEventType(str, Enum):
    HIT = "hit"
    MISS = "miss"
    SET = "set"
    DELETE = "delete"
    CLEAR = "clear"
    CLEANUP = "cleanup"
    PERSIST = "persist"
    LOAD = "load"


@dataclass
class CacheEvent:
    type: CacheEventType
    timestamp: int
    key: Optional[str] = None
    data: Any = None


CacheListener = Callable[[CacheEvent], None]


class PositionCache:
    """
    Bounded position cache keyed by quantized coordinates.

    Entries expire after ttl_ms (checked lazily on read and by a periodic
    sweep). When full, inserting a new key evicts the least recently used
    entry. With persistence enabled the whole cache, its LRU order and its
    statistics are written to a key/value storage and restored on startup.
    Writes triggered by set() happen on a scheduler task, never on the
    caller's thread; without a scheduler they wait for the next persist().

    Attributes:
        config: Active CacheConfig
        storage: Key/value storage (read/write/remove) or None

    Note:
        The OrderedDict order is the LRU order: first item is the eviction
        candidate. Storage failures are logged and never reach callers.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        storage=None,
        scheduler=None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.config = config or CacheConfig()
        self.storage = storage
        self.scheduler = scheduler
        self._clock = clock or now_ms
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self._listeners: Dict[CacheEventType, List[CacheListener]] = {}
        self._cleanup_job = None
        self._persist_job = None
        self._persist_lock = threading.Lock()
        self._dirty = False
        self._flush_pending = False
        self._reset_stats()

        if self._persistence_active():
            self._load_from_storage()

    def _reset_stats(self):
        self._hit_count = 0
        self._miss_count = 0
        self._cleanup_count = 0
        self._storage_size = 0

    def _persistence_active(self) -> bool:
        return self.config.enable_persistence and self.storage is not None

    def _is_expired(self, entry: CacheEntry, now: Optional[int] = None) -> bool:
        now = self._clock() if now is None else now
        return (now - entry.timestamp) > self.config.ttl_ms

    def get(self, key: str) -> Optional[CacheEntry]:
        """
        Get an entry, refreshing its recency.

        Unknown and expired keys count as a miss; an expired entry is
        removed on the spot.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._is_expired(entry):
                self._remove(key)
                logger.debug(f"Cache EXPIRED: {key}")
                entry = None

            if entry is None:
                self._miss_count += 1
                event = CacheEvent(CacheEventType.MISS, self._clock(), key=key)
            else:
                if self.config.enable_lru:
                    self._entries.move_to_end(key)
                self._hit_count += 1
                event = CacheEvent(CacheEventType.HIT, self._clock(), key=key, data=entry)

        self._emit(event)
        return entry

    def set(self, key: str, position: Position):
        """
        Insert or overwrite an entry.

        Raises:
            InvalidPositionError: If the position violates the coordinate invariant
        """
        validate_position(position)
        entry = CacheEntry(
            position=position,
            timestamp=self._clock(),
            accuracy=position.accuracy or 0.0,
        )
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.config.max_size:
                self._evict_oldest()
            self._entries[key] = entry
            self._entries.move_to_end(key)
            logger.debug(f"Cache SET: {key}")

        self._emit(CacheEvent(CacheEventType.SET, entry.timestamp, key=key, data=entry))

        if self._persistence_active():
            self._schedule_flush()

    def put(self, position: Position) -> str:
        """Cache a position under its quantized key and return the key."""
        key = cache_key(position.latitude, position.longitude)
        self.set(key, position)
        return key

    def delete(self, key: str) -> bool:
        """Remove an entry. Returns True if it existed."""
        with self._lock:
            deleted = self._remove(key)
        if deleted:
            self._emit(CacheEvent(CacheEventType.DELETE, self._clock(), key=key))
        return deleted

    def _remove(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def _evict_oldest(self):
        if not self._entries:
            return
        oldest_key = next(iter(self._entries))
        self._remove(oldest_key)
        logger.debug(f"Cache EVICT: {oldest_key}")
        self._emit(CacheEvent(CacheEventType.DELETE, self._clock(), key=oldest_key, data={"evicted": True}))

    def clear(self):
        """Drop every entry and the persisted copy."""
        with self._lock:
            self._entries.clear()
            self._dirty = False
        self._emit(CacheEvent(CacheEventType.CLEAR, self._clock()))
        if self._persistence_active():
            self._clear_storage()

    def cleanup(self) -> int:
        """Remove all expired entries. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
            for key in expired:
                self._remove(key)
            self._cleanup_count += 1

        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired positions from cache")
        self._emit(CacheEvent(CacheEventType.CLEANUP, now, data={"cleaned_count": len(expired)}))
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        """Hit/miss counters and size information."""
        with self._lock:
            total = self._hit_count + self._miss_count
            return {
                "hit_count": self._hit_count,
                "miss_count": self._miss_count,
                "total_requests": total,
                "hit_rate": self._hit_count / total if total else 0.0,
                "miss_rate": self._miss_count / total if total else 0.0,
                "current_size": len(self._entries),
                "max_size": self.config.max_size,
                "cleanup_count": self._cleanup_count,
                "storage_size": self._storage_size,
            }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    # Bulk access

    def keys(self) -> List[str]:
        """Keys in LRU order, least recently used first."""
        with self._lock:
            return list(self._entries)

    def values(self) -> List[CacheEntry]:
        with self._lock:
            return list(self._entries.values())

    def get_multiple(self, keys: Iterable[str]) -> List[Optional[CacheEntry]]:
        return [self.get(key) for key in keys]

    def set_multiple(self, items: Iterable[tuple]):
        for key, position in items:
            self.set(key, position)

    def preheat(self, positions: Iterable[Position]) -> int:
        """Seed the cache with known positions; invalid ones are skipped."""
        count = 0
        for position in positions:
            if not position.is_valid():
                logger.warning(f"Skipping invalid position during preheat: ({position.latitude}, {position.longitude})")
                continue
            self.put(position)
            count += 1
        return count

    def snapshot(self) -> List[CacheEntry]:
        """
        Non-expired entries, without touching statistics or LRU order.

        Used for history queries so that reading history does not count as
        cache traffic.
        """
        now = self._clock()
        with self._lock:
            return [entry for entry in self._entries.values() if not self._is_expired(entry, now)]

    def latest(self, max_age_ms: Optional[int] = None) -> Optional[CacheEntry]:
        """Freshest entry younger than max_age_ms (and within TTL)."""
        now = self._clock()
        entries = self.snapshot()
        if max_age_ms is not None:
            entries = [entry for entry in entries if now - entry.timestamp <= max_age_ms]
        if not entries:
            return None
        return max(entries, key=lambda entry: entry.timestamp)

    def lookup_latest(self, max_age_ms: Optional[int] = None) -> Optional[CacheEntry]:
        """
        Like latest(), but counted as a cache read.

        A found entry counts as a hit and becomes most recently used;
        otherwise a miss is counted.
        """
        now = self._clock()
        with self._lock:
            found = None
            for key, entry in self._entries.items():
                if self._is_expired(entry, now):
                    continue
                if max_age_ms is not None and now - entry.timestamp > max_age_ms:
                    continue
                if found is None or entry.timestamp >= found[1].timestamp:
                    found = (key, entry)

            if found is None:
                self._miss_count += 1
                event = CacheEvent(CacheEventType.MISS, now)
            else:
                key, entry = found
                if self.config.enable_lru:
                    self._entries.move_to_end(key)
                self._hit_count += 1
                event = CacheEvent(CacheEventType.HIT, now, key=key, data=entry)

        self._emit(event)
        return found[1] if found else None

    # Persistence

    def _schedule_flush(self):
        with self._lock:
            self._dirty = True
            if self.scheduler is None or self._flush_pending:
                return
            self._flush_pending = True
        self.scheduler.submit(self._flush, name="cache-flush")

    def _flush(self):
        with self._lock:
            self._flush_pending = False
            dirty = self._dirty
        if dirty:
            self.persist()

    def persist(self):
        """Serialize the cache to storage. Failures are logged, never raised."""
        if not self._persistence_active():
            return
        with self._persist_lock:
            self._write_snapshot()

    def _write_snapshot(self):
        try:
            with self._lock:
                self._dirty = False
                data = {
                    "entries": [[key, entry.to_dict()] for key, entry in self._entries.items()],
                    "accessOrder": list(self._entries),
                    "stats": {
                        "hitCount": self._hit_count,
                        "missCount": self._miss_count,
                        "cleanupCount": self._cleanup_count,
                    },
                    "timestamp": self._clock(),
                }
            serialized = json.dumps(data)
            if len(serialized) > self.config.compression_threshold:
                serialized = self._compress(serialized)

            self.storage.write(self.config.storage_key, serialized)
            self._storage_size = len(serialized)
            self._emit(CacheEvent(CacheEventType.PERSIST, self._clock(), data={"size": len(serialized)}))
        except Exception as e:
            logger.error(f"Failed to persist position cache: {e}")

    def _load_from_storage(self):
        """Restore entries, LRU order and stats, then drop expired entries."""
        try:
            stored = self.storage.read(self.config.storage_key)
            if not stored:
                return

            if stored.startswith(COMPRESSED_PREFIX):
                data = json.loads(self._decompress(stored))
            else:
                data = json.loads(stored)

            entries = {key: CacheEntry.from_dict(value) for key, value in data.get("entries", [])}
            order = [key for key in data.get("accessOrder", []) if key in entries]
            order += [key for key in entries if key not in order]

            restored: "OrderedDict[str, CacheEntry]" = OrderedDict()
            for key in order:
                if entries[key].position.is_valid():
                    restored[key] = entries[key]
            while len(restored) > self.config.max_size:
                restored.popitem(last=False)

            stats = data.get("stats") or {}
            with self._lock:
                self._entries = restored
                self._hit_count = int(stats.get("hitCount", 0))
                self._miss_count = int(stats.get("missCount", 0))
                self._cleanup_count = int(stats.get("cleanupCount", 0))
                self._storage_size = len(stored)

            logger.info(f"Loaded {len(restored)} cached positions from storage")
            self.cleanup()
            self._emit(CacheEvent(CacheEventType.LOAD, self._clock(), data={"size": len(restored)}))
        except Exception as e:
            logger.error(f"Failed to load position cache from storage: {e}")

    def _clear_storage(self):
        try:
            self.storage.remove(self.config.storage_key)
            self._storage_size = 0
        except Exception as e:
            logger.error(f"Failed to clear persisted position cache: {e}")

    @staticmethod
    def _compress(data: str) -> str:
        packed = base64.b64encode(zlib.compress(data.encode("utf-8"))).decode("ascii")
        return COMPRESSED_PREFIX + packed

    @staticmethod
    def _decompress(data: str) -> str:
        packed = data[len(COMPRESSED_PREFIX):]
        return zlib.decompress(base64.b64decode(packed)).decode("utf-8")

    # Timers

    def start(self):
        """Register the expiry sweep and the persistence flush with the scheduler."""
        if self.scheduler is None:
            logger.debug("No scheduler configured, cache timers not started")
            return
        self.stop()
        self._cleanup_job = self.scheduler.every(
            self.config.cleanup_interval_ms, self.cleanup, name="cache-cleanup"
        )
        if self._persistence_active():
            self._persist_job = self.scheduler.every(
                self.config.cleanup_interval_ms * 2, self.persist, name="cache-persist"
            )

    def stop(self):
        """Cancel cache timers."""
        if self._cleanup_job is not None:
            self._cleanup_job.cancel()
            self._cleanup_job = None
        if self._persist_job is not None:
            self._persist_job.cancel()
            self._persist_job = None

    @property
    def running(self) -> bool:
        return self._cleanup_job is not None

    def update_config(self, **changes):
        """Apply config changes and restart timers if they were running."""
        was_running = self.running
        with self._lock:
            self.config = replace(self.config, **changes)
            while len(self._entries) > self.config.max_size:
                self._evict_oldest()
        if was_running:
            self.start()

    def destroy(self):
        """Stop timers, flush to storage and release in-memory state."""
        self.stop()
        self.persist()
        with self._lock:
            self._entries.clear()
        self._listeners.clear()

    # Events

    def add_listener(self, event_type: CacheEventType, listener: CacheListener):
        self._listeners.setdefault(event_type, []).append(listener)

    def remove_listener(self, event_type: CacheEventType, listener: CacheListener):
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    def _emit(self, event: CacheEvent):
        for listener in list(self._listeners.get(event.type, [])):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Cache event listener error: {e}")
