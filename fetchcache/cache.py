from abc import ABC, abstractmethod
import asyncio
from collections import Counter
import copy
import dataclasses
from operator import attrgetter
import logging
import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Pattern, Union

from . import strategy
from .model import (CacheConfig, CacheEntry, CacheStats, CacheStrategy, EvictionStrategy, Request, Response,
                    StrategyStats)
from .storage import CorruptMetadata, InMemoryMetadataStorage, MetadataStorage
from .util import estimate_size, format_bytes, now_millis


logger = logging.getLogger(__name__)

MAX_ENTRY_SIZE_BYTES = 10 * 1024 * 1024

Clock = Callable[[], float]

# Entries that sort first are evicted first. Ties keep insertion order.
_EVICTION_ORDER = {
    EvictionStrategy.LRU: attrgetter('last_accessed_at'),
    EvictionStrategy.LFU: attrgetter('access_count'),
    EvictionStrategy.FIFO: attrgetter('created_at'),
}


class Cache(ABC):
    """
    An abstraction of a response cache.

    A response cache remembers a response such that it can be recalled later for a matching request. Deciding *when* to
    consult the cache, and whether to go to the network instead, is left to the component using it.
    """

    @abstractmethod
    def get(self, request: Request) -> Optional[CacheEntry]:
        """
        Retrieve a cached response matching `request`.

        @param request
          The request to look up in the cache.
        @return
          A live cache entry for `request`, or `None` if there is none.
        """

    @abstractmethod
    def put(self, request: Request, response: Response, ttl_millis: Optional[int] = None,
            tags: Iterable[str] = ()) -> Optional[CacheEntry]:
        """
        Add a response to the cache, replacing any prior entry for `request`.

        @param request
          The request for which a response should be cached.
        @param response
          The response to cache.
        @param ttl_millis
          How long the entry stays live. Defaults to the cache's configured TTL.
        @param tags
          Labels by which the entry can later be invalidated.
        @return
          The new cache entry, or `None` if the cache refused the response.
        """

    @abstractmethod
    def invalidate_by_pattern(self, pattern: Union[str, Pattern]) -> int:
        """
        Remove every entry whose key matches `pattern`.

        @return
          The number of entries removed.
        """

    @abstractmethod
    def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """
        Remove every entry carrying at least one of `tags`.

        @return
          The number of entries removed.
        """

    @abstractmethod
    def clear(self) -> None:
        """
        Remove all entries and reset the statistics.
        """

    def should_cache(self, request: Request) -> bool:
        return strategy.should_cache(request)

    def resolve_strategy(self, request: Request) -> CacheStrategy:
        return strategy.resolve_strategy(request)

    def close(self):
        """
        Close any resources associated with the cache.
        """


class MemoryCache(Cache):
    """
    An in-memory cache with expiry, tags, and size and entry budgets.

    All methods run to completion without awaiting anything, so on a single event loop no other task can observe a
    half-applied mutation. Only metadata is persisted to `storage`; response bodies live in memory only, so a restarted
    cache starts with its statistics and configuration but without any entries.
    """

    def __init__(self, config: Optional[CacheConfig] = None, storage: Optional[MetadataStorage] = None,
                 clock: Optional[Clock] = None) -> None:
        self.__storage = storage if storage is not None else InMemoryMetadataStorage()
        self.__clock = clock if clock is not None else now_millis
        self.__entries: Dict[str, CacheEntry] = {}
        self.__stats = CacheStats(last_cleanup_at=self.__clock())
        self.__config = CacheConfig()
        self.__cleanup_task: Optional[asyncio.Task] = None

        self._restore()
        if config is not None:
            self.__config = config

    @property
    def config(self) -> CacheConfig:
        return dataclasses.replace(self.__config)

    @property
    def stats(self) -> CacheStats:
        return copy.deepcopy(self.__stats)

    def __len__(self) -> int:
        return len(self.__entries)

    def __contains__(self, request: Request) -> bool:
        return strategy.generate_cache_key(request) in self.__entries

    def get(self, request: Request) -> Optional[CacheEntry]:
        key = strategy.generate_cache_key(request)
        entry = self.__entries.get(key)

        if entry is None:
            logger.info('No cache entry for {}'.format(key))
            self._record(request, hit=False)
            return None

        now = self.__clock()
        if entry.is_expired(now):
            logger.info('Cache entry for {} has expired. Deleting it.'.format(key))
            del self.__entries[key]
            self._record(request, hit=False)
            self._refresh_stats()
            return None

        entry.touch(now)
        self._record(request, hit=True)
        return entry

    def put(self, request: Request, response: Response, ttl_millis: Optional[int] = None,
            tags: Iterable[str] = ()) -> Optional[CacheEntry]:
        key = strategy.generate_cache_key(request)

        if not response.ok:
            logger.info('Refusing to create cache entry for {}. Status code {} is not cachable.'.format(
                key, response.status))
            return None

        size = estimate_size(response)
        if size > MAX_ENTRY_SIZE_BYTES:
            logger.warning('Response too large to cache: {} ({})'.format(key, format_bytes(size)))
            return None
        if size > self.__config.max_total_size_bytes:
            logger.warning('Response for {} ({}) exceeds the total cache size of {}'.format(
                key, format_bytes(size), format_bytes(self.__config.max_total_size_bytes)))
            return None

        self.__entries.pop(key, None)
        self._ensure_space(size)

        now = self.__clock()
        entry = CacheEntry(key=key,
                           request=request,
                           response=response,
                           created_at=now,
                           ttl_millis=ttl_millis or self.__config.default_ttl_millis,
                           tags=frozenset(tags),
                           size_bytes=size,
                           access_count=1,
                           last_accessed_at=now)
        self.__entries[key] = entry
        logger.info('Cached {} ({}, ttl {} ms)'.format(key, format_bytes(size), entry.ttl_millis))

        self._refresh_stats()
        self._persist()
        return entry

    def delete(self, request: Request) -> None:
        key = strategy.generate_cache_key(request)
        if self.__entries.pop(key, None) is not None:
            self._refresh_stats()
            self._persist()

    def invalidate_by_pattern(self, pattern: Union[str, Pattern]) -> int:
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        return self._remove_where(lambda entry: regex.search(entry.key) is not None)

    def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        tags = frozenset(tags)
        return self._remove_where(lambda entry: not entry.tags.isdisjoint(tags))

    def clear(self) -> None:
        self.__entries.clear()
        self.__stats = CacheStats(last_cleanup_at=self.__clock())
        logger.info('Cache cleared')
        self._persist()

    def update_config(self, **changes: Any) -> CacheConfig:
        """
        Merge `changes` into the configuration.

        Shrinking either budget evicts entries straight away.
        """
        previous = self.__config
        self.__config = dataclasses.replace(previous, **changes)

        if (self.__config.max_total_size_bytes < previous.max_total_size_bytes
                or self.__config.max_entry_count < previous.max_entry_count):
            self._ensure_space(0, slots=0)
            self._refresh_stats()
        self._persist()
        return self.config

    def cleanup(self) -> int:
        """
        Remove expired entries, then enforce the budgets.

        @return
          The number of expired entries removed.
        """
        now = self.__clock()
        removed = self._remove_where(lambda entry: entry.is_expired(now), persist=False)
        self._ensure_space(0, slots=0)
        self.__stats.last_cleanup_at = now
        self._refresh_stats()
        self._persist()
        logger.info('Cache cleanup completed. Removed {} expired entries.'.format(removed))
        return removed

    def entries(self) -> List[CacheEntry]:
        """
        All entries, most recently accessed first.
        """
        return sorted(self.__entries.values(), key=attrgetter('last_accessed_at'), reverse=True)

    def size_info(self) -> Dict[str, Any]:
        return {
            'entries': len(self.__entries),
            'size': format_bytes(self._current_size()),
            'max_size': format_bytes(self.__config.max_total_size_bytes),
        }

    def start_cleanup(self) -> asyncio.Task:
        """
        Start sweeping the cache periodically on the running event loop.
        """
        if self.__cleanup_task is None or self.__cleanup_task.done():
            self.__cleanup_task = asyncio.ensure_future(self._run_cleanup())
        return self.__cleanup_task

    def close(self):
        if self.__cleanup_task is not None:
            self.__cleanup_task.cancel()
            self.__cleanup_task = None
        self._persist()

    async def _run_cleanup(self) -> None:
        while True:
            await asyncio.sleep(self.__config.cleanup_interval_millis / 1000)
            self.cleanup()

    def _current_size(self) -> int:
        return sum(entry.size_bytes for entry in self.__entries.values())

    def _within_budget(self, size: int, required: int, slots: int) -> bool:
        return (size + required <= self.__config.max_total_size_bytes
                and len(self.__entries) + slots <= self.__config.max_entry_count)

    def _ensure_space(self, required: int, slots: int = 1) -> None:
        """
        Evict entries until `required` more bytes and `slots` more entries fit within the budgets.

        Entries are evicted greedily in the order given by the configured eviction strategy.
        """
        size = self._current_size()
        if self._within_budget(size, required, slots):
            return

        victims = sorted(self.__entries.values(), key=_EVICTION_ORDER[self.__config.eviction_strategy])
        for victim in victims:
            del self.__entries[victim.key]
            size -= victim.size_bytes
            logger.info('Evicted {} ({})'.format(victim.key, self.__config.eviction_strategy.value))
            if self._within_budget(size, required, slots):
                break

    def _remove_where(self, predicate: Callable[[CacheEntry], bool], persist: bool = True) -> int:
        doomed = [key for key, entry in self.__entries.items() if predicate(entry)]
        for key in doomed:
            del self.__entries[key]

        if doomed and persist:
            self._refresh_stats()
            self._persist()
        return len(doomed)

    def _record(self, request: Request, hit: bool) -> None:
        self.__stats.record(strategy.resolve_strategy(request), hit)

    def _refresh_stats(self) -> None:
        self.__stats.total_entries = len(self.__entries)
        self.__stats.total_size_bytes = self._current_size()
        counts = Counter(strategy.resolve_strategy(entry.request).value for entry in self.__entries.values())
        for name in set(self.__stats.strategies) | set(counts):
            self.__stats.strategies.setdefault(name, StrategyStats()).entries = counts[name]

    def _persist(self) -> None:
        document = {
            'metadata': [entry.metadata() for entry in self.__entries.values()],
            'stats': self.__stats,
            'config': self.__config,
        }
        try:
            self.__storage.save(document)
        except (OSError, TypeError, ValueError):
            logger.warning('Failed to save cache metadata', exc_info=True)

    def _restore(self) -> None:
        try:
            document = self.__storage.load()
        except (CorruptMetadata, OSError):
            logger.warning('Failed to load cache metadata', exc_info=True)
            return
        if not document:
            return

        try:
            if document.get('stats'):
                self.__stats = CacheStats.from_dict(document['stats'])
            if document.get('config'):
                self.__config = CacheConfig.from_dict(document['config'])
        except (AttributeError, TypeError, ValueError):
            logger.warning('Ignoring malformed cache metadata', exc_info=True)
            self.__stats = CacheStats(last_cleanup_at=self.__clock())
            self.__config = CacheConfig()
            return

        # Bodies are never persisted, so the restored cache holds no entries.
        self.__stats.total_entries = 0
        self.__stats.total_size_bytes = 0
        for per_strategy in self.__stats.strategies.values():
            per_strategy.entries = 0
        logger.info('Restored cache statistics and configuration ({} entries known before restart)'.format(
            len(document.get('metadata', []))))


def create(config: Optional[CacheConfig] = None, storage: Optional[MetadataStorage] = None,
           clock: Optional[Clock] = None) -> MemoryCache:
    """
    Create a cache, restoring any statistics and configuration held in `storage`.

    An explicitly given `config` takes precedence over a restored one.
    """
    return MemoryCache(config=config, storage=storage, clock=clock)


def dispose(cache: Cache) -> None:
    cache.close()
