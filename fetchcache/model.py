"""
Defines types to use in the caching interface.

These types are as simple as possible in order to most conveniently consume and
produce instances of them. Requests and responses are immutable snapshots so
that a cached response can be handed to any number of callers without one of
them affecting what the others see.
"""

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
import json
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional
from urllib.parse import urlencode

from requests.structures import CaseInsensitiveDict


class CacheStrategy(Enum):
    """
    The policies governing how a request is satisfied.
    """
    CACHE_ONLY = 'cache-only'
    NETWORK_ONLY = 'network-only'
    CACHE_FIRST = 'cache-first'
    NETWORK_FIRST = 'network-first'
    STALE_WHILE_REVALIDATE = 'stale-while-revalidate'


class EvictionStrategy(Enum):
    LRU = 'LRU'
    LFU = 'LFU'
    FIFO = 'FIFO'


def _freeze(mapping: Optional[Mapping[str, str]]) -> Mapping[str, str]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class Request:
    """
    Represents an outbound request before a response exists.
    """

    method: str
    """
    The HTTP method of the request. E.g., "GET".
    """

    uri: str
    """
    The id of the resource being requested, possibly already carrying a query string.
    """

    headers: Mapping[str, str] = field(default_factory=dict)
    """
    All the headers being sent with the request.
    """

    params: Mapping[str, str] = field(default_factory=dict)
    """
    Query parameters to append to `uri`.
    """

    body: Optional[bytes] = field(default=None, compare=False)

    def __post_init__(self):
        object.__setattr__(self, 'method', self.method.upper())
        object.__setattr__(self, 'headers', _freeze(self.headers))
        object.__setattr__(self, 'params', _freeze(self.params))

    @property
    def url(self) -> str:
        """
        The full URL, including query parameters.
        """
        if not self.params:
            return self.uri
        query = urlencode(list(self.params.items()))
        if '?' not in self.uri:
            return '{}?{}'.format(self.uri, query)
        if self.uri.endswith(('?', '&')):
            return self.uri + query
        return '{}&{}'.format(self.uri, query)

    def header(self, name: str) -> Optional[str]:
        """
        Look up a header without regard to the case of its name.
        """
        return CaseInsensitiveDict(self.headers).get(name)


@dataclass(frozen=True)
class Response:
    """
    Represents an arbitrary response, without any bells and whistles.

    We deliberately do not use the `requests` response type; we just want an
    immutable value that does what we need, and nothing more.
    """

    status: int
    """
    The status code of the response. E.g., 200 or 400.
    """

    reason: str
    """
    The reason string, which relates to the status code.
    """

    headers: Mapping[str, str] = field(default_factory=dict)
    """
    All the headers sent with the response.
    """

    body: bytes = b''
    """
    The response payload.
    """

    def __post_init__(self):
        object.__setattr__(self, 'headers', _freeze(self.headers))

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        return json.loads(self.body.decode('utf-8'))


@dataclass
class CacheEntry:
    """
    A cache entry.

    The access metadata (`access_count`, `last_accessed_at`) is updated on
    every hit. Expiry depends only on `created_at` and `ttl_millis`, never on
    how often the entry has been read.
    """
    key: str
    request: Request
    response: Response
    created_at: float
    ttl_millis: int
    tags: FrozenSet[str] = frozenset()
    size_bytes: int = 0
    access_count: int = 1
    last_accessed_at: float = 0

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl_millis

    def touch(self, now: float) -> None:
        self.access_count += 1
        self.last_accessed_at = now

    def metadata(self) -> Dict[str, Any]:
        """
        Everything about the entry except the response itself.
        """
        return {
            'key': self.key,
            'method': self.request.method,
            'url': self.request.url,
            'created_at': self.created_at,
            'ttl_millis': self.ttl_millis,
            'tags': sorted(self.tags),
            'size_bytes': self.size_bytes,
            'access_count': self.access_count,
            'last_accessed_at': self.last_accessed_at,
        }


@dataclass(frozen=True)
class CachePolicy:
    """
    How a single request is to be served and, if admitted, cached.
    """
    key: str
    strategy: CacheStrategy
    ttl_millis: int
    tags: FrozenSet[str] = frozenset()


@dataclass
class CacheConfig:
    default_ttl_millis: int = 5 * 60 * 1000
    max_total_size_bytes: int = 50 * 1024 * 1024
    max_entry_count: int = 1000
    cleanup_interval_millis: int = 10 * 60 * 1000
    eviction_strategy: EvictionStrategy = EvictionStrategy.LRU

    _ENV_PREFIX = 'FETCHCACHE_'

    def __post_init__(self):
        if not isinstance(self.eviction_strategy, EvictionStrategy):
            try:
                self.eviction_strategy = EvictionStrategy(str(self.eviction_strategy).upper())
            except ValueError:
                raise ValueError('Unknown eviction strategy: {}'.format(self.eviction_strategy))
        for name in ('default_ttl_millis', 'max_total_size_bytes', 'max_entry_count', 'cleanup_interval_millis'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValueError('{} must be a positive integer, got {!r}'.format(name, value))

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> 'CacheConfig':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> 'CacheConfig':
        """
        Build a config from `FETCHCACHE_*` variables, falling back to the defaults for any that are unset.
        """
        values = {}
        for f in fields(cls):
            raw = environ.get(cls._ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            values[f.name] = raw if f.name == 'eviction_strategy' else int(raw)
        return cls(**values)

    def as_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['eviction_strategy'] = self.eviction_strategy.value
        return result


@dataclass
class StrategyStats:
    entries: int = 0
    hits: int = 0
    misses: int = 0


@dataclass
class CacheStats:
    """
    Aggregate statistics for a cache.

    These are derived from the cache's behaviour and are not authoritative:
    `total_entries` and `total_size_bytes` are refreshed after each mutation,
    while the request counters only ever grow until the cache is cleared.
    """
    total_entries: int = 0
    total_size_bytes: int = 0
    total_requests: int = 0
    hits: int = 0
    misses: int = 0
    hit_rate_percent: float = 0.0
    miss_rate_percent: float = 0.0
    last_cleanup_at: float = 0
    strategies: Dict[str, StrategyStats] = field(default_factory=dict)

    def record(self, strategy: CacheStrategy, hit: bool) -> None:
        self.total_requests += 1
        per_strategy = self.strategies.setdefault(strategy.value, StrategyStats())
        if hit:
            self.hits += 1
            per_strategy.hits += 1
        else:
            self.misses += 1
            per_strategy.misses += 1
        self.hit_rate_percent = self.hits / self.total_requests * 100
        self.miss_rate_percent = self.misses / self.total_requests * 100

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> 'CacheStats':
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in values.items() if k in known}
        values['strategies'] = {
            name: StrategyStats(**counters)
            for name, counters in values.get('strategies', {}).items()
        }
        return cls(**values)
