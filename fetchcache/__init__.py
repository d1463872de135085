from .cache import Cache, MemoryCache, create, dispose
from .model import CacheConfig, CacheEntry, CacheStats, CacheStrategy, EvictionStrategy, Request, Response
from .orchestrator import RequestOrchestrator
from .transport import RequestsTransport, Transport, TransportError
