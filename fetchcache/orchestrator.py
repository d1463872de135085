"""
Serves requests from the cache, the network, or both.

Each request is resolved to a `CachePolicy` and then handled according to
its strategy. Identical requests in flight at the same time share a single
network fetch, and stale-while-revalidate refreshes happen in detached
background tasks that no caller waits on.
"""

import asyncio
import functools
import json
import logging
from typing import Awaitable, Dict, FrozenSet, Optional

from . import strategy
from .cache import Cache
from .model import CachePolicy, CacheStrategy, Request, Response
from .notification import LoggingNotifier, Notifier
from .transport import Transport, TransportError


logger = logging.getLogger(__name__)

BACKGROUND_SUFFIX = '_bg'

CACHE_ONLY_MISS = Response(status=504,
                           reason='Gateway Timeout',
                           headers={'Content-Type': 'application/json'},
                           body=json.dumps({'error': 'Resource not available in cache'}).encode('utf-8'))

_HANDLERS = {
    CacheStrategy.CACHE_ONLY: '_cache_only',
    CacheStrategy.NETWORK_ONLY: '_network_only',
    CacheStrategy.CACHE_FIRST: '_cache_first',
    CacheStrategy.NETWORK_FIRST: '_network_first',
    CacheStrategy.STALE_WHILE_REVALIDATE: '_stale_while_revalidate',
}


class RequestOrchestrator:
    def __init__(self, cache: Cache, transport: Transport, notifier: Optional[Notifier] = None) -> None:
        self.__cache = cache
        self.__transport = transport
        self.__notifier = notifier if notifier is not None else LoggingNotifier()
        self.__pending: Dict[str, asyncio.Future] = {}

    @property
    def pending(self) -> FrozenSet[str]:
        """
        Keys of the network fetches currently in flight.
        """
        return frozenset(self.__pending)

    async def orchestrate(self, request: Request) -> Response:
        """
        Produce a response for `request`.

        @throws TransportError
          If the network failed and the strategy had no cached response to fall back on.
        """
        if not self.__cache.should_cache(request):
            logger.info('Bypassing the cache for {} {}'.format(request.method, request.url))
            return await self.__transport.send(request)

        policy = strategy.resolve(request)
        logger.info('Serving {} with strategy {}'.format(policy.key, policy.strategy.value))
        handler = getattr(self, _HANDLERS[policy.strategy])
        return await handler(request, policy)

    async def drain(self) -> None:
        """
        Wait until every fetch in flight, including background revalidations, has settled.
        """
        while True:
            running = [task for task in self.__pending.values() if not task.done()]
            if not running:
                break
            await asyncio.wait(running)
        # Let the settlement callbacks run.
        await asyncio.sleep(0)

    async def _cache_only(self, request: Request, policy: CachePolicy) -> Response:
        entry = self.__cache.get(request)
        if entry is not None:
            return entry.response
        logger.info('{} is not cached. Answering with {}.'.format(policy.key, CACHE_ONLY_MISS.status))
        return CACHE_ONLY_MISS

    async def _network_only(self, request: Request, policy: CachePolicy) -> Response:
        return await self._fetch(request, policy)

    async def _cache_first(self, request: Request, policy: CachePolicy) -> Response:
        entry = self.__cache.get(request)
        if entry is not None:
            return entry.response
        return await self._fetch(request, policy)

    async def _network_first(self, request: Request, policy: CachePolicy) -> Response:
        response = None
        failure = None
        try:
            response = await self._fetch(request, policy)
        except TransportError as e:
            failure = e

        if response is not None and response.ok:
            return response

        entry = self.__cache.get(request)
        if entry is not None:
            self._notify('Serving Cached Data', 'Network request failed, serving cached version')
            return entry.response

        if failure is not None:
            raise failure
        return response

    async def _stale_while_revalidate(self, request: Request, policy: CachePolicy) -> Response:
        entry = self.__cache.get(request)
        if entry is None:
            return await self._fetch(request, policy)

        self._revalidate_in_background(request, policy)
        return entry.response

    def _fetch(self, request: Request, policy: CachePolicy) -> Awaitable[Response]:
        task = self.__pending.get(policy.key)
        if task is not None and not task.done():
            logger.info('Joining the request already in flight for {}'.format(policy.key))
        else:
            task = self._spawn(policy.key, self._fetch_and_admit(request, policy))

        # A caller that stops waiting must not cancel the fetch for everyone else.
        return asyncio.shield(task)

    def _revalidate_in_background(self, request: Request, policy: CachePolicy) -> None:
        key = policy.key + BACKGROUND_SUFFIX
        running = self.__pending.get(key)
        if running is not None and not running.done():
            logger.info('Background update already running for {}'.format(policy.key))
            return

        task = self._spawn(key, self._fetch_and_admit(request, policy))
        task.add_done_callback(functools.partial(self._background_settled, policy.key))

    async def _fetch_and_admit(self, request: Request, policy: CachePolicy) -> Response:
        response = await self.__transport.send(request)
        if response.ok:
            self.__cache.put(request, response, ttl_millis=policy.ttl_millis, tags=policy.tags)
        return response

    def _spawn(self, key: str, coroutine) -> asyncio.Future:
        task = asyncio.ensure_future(coroutine)
        self.__pending[key] = task
        task.add_done_callback(functools.partial(self._settled, key))
        return task

    def _settled(self, key: str, task: asyncio.Future) -> None:
        if self.__pending.get(key) is task:
            del self.__pending[key]

    def _background_settled(self, key: str, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning('Background cache update failed for {}: {}'.format(key, error))

    def _notify(self, title: str, message: str) -> None:
        try:
            self.__notifier.info(title, message)
        except Exception:
            logger.exception('Notifier failed to deliver "{}"'.format(title))
