import asyncio
import json
from pathlib import Path
from tempfile import TemporaryDirectory
from ddt import ddt, data
from mockito import mock, unstub, verify, when
from unittest import IsolatedAsyncioTestCase, TestCase

from fetchcache.cache import MAX_ENTRY_SIZE_BYTES, MemoryCache, create, dispose
from fetchcache.model import CacheConfig, CacheStrategy, EvictionStrategy, Request, Response
from fetchcache.storage import CorruptMetadata, FileMetadataStorage, InMemoryMetadataStorage, MetadataStorage


class FakeClock:
    def __init__(self, now: float = 1000000) -> None:
        self.now = now

    def advance(self, millis: float) -> None:
        self.now += millis

    def __call__(self) -> float:
        return self.now


def request(path: str, **headers) -> Request:
    return Request(method='GET', uri='http://example.com' + path, headers=headers)


def response(body: bytes = b'{"ok": true}', status: int = 200) -> Response:
    return Response(status=status, reason='OK', headers={}, body=body)


@ddt
class TestMemoryCache(TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.cache = MemoryCache(CacheConfig(), clock=self.clock)

    def test_put_then_get_returns_the_response(self):
        self.cache.put(request('/api/cabins'), response(b'[1, 2, 3]'), ttl_millis=1000)

        entry = self.cache.get(request('/api/cabins'))

        self.assertIsNotNone(entry)
        self.assertEqual(b'[1, 2, 3]', entry.response.body)
        self.assertEqual(200, entry.response.status)

    def test_get_miss(self):
        self.assertIsNone(self.cache.get(request('/api/cabins')))

    def test_relative_url_with_params(self):
        search = Request('GET', '/api/search', params={'q': 'spa'})

        self.cache.put(search, response(b'[]'))

        self.assertEqual(b'[]', self.cache.get(Request('GET', '/api/search?q=spa')).response.body)

    def test_entry_expires_after_its_ttl(self):
        self.cache.put(request('/api/cabins'), response(), ttl_millis=100)

        self.clock.advance(50)
        self.assertIsNotNone(self.cache.get(request('/api/cabins')))

        self.clock.advance(100)
        self.assertIsNone(self.cache.get(request('/api/cabins')))
        self.assertEqual(0, len(self.cache))

    def test_default_ttl_applies_when_none_given(self):
        entry = self.cache.put(request('/api/cabins'), response())

        self.assertEqual(CacheConfig().default_ttl_millis, entry.ttl_millis)

    def test_hits_update_access_metadata(self):
        self.cache.put(request('/api/cabins'), response())
        self.clock.advance(10)

        entry = self.cache.get(request('/api/cabins'))

        self.assertEqual(2, entry.access_count)
        self.assertEqual(self.clock.now, entry.last_accessed_at)

    def test_responses_are_read_only(self):
        self.cache.put(request('/api/cabins'), response())
        entry = self.cache.get(request('/api/cabins'))

        with self.assertRaises(TypeError):
            entry.response.headers['X-Injected'] = 'yes'
        with self.assertRaises(AttributeError):
            entry.response.body = b'changed'

    @data(199, 304, 404, 500)
    def test_put_rejects_unsuccessful_responses(self, status: int):
        result = self.cache.put(request('/api/cabins'), response(status=status))

        self.assertIsNone(result)
        self.assertEqual(0, len(self.cache))

    def test_put_rejects_oversized_responses(self):
        self.cache.update_config(max_total_size_bytes=MAX_ENTRY_SIZE_BYTES * 2)

        with self.assertLogs('fetchcache.cache', 'WARNING'):
            result = self.cache.put(request('/api/big'), response(b'x' * (MAX_ENTRY_SIZE_BYTES + 1)))

        self.assertIsNone(result)
        self.assertEqual(0, len(self.cache))

    def test_put_replaces_existing_entry(self):
        self.cache.put(request('/api/cabins'), response(b'old'))
        self.cache.put(request('/api/cabins'), response(b'new'))

        self.assertEqual(1, len(self.cache))
        self.assertEqual(b'new', self.cache.get(request('/api/cabins')).response.body)
        self.assertEqual(3, self.cache.stats.total_size_bytes)

    def test_delete(self):
        self.cache.put(request('/api/cabins'), response())
        self.cache.put(request('/api/services'), response())

        self.cache.delete(request('/api/cabins'))
        self.cache.delete(request('/api/unknown'))

        self.assertNotIn(request('/api/cabins'), self.cache)
        self.assertEqual(1, self.cache.stats.total_entries)

    def test_lru_evicts_least_recently_used(self):
        self.cache.update_config(max_entry_count=2, eviction_strategy=EvictionStrategy.LRU)

        self.cache.put(request('/a'), response())
        self.clock.advance(1)
        self.cache.put(request('/b'), response())
        self.clock.advance(1)
        self.cache.get(request('/a'))
        self.clock.advance(1)
        self.cache.put(request('/c'), response())

        self.assertIn(request('/a'), self.cache)
        self.assertNotIn(request('/b'), self.cache)
        self.assertIn(request('/c'), self.cache)

    def test_lfu_evicts_least_frequently_used(self):
        self.cache.update_config(max_entry_count=2, eviction_strategy=EvictionStrategy.LFU)

        self.cache.put(request('/a'), response())
        self.cache.put(request('/b'), response())
        self.cache.get(request('/b'))
        self.cache.get(request('/b'))
        self.cache.put(request('/c'), response())

        self.assertNotIn(request('/a'), self.cache)
        self.assertIn(request('/b'), self.cache)
        self.assertIn(request('/c'), self.cache)

    def test_fifo_evicts_by_size(self):
        self.cache.update_config(max_total_size_bytes=1000, eviction_strategy=EvictionStrategy.FIFO)

        self.cache.put(request('/k1'), response(b'1' * 600))
        self.clock.advance(1)
        self.cache.get(request('/k1'))
        self.cache.put(request('/k2'), response(b'2' * 600))

        self.assertNotIn(request('/k1'), self.cache)
        self.assertIn(request('/k2'), self.cache)
        self.assertEqual(600, self.cache.stats.total_size_bytes)

    def test_shrinking_budget_evicts_immediately(self):
        for path in ('/a', '/b', '/c', '/d'):
            self.cache.put(request(path), response())
            self.clock.advance(1)

        self.cache.update_config(max_entry_count=2)

        self.assertEqual(2, len(self.cache))
        self.assertIn(request('/c'), self.cache)
        self.assertIn(request('/d'), self.cache)

    def test_update_config_rejects_invalid_values(self):
        with self.assertRaises(ValueError):
            self.cache.update_config(max_entry_count=0)

    def test_invalidate_by_pattern(self):
        self.cache.put(request('/api/services/1'), response())
        self.cache.put(request('/api/services/2'), response())
        self.cache.put(request('/api/search?q=spa'), response())

        removed = self.cache.invalidate_by_pattern(r'/api/services/\d+')

        self.assertEqual(2, removed)
        self.assertEqual(1, len(self.cache))
        self.assertIn(request('/api/search?q=spa'), self.cache)

    def test_invalidate_by_tags(self):
        self.cache.put(request('/api/services'), response(), tags={'services'})
        self.cache.put(request('/api/services/1'), response(), tags={'services', 'service-1'})
        self.cache.put(request('/api/search'), response(), tags={'search'})

        removed = self.cache.invalidate_by_tags({'services'})

        self.assertEqual(2, removed)
        self.assertIn(request('/api/search'), self.cache)
        self.assertEqual(0, self.cache.invalidate_by_tags({'unknown'}))

    def test_clear_resets_everything(self):
        self.cache.put(request('/api/cabins'), response())
        self.cache.get(request('/api/cabins'))
        self.cache.get(request('/api/other'))

        self.cache.clear()

        stats = self.cache.stats
        self.assertEqual(0, len(self.cache))
        self.assertEqual(0, stats.total_requests)
        self.assertEqual(0, stats.hits)
        self.assertEqual(0, stats.misses)
        self.assertEqual({}, stats.strategies)

    def test_stats_track_hits_and_misses(self):
        self.cache.put(request('/api/services'), response())
        self.cache.get(request('/api/services'))
        self.cache.get(request('/api/services'))
        self.cache.get(request('/api/user'))

        stats = self.cache.stats
        self.assertEqual(3, stats.total_requests)
        self.assertEqual(2, stats.hits)
        self.assertEqual(1, stats.misses)
        self.assertEqual(stats.total_requests, stats.hits + stats.misses)
        self.assertAlmostEqual(200 / 3, stats.hit_rate_percent)
        self.assertAlmostEqual(100 / 3, stats.miss_rate_percent)

        swr = stats.strategies[CacheStrategy.STALE_WHILE_REVALIDATE.value]
        self.assertEqual((1, 2, 0), (swr.entries, swr.hits, swr.misses))
        network_first = stats.strategies[CacheStrategy.NETWORK_FIRST.value]
        self.assertEqual((0, 0, 1), (network_first.entries, network_first.hits, network_first.misses))

    def test_stats_are_a_snapshot(self):
        stats = self.cache.stats
        stats.hits = 99

        self.assertEqual(0, self.cache.stats.hits)

    def test_cleanup_removes_expired_entries(self):
        self.cache.put(request('/short'), response(), ttl_millis=100)
        self.cache.put(request('/long'), response(), ttl_millis=10000)
        self.clock.advance(500)

        removed = self.cache.cleanup()

        self.assertEqual(1, removed)
        self.assertIn(request('/long'), self.cache)
        self.assertEqual(self.clock.now, self.cache.stats.last_cleanup_at)

    def test_entries_are_listed_most_recent_first(self):
        self.cache.put(request('/a'), response())
        self.clock.advance(1)
        self.cache.put(request('/b'), response())
        self.clock.advance(1)
        self.cache.get(request('/a'))

        self.assertEqual(['GET:http://example.com/a', 'GET:http://example.com/b'],
                         [entry.key for entry in self.cache.entries()])

    def test_size_info(self):
        self.cache.update_config(max_total_size_bytes=2048)
        self.cache.put(request('/a'), response(b'x' * 1536))

        self.assertEqual({'entries': 1, 'size': '1.5 KB', 'max_size': '2 KB'}, self.cache.size_info())

    def test_should_cache_and_resolve_strategy_delegate_to_the_resolver(self):
        self.assertFalse(self.cache.should_cache(Request('POST', 'http://example.com/api/services')))
        self.assertIs(CacheStrategy.NETWORK_FIRST, self.cache.resolve_strategy(request('/api/profile')))


class TestMemoryCachePersistence(TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.storage = InMemoryMetadataStorage()

    def tearDown(self):
        unstub()

    def test_put_persists_metadata_without_bodies(self):
        cache = create(CacheConfig(), storage=self.storage, clock=self.clock)
        cache.put(request('/api/services/1'), response(b'secret body'), tags={'services'})

        document = self.storage.load()

        self.assertEqual(1, len(document['metadata']))
        record = document['metadata'][0]
        self.assertEqual('GET:http://example.com/api/services/1', record['key'])
        self.assertEqual(['services'], record['tags'])
        self.assertNotIn('response', record)
        self.assertNotIn('secret body', str(document))
        self.assertEqual('LRU', document['config']['eviction_strategy'])

    def test_restart_restores_stats_and_config_but_not_entries(self):
        cache = create(storage=self.storage, clock=self.clock)
        cache.update_config(max_entry_count=7, eviction_strategy=EvictionStrategy.FIFO)
        cache.put(request('/api/cabins'), response())
        cache.get(request('/api/cabins'))
        dispose(cache)

        restarted = create(storage=self.storage, clock=self.clock)

        self.assertEqual(7, restarted.config.max_entry_count)
        self.assertIs(EvictionStrategy.FIFO, restarted.config.eviction_strategy)
        self.assertEqual(1, restarted.stats.hits)
        self.assertEqual(0, restarted.stats.total_entries)
        self.assertIsNone(restarted.get(request('/api/cabins')))

    def test_explicit_config_wins_over_restored_config(self):
        cache = create(storage=self.storage, clock=self.clock)
        cache.update_config(max_entry_count=7)

        restarted = create(CacheConfig(max_entry_count=3), storage=self.storage, clock=self.clock)

        self.assertEqual(3, restarted.config.max_entry_count)

    def test_storage_failures_do_not_interrupt_requests(self):
        storage = mock(MetadataStorage)
        when(storage).load().thenReturn(None)
        when(storage).save(...).thenRaise(OSError('quota exceeded'))
        cache = create(storage=storage, clock=self.clock)

        with self.assertLogs('fetchcache.cache', 'WARNING'):
            entry = cache.put(request('/api/cabins'), response())

        self.assertIsNotNone(entry)
        self.assertIsNotNone(cache.get(request('/api/cabins')))
        verify(storage, atleast=1).save(...)

    def test_corrupt_storage_starts_fresh(self):
        storage = mock(MetadataStorage)
        when(storage).load().thenRaise(CorruptMetadata('memory'))
        when(storage).save(...).thenReturn(None)

        with self.assertLogs('fetchcache.cache', 'WARNING'):
            cache = create(storage=storage, clock=self.clock)

        self.assertEqual(0, cache.stats.total_requests)
        self.assertEqual(CacheConfig(), cache.config)

    def test_undecodable_metadata_file_starts_fresh(self):
        with TemporaryDirectory() as directory:
            path = Path(directory) / 'metadata.json'
            path.write_bytes(b'\xff\xfe{"stats": 1}')

            with self.assertLogs('fetchcache.cache', 'WARNING'):
                cache = create(storage=FileMetadataStorage(path), clock=self.clock)
            cache.put(request('/api/cabins'), response())

            self.assertEqual(CacheConfig(), cache.config)
            self.assertEqual(1, json.loads(path.read_text(encoding='utf-8'))['stats']['total_entries'])


class TestPeriodicCleanup(IsolatedAsyncioTestCase):
    async def test_cleanup_runs_periodically(self):
        clock = FakeClock()
        cache = create(CacheConfig(cleanup_interval_millis=10), clock=clock)
        cache.put(request('/a'), response(), ttl_millis=100)
        clock.advance(1000)

        cache.start_cleanup()
        await asyncio.sleep(0.1)
        dispose(cache)

        self.assertEqual(0, len(cache))
        self.assertEqual(clock.now, cache.stats.last_cleanup_at)

    async def test_dispose_stops_the_cleanup_task(self):
        cache = create(CacheConfig(cleanup_interval_millis=10))
        task = cache.start_cleanup()

        dispose(cache)
        with self.assertRaises(asyncio.CancelledError):
            await task

        self.assertTrue(task.cancelled())
