import json
import sqlite3
import unittest
from unittest.mock import MagicMock

from normalize.models import (
    BucketSize,
    CacheKey,
    DateWindow,
    MemberSummary,
    OrganizationAggregate,
    PeriodStats,
    RepoSummary,
    TimeBucketStat,
)
from storage.cache import OrganizationCache, strip_heavy_payloads


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def _aggregate(org='acme', window=None, images=None):
    window = window or DateWindow.from_dates('2025-01-01', '2025-01-02')
    images = images if images is not None else ['https://example.com/a.png', 'https://example.com/b.png']
    return OrganizationAggregate(
        org_name=org,
        window=window,
        bucket_size=BucketSize.DAY,
        repos=(RepoSummary('api', stars=2, commit_count=3),),
        members=(MemberSummary('alice', 3),),
        yearly_stats=PeriodStats(commits=3),
        issue_stats=(TimeBucketStat(1, 0, 1), TimeBucketStat(0, 0, 1)),
        pull_requests=(
            {'number': 1, 'title': 'Add login', 'images': images},
            {'number': 2, 'title': 'Fix crash', 'images': list(images)},
        ),
    )


def _size(aggregate):
    return len(json.dumps(aggregate.to_dict()).encode('utf-8'))


class TestOrganizationCache(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.cache = OrganizationCache(clock=self.clock)
        self.aggregate = _aggregate()
        self.key = CacheKey.for_window('acme', self.aggregate.window)

    def tearDown(self):
        self.cache.close()

    def test_get_after_save_returns_saved_data(self):
        self.assertTrue(self.cache.save(self.key, self.aggregate))
        self.assertEqual(self.cache.get(self.key), self.aggregate)

    def test_empty_cache_misses(self):
        self.assertIsNone(self.cache.get(self.key))

    def test_expired_entry_misses_and_is_discarded(self):
        self.cache.save(self.key, self.aggregate)
        self.clock.now += 24 * 3600 - 1
        self.assertIsNotNone(self.cache.get(self.key))
        self.clock.now += 2
        self.assertIsNone(self.cache.get(self.key))
        self.assertFalse(self.cache.stats()['occupied'])

    def test_different_org_misses_and_discards_entry(self):
        self.cache.save(self.key, self.aggregate)
        self.assertIsNone(self.cache.get(CacheKey.for_window('other', self.aggregate.window)))
        self.assertFalse(self.cache.stats()['occupied'])
        self.assertIsNone(self.cache.get(self.key))

    def test_different_window_misses_and_discards_entry(self):
        self.cache.save(self.key, self.aggregate)
        later = DateWindow.from_dates('2025-01-01', '2025-01-03')
        self.assertIsNone(self.cache.get(CacheKey.for_window('acme', later)))
        self.assertFalse(self.cache.stats()['occupied'])

    def test_single_slot_last_write_wins(self):
        # known limitation: aggregations for different organizations evict each other
        other = _aggregate(org='globex')
        other_key = CacheKey.for_window('globex', other.window)
        self.cache.save(self.key, self.aggregate)
        self.cache.save(other_key, other)
        self.assertEqual(self.cache.get(other_key), other)
        self.assertIsNone(self.cache.get(self.key))

    def test_quota_fallback_stores_without_images(self):
        stripped = strip_heavy_payloads(self.aggregate)
        self.assertLess(_size(stripped), _size(self.aggregate))
        cache = OrganizationCache(clock=self.clock, quota_bytes=_size(stripped))
        try:
            with self.assertLogs('storage.cache', level='WARNING'):
                self.assertTrue(cache.save(self.key, self.aggregate))
            cached = cache.get(self.key)
            self.assertIsNotNone(cached)
            self.assertEqual([pr['images'] for pr in cached.pull_requests], [[], []])
            self.assertEqual([pr['title'] for pr in cached.pull_requests], ['Add login', 'Fix crash'])
        finally:
            cache.close()

    def test_second_quota_failure_is_swallowed(self):
        cache = OrganizationCache(clock=self.clock, quota_bytes=10)
        try:
            with self.assertLogs('storage.cache', level='ERROR'):
                self.assertFalse(cache.save(self.key, self.aggregate))
            self.assertIsNone(cache.get(self.key))
        finally:
            cache.close()

    def test_disk_full_is_treated_as_quota(self):
        conn = MagicMock()
        conn.cursor.return_value.execute.side_effect = sqlite3.OperationalError('database or disk is full')
        self.cache.conn = conn
        self.assertFalse(self.cache.save(self.key, self.aggregate))
        self.assertEqual(conn.rollback.call_count, 2)

    def test_readonly_database_write_is_not_fatal(self):
        conn = MagicMock()
        conn.cursor.return_value.execute.side_effect = sqlite3.OperationalError('attempt to write a readonly database')
        self.cache.conn = conn
        with self.assertLogs('storage.cache', level='ERROR'):
            self.assertFalse(self.cache.save(self.key, self.aggregate))
        self.assertEqual(conn.rollback.call_count, 1)

    def test_locked_database_write_is_not_fatal(self):
        conn = MagicMock()
        conn.commit.side_effect = sqlite3.OperationalError('database is locked')
        self.cache.conn = conn
        with self.assertLogs('storage.cache', level='ERROR'):
            self.assertFalse(self.cache.save(self.key, self.aggregate))

    def test_strip_heavy_payloads_keeps_original(self):
        stripped = strip_heavy_payloads(self.aggregate)
        self.assertTrue(all(pr['images'] == [] for pr in stripped.pull_requests))
        self.assertTrue(all(pr['images'] for pr in self.aggregate.pull_requests))

    def test_stats(self):
        self.assertFalse(self.cache.stats()['occupied'])
        self.cache.save(self.key, self.aggregate)
        self.clock.now += 60
        stats = self.cache.stats()
        self.assertTrue(stats['occupied'])
        self.assertEqual(stats['org_name'], 'acme')
        self.assertEqual(stats['key'], self.key.as_string())
        self.assertAlmostEqual(stats['age_seconds'], 60.0)
        self.assertGreater(stats['size_bytes'], 0)


def test_slot_persists_across_instances(tmp_path):
    path = str(tmp_path / 'orgpulse.db')
    aggregate = _aggregate()
    key = CacheKey.for_window('acme', aggregate.window)
    with OrganizationCache(path) as cache:
        assert cache.save(key, aggregate)
    with OrganizationCache(path) as cache:
        assert cache.get(key) == aggregate
        cache.clear()
        assert cache.get(key) is None
