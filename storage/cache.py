"""
Single-slot SQLite cache for the last computed organization aggregate.
Stores one JSON payload keyed by (organization, date window) with a timestamp for TTL checks.
"""

import json
import logging
import os
import sqlite3
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Optional

from errors import CacheQuotaExceededError
from normalize.models import CacheKey, OrganizationAggregate

logger = logging.getLogger(__name__)

# cache defaults can be driven by environment variables
# - ORGPULSE_CACHE_TTL_HOURS: float (hours)
# - ORGPULSE_CACHE_PATH: SQLite file path
DEFAULT_TTL_SECONDS = float(os.getenv("ORGPULSE_CACHE_TTL_HOURS", "24")) * 3600.0

DB_PATH = os.getenv("ORGPULSE_CACHE_PATH")  # can be overridden by caller

SLOT = 'organization'

# noinspection SqlResolve
SQL_CREATE = """
CREATE TABLE IF NOT EXISTS org_cache (
    slot TEXT PRIMARY KEY,
    cache_key TEXT,
    org_name TEXT,
    payload TEXT,
    timestamp REAL
);
"""


def strip_heavy_payloads(aggregate: OrganizationAggregate) -> OrganizationAggregate:
    """Return a copy of the aggregate whose pull request records carry no image lists."""
    light = tuple(dict(pr, images=[]) for pr in aggregate.pull_requests)
    return replace(aggregate, pull_requests=light)


class OrganizationCache:
    """
    Holds at most one aggregate. Saving a new one evicts the previous entry (last write wins);
    a read with a different key or an expired timestamp is a miss.
    """

    def __init__(self, path: Optional[str] = None, ttl_seconds: Optional[float] = DEFAULT_TTL_SECONDS,
                 quota_bytes: Optional[int] = None, clock: Callable[[], float] = time.time):
        """Create a cache instance.

        :param path: SQLite file path or None for in-memory.
        :param ttl_seconds: entry lifetime in seconds; None keeps entries until replaced.
        :param quota_bytes: optional upper bound on the serialized payload size.
        :param clock: time source in epoch seconds.
        """
        self.path = path or DB_PATH or ':memory:'
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self._lock = threading.RLock()
        self.ttl_seconds = float(ttl_seconds) if ttl_seconds is not None else None
        self.quota_bytes = int(quota_bytes) if quota_bytes is not None else None
        self.clock = clock
        self._init_db()

    def _init_db(self):
        with self._lock:
            cur = self.conn.cursor()
            cur.executescript(SQL_CREATE)
            self.conn.commit()

    def close(self):
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _is_expired(self, timestamp: Optional[float]) -> bool:
        if self.ttl_seconds is None or timestamp is None:
            return False
        return self.clock() - float(timestamp) > self.ttl_seconds

    # noinspection SqlResolve
    def get(self, key: CacheKey) -> Optional[OrganizationAggregate]:
        """Return the cached aggregate for key, or None on a miss. An entry for another key or an expired one is discarded."""
        with self._lock:
            cur = self.conn.cursor()
            cur.execute('SELECT cache_key, payload, timestamp FROM org_cache WHERE slot = ?', (SLOT,))
            row = cur.fetchone()
        if not row:
            return None
        stored_key, payload, timestamp = row
        if stored_key != key.as_string():
            logger.debug("discarding cached %s, requested %s", stored_key, key.as_string())
            self.clear()
            return None
        if self._is_expired(timestamp):
            logger.info("cached aggregate for %s expired", key.org_name)
            self.clear()
            return None
        try:
            return OrganizationAggregate.from_dict(json.loads(payload))
        except (ValueError, KeyError, TypeError) as ex:
            logger.warning("discarding unreadable cache entry for %s: %s", key.org_name, ex)
            self.clear()
            return None

    # noinspection SqlResolve
    def _write(self, key: CacheKey, aggregate: OrganizationAggregate):
        payload = json.dumps(aggregate.to_dict())
        size = len(payload.encode('utf-8'))
        if self.quota_bytes is not None and size > self.quota_bytes:
            raise CacheQuotaExceededError(f"aggregate payload of {size} bytes exceeds cache quota of {self.quota_bytes} bytes")
        with self._lock:
            cur = self.conn.cursor()
            try:
                cur.execute(
                    'REPLACE INTO org_cache(slot, cache_key, org_name, payload, timestamp) VALUES (?, ?, ?, ?, ?)',
                    (SLOT, key.as_string(), key.org_name, payload, self.clock()),
                )
                self.conn.commit()
            except sqlite3.OperationalError as ex:
                self.conn.rollback()
                if 'full' in str(ex).lower():
                    raise CacheQuotaExceededError(str(ex)) from ex
                raise

    def save(self, key: CacheKey, aggregate: OrganizationAggregate) -> bool:
        """
        Store the aggregate, replacing whatever the slot held.

        On a quota failure the write is retried once with every pull request's images emptied.
        Returns False when that retry fails too, or when the database rejects the write; the computed
        aggregate is still valid to the caller.
        """
        try:
            self._write(key, aggregate)
            return True
        except CacheQuotaExceededError as ex:
            logger.warning("cache quota exceeded for %s, retrying without pull request images: %s", key.org_name, ex)
        except sqlite3.Error as ex:
            logger.error("could not cache aggregate for %s: %s", key.org_name, ex)
            return False
        try:
            self._write(key, strip_heavy_payloads(aggregate))
            return True
        except CacheQuotaExceededError as ex:
            logger.error("could not cache aggregate for %s even without images: %s", key.org_name, ex)
        except sqlite3.Error as ex:
            logger.error("could not cache aggregate for %s: %s", key.org_name, ex)
        return False

    # noinspection SqlWithoutWhere
    def clear(self):
        """Empty the slot."""
        with self._lock:
            cur = self.conn.cursor()
            cur.execute('DELETE FROM org_cache')
            self.conn.commit()

    # noinspection SqlResolve
    def stats(self) -> Dict[str, Any]:
        """Describe the slot: occupied flag, key, organization, age in seconds and payload size."""
        with self._lock:
            cur = self.conn.cursor()
            cur.execute('SELECT cache_key, org_name, timestamp, LENGTH(CAST(payload AS BLOB)) FROM org_cache WHERE slot = ?', (SLOT,))
            row = cur.fetchone()
        if not row:
            return {'occupied': False, 'key': None, 'org_name': None, 'age_seconds': None, 'size_bytes': 0, 'expired': False}
        cache_key, org_name, timestamp, size = row
        return {
            'occupied': True,
            'key': cache_key,
            'org_name': org_name,
            'age_seconds': self.clock() - float(timestamp),
            'size_bytes': int(size or 0),
            'expired': self._is_expired(timestamp),
        }


__all__ = ["OrganizationCache", "strip_heavy_payloads", "DEFAULT_TTL_SECONDS"]
