"""
Idempotency + result cache — L1 in-process LRU in front of the L2 table.

resolve() is the only thing a worker asks before spending money: it computes
the lead's idempotency key and returns cached contacts if any layer has a
fresh copy. Hits never touch the budget or the token bucket.

L2 rows are never deleted. A row past ttl_expires_at reads as a miss, and
the next successful lookup for the key overwrites it in place.
"""
import json
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select, update

from skiptrace.config import SKIP_TRACE_CACHE_TTL_DAYS, SKIP_TRACE_L1_SIZE
from skiptrace.database import get_session, utcnow, as_utc
from skiptrace.models.cache_entry import CacheEntry
from skiptrace.services.normalization import (
    LeadAttrs, normalize_address, normalize_person, idempotency_key,
)

logger = logging.getLogger('services.cache')

L1 = 'l1'
L2 = 'l2'


@dataclass(frozen=True)
class CachedResult:
    contacts: Dict[str, Any]
    payload_hash: str
    layer: str
    expires_at: datetime


@dataclass(frozen=True)
class Resolution:
    key: str
    normalized_address: str
    normalized_person: str
    cached: Optional[CachedResult] = None

    @property
    def hit(self) -> bool:
        return self.cached is not None


class LRUCache:
    """Bounded, thread-safe mapping that evicts the least recently used key."""

    def __init__(self, maxsize: int):
        self.maxsize = max(1, maxsize)
        self._data: 'OrderedDict[tuple, CachedResult]' = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            value = self._data.get(key)
            if value is not None:
                self._data.move_to_end(key)
            return value

    def put(self, key, value):
        with self._lock:
            self._data[key] = value
            self._data.move_to_end(key)
            while len(self._data) > self.maxsize:
                self._data.popitem(last=False)

    def pop(self, key):
        with self._lock:
            self._data.pop(key, None)

    def __len__(self):
        with self._lock:
            return len(self._data)


class SkipTraceCache:

    def __init__(self, session_factory=None, l1_size: int = SKIP_TRACE_L1_SIZE,
                 ttl_days: int = SKIP_TRACE_CACHE_TTL_DAYS,
                 clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory or get_session
        self.ttl = timedelta(days=ttl_days)
        self.l1 = LRUCache(l1_size)
        self._clock = clock

    # ── Public API ────────────────────────────────────────────────────

    def resolve(self, provider: str, lead: LeadAttrs) -> Resolution:
        """Compute the lead's key and return a cache hit if one is fresh."""
        addr = normalize_address(lead.address, lead.city, lead.state, lead.zip)
        person = normalize_person(lead.person)
        key = idempotency_key(provider, addr, person)
        return Resolution(
            key=key,
            normalized_address=addr,
            normalized_person=person,
            cached=self.lookup(provider, key),
        )

    def lookup(self, provider: str, key: str) -> Optional[CachedResult]:
        """L1 first, then L2 (repopulating L1). Expired entries are misses."""
        now = self._clock()
        hit = self.l1.get((provider, key))
        if hit is not None:
            if hit.expires_at > now:
                return hit
            self.l1.pop((provider, key))

        result = self._read_l2(provider, key, now, fresh_only=True)
        if result is not None:
            self.l1.put((provider, key), result)
        return result

    def read_any(self, provider: str, key: str) -> Optional[CachedResult]:
        """L2 read that ignores the TTL — used to reuse a settled ledger outcome."""
        return self._read_l2(provider, key, self._clock(), fresh_only=False)

    def store(self, session, provider: str, key: str, payload_hash: str,
              response: Dict[str, Any], contacts: Dict[str, Any]) -> CachedResult:
        """
        Upsert the L2 row inside the caller's transaction.

        Call remember() with the returned result once the transaction commits.
        """
        now = self._clock()
        expires = now + self.ttl
        row = session.execute(
            select(CacheEntry).where(
                CacheEntry.provider == provider,
                CacheEntry.idempotency_key == key,
            )
        ).scalar_one_or_none()

        if row is None:
            row = CacheEntry(provider=provider, idempotency_key=key, created_at=now)
            session.add(row)
        else:
            logger.debug("Overwriting L2 entry %s/%s in place", provider, key[:12])

        row.payload_hash = payload_hash
        row.response_json = json.dumps(response, sort_keys=True, default=str)
        row.parsed_contacts_json = json.dumps(contacts, sort_keys=True)
        row.ttl_expires_at = expires
        row.last_seen = now
        return CachedResult(contacts=contacts, payload_hash=payload_hash, layer=L2, expires_at=expires)

    def remember(self, provider: str, key: str, result: CachedResult) -> None:
        self.l1.put((provider, key), CachedResult(
            contacts=result.contacts,
            payload_hash=result.payload_hash,
            layer=L1,
            expires_at=result.expires_at,
        ))

    # ── Private helpers ───────────────────────────────────────────────

    def _read_l2(self, provider, key, now, fresh_only) -> Optional[CachedResult]:
        session = self._session_factory()
        try:
            row = session.execute(
                select(CacheEntry).where(
                    CacheEntry.provider == provider,
                    CacheEntry.idempotency_key == key,
                )
            ).scalar_one_or_none()
            if row is None:
                return None

            expires_at = as_utc(row.ttl_expires_at)
            if fresh_only and expires_at <= now:
                logger.debug("L2 entry %s/%s expired at %s", provider, key[:12], expires_at)
                return None

            result = CachedResult(
                contacts=json.loads(row.parsed_contacts_json),
                payload_hash=row.payload_hash,
                layer=L2,
                expires_at=expires_at,
            )
            session.execute(
                update(CacheEntry).where(CacheEntry.id == row.id).values(last_seen=now)
            )
            session.commit()
            return result
        finally:
            session.close()
