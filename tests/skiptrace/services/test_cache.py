"""Tests for skiptrace.services.cache — L1 LRU, L2 table, TTL, in-place overwrite."""
import json

import pytest

from skiptrace.models.cache_entry import CacheEntry
from skiptrace.services.cache import LRUCache, SkipTraceCache, L1, L2
from skiptrace.services.normalization import LeadAttrs

CONTACTS = {'phones': [{'number': '512-555-0100'}], 'emails': []}


def _store(cache, session_factory, key='k1', contacts=CONTACTS, provider='batchdata'):
    session = session_factory()
    try:
        result = cache.store(session, provider, key, 'ph', {'raw': True}, contacts)
        session.commit()
        return result
    finally:
        session.close()


# ---------------------------------------------------------------------------
# LRUCache
# ---------------------------------------------------------------------------

class TestLRUCache:

    def test_evicts_least_recently_used(self):
        lru = LRUCache(2)
        lru.put('a', 1)
        lru.put('b', 2)
        lru.get('a')
        lru.put('c', 3)
        assert lru.get('a') == 1
        assert lru.get('b') is None
        assert lru.get('c') == 3
        assert len(lru) == 2

    def test_pop_missing_is_noop(self):
        lru = LRUCache(1)
        lru.pop('nope')
        assert len(lru) == 0


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

class TestLookup:
    """L1 first, then L2; expired entries are misses."""

    def test_miss_on_empty(self, cache):
        assert cache.lookup('batchdata', 'k1') is None

    def test_l2_hit_populates_l1(self, cache, session_factory):
        _store(cache, session_factory)
        first = cache.lookup('batchdata', 'k1')
        assert first.layer == L2
        assert first.contacts == CONTACTS
        assert len(cache.l1) == 1

    def test_remembered_result_served_from_l1(self, cache, session_factory):
        stored = _store(cache, session_factory)
        cache.remember('batchdata', 'k1', stored)
        hit = cache.lookup('batchdata', 'k1')
        assert hit.layer == L1

    def test_expired_entry_is_miss(self, cache, session_factory, clock):
        _store(cache, session_factory)
        clock.advance(31 * 86400)
        assert cache.lookup('batchdata', 'k1') is None

    def test_expired_l1_entry_dropped(self, cache, session_factory, clock):
        cache.remember('batchdata', 'k1', _store(cache, session_factory))
        clock.advance(31 * 86400)
        assert cache.lookup('batchdata', 'k1') is None
        assert len(cache.l1) == 0

    def test_hit_refreshes_last_seen(self, cache, session_factory, db_session, clock):
        _store(cache, session_factory)
        clock.advance(3600)
        cache.lookup('batchdata', 'k1')
        row = db_session.query(CacheEntry).one()
        assert row.last_seen.replace(tzinfo=None) == clock.utc().replace(tzinfo=None)

    def test_read_any_ignores_ttl(self, cache, session_factory, clock):
        _store(cache, session_factory)
        clock.advance(365 * 86400)
        result = cache.read_any('batchdata', 'k1')
        assert result is not None
        assert result.contacts == CONTACTS

    def test_provider_scoped(self, cache, session_factory):
        _store(cache, session_factory, provider='batchdata')
        assert cache.lookup('whitepages', 'k1') is None


class TestResolve:

    def test_returns_key_and_normalized_identity(self, cache):
        lead = LeadAttrs(lead_id='1', address='123 Main Street', city='Austin', state='TX',
                         zip='78701', owner_name='Jane Doe')
        resolution = cache.resolve('batchdata', lead)
        assert resolution.normalized_address == '123 MAIN ST AUSTIN TX 78701'
        assert resolution.normalized_person == 'JANE DOE'
        assert len(resolution.key) == 64
        assert resolution.hit is False

    def test_same_identity_different_lead_ids_hit(self, cache, session_factory):
        a = LeadAttrs(lead_id='1', address='123 Main Street', zip='78701', owner_name='Jane Doe')
        b = LeadAttrs(lead_id='2', address='123 MAIN ST', zip='78701', owner_name='jane doe')
        key = cache.resolve('batchdata', a).key
        _store(cache, session_factory, key=key)
        resolution = cache.resolve('batchdata', b)
        assert resolution.key == key
        assert resolution.hit is True


# ---------------------------------------------------------------------------
# store
# ---------------------------------------------------------------------------

class TestStore:

    def test_overwrites_expired_row_in_place(self, cache, session_factory, db_session, clock):
        _store(cache, session_factory)
        clock.advance(31 * 86400)
        new_contacts = {'phones': [], 'emails': [{'address': 'a@example.com'}]}
        _store(cache, session_factory, contacts=new_contacts)

        rows = db_session.query(CacheEntry).all()
        assert len(rows) == 1
        assert json.loads(rows[0].parsed_contacts_json) == new_contacts
        assert cache.lookup('batchdata', 'k1').contacts == new_contacts

    def test_not_visible_until_commit(self, session_factory, clock):
        cache = SkipTraceCache(session_factory, clock=clock.utc)
        session = session_factory()
        try:
            cache.store(session, 'batchdata', 'k1', 'ph', {}, CONTACTS)
            session.rollback()
        finally:
            session.close()
        assert cache.lookup('batchdata', 'k1') is None
