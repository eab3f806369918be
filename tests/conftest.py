"""Shared test fixtures."""
import threading
from datetime import datetime, timezone

import pytest
import redis
from sqlalchemy.orm import sessionmaker

from skiptrace.database import make_engine, init_db
from skiptrace.errors import ProviderError
from skiptrace.pipeline.run_manager import RunManager
from skiptrace.pipeline.worker import SkipTraceWorker
from skiptrace.services.cache import SkipTraceCache
from skiptrace.services.guardrails import GuardrailsConfig, GuardrailsRegistry
from skiptrace.services.ledger import ProviderCallLedger
from skiptrace.services.providers import Provider, ProviderResponse


START = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeClock:
    """Manually advanced clock. Call it for epoch seconds, .utc() for a datetime."""

    def __init__(self, start=START):
        self.now = start.timestamp()

    def __call__(self):
        return self.now

    def utc(self):
        return datetime.fromtimestamp(self.now, timezone.utc)

    def advance(self, seconds):
        self.now += seconds


class FakeRedis:
    """Minimal in-memory Redis fake (get/set only)."""

    def __init__(self, broken=False):
        self.store = {}
        self.broken = broken

    def get(self, key):
        if self.broken:
            raise redis.exceptions.ConnectionError('Connection refused')
        return self.store.get(key)

    def set(self, key, value):
        if self.broken:
            raise redis.exceptions.ConnectionError('Connection refused')
        self.store[key] = value


class FakeProvider(Provider):
    """Scripted provider: fails for fail_leads, raises a bug for error_leads."""

    def __init__(self, name='batchdata', cost_cents=12, fail_leads=(), error_leads=(),
                 no_email_leads=()):
        super().__init__(cost_cents)
        self.name = name
        self.fail_leads = set(fail_leads)
        self.error_leads = set(error_leads)
        self.no_email_leads = set(no_email_leads)
        self.calls = []
        self._lock = threading.Lock()

    def lookup(self, lead):
        with self._lock:
            self.calls.append(lead.lead_id)
        if lead.lead_id in self.error_leads:
            raise RuntimeError('boom')
        if lead.lead_id in self.fail_leads:
            raise ProviderError(self.name, 'API error: 503 Service Unavailable', status_code=503)
        phones = [{'number': f'512-555-{lead.lead_id}', 'type': 'mobile', 'isPrimary': True,
                   'isDoNotCall': False, 'confidence': 90}]
        emails = [] if lead.lead_id in self.no_email_leads else [
            {'address': f'{lead.lead_id.lower()}@example.com', 'type': 'personal',
             'isPrimary': True, 'confidence': 80}]
        return ProviderResponse(status_code=200, phones=phones, emails=emails,
                                cost_cents=self.cost_cents, body={'lead': lead.lead_id})


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def db_engine(tmp_path):
    """File-backed SQLite engine with schema created (shared across threads)."""
    engine = make_engine(f'sqlite:///{tmp_path / "skiptrace-test.db"}')
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    """SQLAlchemy session for assertions. Closed after each test."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ---------------------------------------------------------------------------
# Engine components
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def make_config():
    """Factory for GuardrailsConfig with generous defaults."""
    def _make(**overrides):
        defaults = dict(
            provider='batchdata',
            cost_cents=12,
            daily_budget_cents=None,
            capacity=1000,
            refill_rate=1000.0,
            window_size=200,
            min_samples=30,
            error_threshold=0.3,
            cooldown_seconds=60,
            probe_quota=1,
        )
        defaults.update(overrides)
        return GuardrailsConfig(**defaults)
    return _make


@pytest.fixture
def ledger(session_factory, clock):
    return ProviderCallLedger(session_factory, clock=clock.utc)


@pytest.fixture
def cache(session_factory, clock):
    return SkipTraceCache(session_factory, l1_size=100, ttl_days=30, clock=clock.utc)


@pytest.fixture
def run_manager(session_factory, clock):
    return RunManager(session_factory, max_attempts=3, stale_seconds=300, clock=clock.utc)


@pytest.fixture
def make_leads():
    """Factory for raw lead dicts as they arrive from the lead store."""
    def _make(n, prefix='L', start=0):
        return [
            {
                'lead_id': f'{prefix}{i}',
                'address': f'{100 + i} Main Street',
                'city': 'Austin',
                'state': 'TX',
                'zip': '78701',
                'owner_name': f'Owner {prefix}{i}',
            }
            for i in range(start, start + n)
        ]
    return _make


@pytest.fixture
def make_worker(session_factory, ledger, cache, run_manager, clock, make_config):
    """Factory building a SkipTraceWorker around a FakeProvider and fresh guardrails."""
    def _make(provider=None, config=None, contact_sink=None, redis_client=None):
        provider = provider or FakeProvider()
        config = config or make_config(provider=provider.name, cost_cents=provider.cost_cents)
        guardrails = GuardrailsRegistry(lambda name: config, ledger=ledger,
                                        redis_client=redis_client, clock=clock)
        return SkipTraceWorker(
            run_manager=run_manager,
            cache=cache,
            ledger=ledger,
            guardrails=guardrails,
            provider=provider,
            contact_sink=contact_sink,
            session_factory=session_factory,
            stale_seconds=300,
            sleep=clock.advance,
        )
    return _make


# ---------------------------------------------------------------------------
# Flask
# ---------------------------------------------------------------------------

@pytest.fixture
def app(session_factory, db_engine, fake_redis):
    """Flask test app bound to the test database."""
    from skiptrace import create_app
    app = create_app(session_factory=session_factory, bind=db_engine, redis_client=fake_redis)
    app.config['TESTING'] = True
    app.config['ADMIN_TOKEN'] = None
    yield app


@pytest.fixture
def client(app):
    """Flask test client."""
    with app.test_client() as c:
        yield c
