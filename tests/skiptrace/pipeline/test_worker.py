"""Tests for skiptrace.pipeline.worker — the per-item cache → guardrails → ledger → provider path."""
from sqlalchemy import select, func, text

from conftest import FakeProvider
from skiptrace.errors import BUDGET_EXCEEDED, CIRCUIT_OPEN
from skiptrace.models.cache_entry import CacheEntry
from skiptrace.models.provider_call import ProviderCall
from skiptrace.models.run_item import RunItem
from skiptrace.services.ledger import CallAttempt, SUCCESS, FAILED
from skiptrace.services.lead_store import ContactSink
from skiptrace.services.providers import StubProvider
from skiptrace.services.schema_probe import probe_contact_schema


def _items(db_session, run_id):
    db_session.expire_all()
    return {i.lead_id: i for i in db_session.query(RunItem).filter_by(run_id=run_id)}


def _ledger_rows(db_session):
    db_session.expire_all()
    return db_session.query(ProviderCall).all()


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestProviderPath:

    def test_run_completes_via_provider(self, make_worker, run_manager, make_leads, db_session):
        provider = FakeProvider()
        worker = make_worker(provider)
        run_id = run_manager.create_run(make_leads(3), provider='batchdata')

        assert worker.run_worker(run_id) is None

        items = _items(db_session, run_id)
        assert {i.status for i in items.values()} == {'done'}
        assert {i.served_from for i in items.values()} == {'provider'}
        assert sorted(provider.calls) == ['L0', 'L1', 'L2']

        rows = _ledger_rows(db_session)
        assert len(rows) == 3
        assert all(r.outcome == SUCCESS and r.cost_cents == 12 for r in rows)
        assert {r.lead_id for r in rows} == {'L0', 'L1', 'L2'}

        run = run_manager.get_status(run_id)
        assert run.budget_spent_cents == 36
        assert run.finished_at is not None
        assert db_session.execute(select(func.count(CacheEntry.id))).scalar_one() == 3

    def test_ledger_and_cache_written_together(self, make_worker, run_manager, make_leads,
                                               db_session):
        worker = make_worker()
        run_id = run_manager.create_run(make_leads(1), provider='batchdata')
        worker.run_worker(run_id)

        row = _ledger_rows(db_session)[0]
        entry = db_session.query(CacheEntry).one()
        assert row.idempotency_key == entry.idempotency_key
        assert row.payload_hash == entry.payload_hash
        assert row.response_hash is not None
        assert row.simulated is False

    def test_guardrails_see_spend(self, make_worker, run_manager, make_leads):
        worker = make_worker()
        run_id = run_manager.create_run(make_leads(2), provider='batchdata')
        worker.run_worker(run_id)
        snap = worker.guardrails.get('batchdata').snapshot()
        assert snap['budgetSpentUsd'] == 0.24
        assert snap['budgetReservedUsd'] == 0.0

    def test_stub_rows_marked_simulated(self, make_worker, run_manager, make_leads, db_session):
        worker = make_worker(StubProvider())
        run_id = run_manager.create_run(make_leads(2), provider='stub')
        worker.run_worker(run_id)
        rows = _ledger_rows(db_session)
        assert len(rows) == 2
        assert all(r.simulated and r.provider == 'stub' and r.cost_cents == 0 for r in rows)


# ---------------------------------------------------------------------------
# Cache and ledger reuse
# ---------------------------------------------------------------------------

class TestNoDoubleBilling:

    def test_second_run_served_from_cache(self, make_worker, run_manager, make_leads, db_session):
        provider = FakeProvider()
        worker = make_worker(provider)
        first = run_manager.create_run(make_leads(2), provider='batchdata')
        worker.run_worker(first)

        second = run_manager.create_run(make_leads(2), provider='batchdata')
        worker.run_worker(second)

        assert len(provider.calls) == 2
        assert len(_ledger_rows(db_session)) == 2
        items = _items(db_session, second)
        assert {i.served_from for i in items.values()} == {'cache'}
        assert run_manager.get_status(second).budget_spent_cents == 0

    def test_duplicate_identity_in_one_run_billed_once(self, make_worker, run_manager, db_session):
        provider = FakeProvider()
        worker = make_worker(provider)
        lead = {'address': '9 Oak Avenue', 'city': 'Austin', 'state': 'TX', 'zip': '78701',
                'owner_name': 'Pat Smith'}
        run_id = run_manager.create_run([dict(lead, lead_id='A'), dict(lead, lead_id='B')],
                                        provider='batchdata')
        worker.run_worker(run_id)

        assert provider.calls == ['A']
        items = _items(db_session, run_id)
        assert items['A'].served_from == 'provider'
        assert items['B'].served_from == 'cache'

    def test_expired_cache_reuses_ledger_success(self, make_worker, run_manager, make_leads,
                                                 clock, db_session):
        provider = FakeProvider()
        first = run_manager.create_run(make_leads(1), provider='batchdata')
        make_worker(provider).run_worker(first)

        clock.advance(31 * 86400)
        second = run_manager.create_run(make_leads(1), provider='batchdata')
        worker = make_worker(provider)
        worker.run_worker(second)

        assert len(provider.calls) == 1
        assert _items(db_session, second)['L0'].served_from == 'ledger'
        assert len(_ledger_rows(db_session)) == 1
        assert worker.guardrails.get('batchdata').snapshot()['budgetReservedUsd'] == 0.0

    def test_ledger_success_without_result_fails_item(self, make_worker, run_manager, make_leads,
                                                      ledger, session_factory, db_session):
        provider = FakeProvider()
        worker = make_worker(provider)
        run_id = run_manager.create_run(make_leads(1), provider='batchdata')
        item = run_manager.next_queued_item(run_id)

        call_id = ledger.record_attempt(CallAttempt('batchdata', item.idem_key, 'ph')).call_id
        session = session_factory()
        ledger.settle_success(session, call_id, status_code=200, cost_cents=12,
                              response_ms=5, response_hash='rh')
        session.commit()
        session.close()

        outcome = worker.process_item(item)
        assert outcome.kind == 'error'
        assert outcome.error.startswith('conflict')
        assert provider.calls == []
        assert _items(db_session, run_id)['L0'].status == 'failed'

    def test_live_pending_slot_requeues(self, make_worker, run_manager, make_leads, ledger,
                                        db_session):
        provider = FakeProvider()
        worker = make_worker(provider)
        run_id = run_manager.create_run(make_leads(1), provider='batchdata')
        item = run_manager.next_queued_item(run_id)
        ledger.record_attempt(CallAttempt('batchdata', item.idem_key, 'ph'))

        outcome = worker.process_item(item)
        assert outcome.kind == 'denied'
        assert outcome.reason is None
        assert provider.calls == []
        row = _items(db_session, run_id)['L0']
        assert row.status == 'queued'
        assert row.attempt == 0
        assert worker.guardrails.get('batchdata').snapshot()['budgetReservedUsd'] == 0.0

    def test_stale_pending_slot_reclaimed(self, make_worker, run_manager, make_leads, ledger,
                                          clock, db_session):
        provider = FakeProvider()
        worker = make_worker(provider)
        run_id = run_manager.create_run(make_leads(1), provider='batchdata')
        item = run_manager.next_queued_item(run_id)
        ledger.record_attempt(CallAttempt('batchdata', item.idem_key, 'ph'))
        clock.advance(301)

        assert worker.process_item(item).kind == 'done'
        assert provider.calls == ['L0']
        rows = _ledger_rows(db_session)
        assert len(rows) == 1
        assert rows[0].outcome == SUCCESS


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TestErrors:

    def test_provider_error_retried_then_failed(self, make_worker, run_manager, make_leads,
                                                db_session):
        provider = FakeProvider(fail_leads={'L0'})
        worker = make_worker(provider)
        run_id = run_manager.create_run(make_leads(2), provider='batchdata')
        worker.run_worker(run_id)

        items = _items(db_session, run_id)
        assert items['L0'].status == 'failed'
        assert items['L0'].attempt == 3
        assert '503' in items['L0'].last_error
        assert items['L1'].status == 'done'
        assert provider.calls.count('L0') == 3

        failed = [r for r in _ledger_rows(db_session) if r.lead_id == 'L0']
        assert len(failed) == 1
        assert failed[0].outcome == FAILED
        assert failed[0].status_code == 503

    def test_unhandled_error_fails_item_with_cause(self, make_worker, run_manager, make_leads,
                                                   db_session):
        provider = FakeProvider(error_leads={'L1'})
        worker = make_worker(provider)
        run_id = run_manager.create_run(make_leads(3), provider='batchdata')
        worker.run_worker(run_id)

        items = _items(db_session, run_id)
        assert items['L1'].status == 'failed'
        assert items['L1'].last_error == 'RuntimeError: boom'
        assert items['L1'].attempt == 0
        assert provider.calls.count('L1') == 1
        assert {items['L0'].status, items['L2'].status} == {'done'}

        row = [r for r in _ledger_rows(db_session) if r.lead_id == 'L1'][0]
        assert row.outcome == FAILED
        run = run_manager.get_status(run_id)
        assert run.in_flight == 0
        assert run.finished_at is not None


# ---------------------------------------------------------------------------
# Guardrail denials
# ---------------------------------------------------------------------------

class TestDenials:

    def test_budget_exhaustion_stops_worker(self, make_worker, make_config, run_manager,
                                            make_leads, db_session):
        provider = FakeProvider()
        worker = make_worker(provider, config=make_config(cost_cents=12, daily_budget_cents=24))
        run_id = run_manager.create_run(make_leads(5), provider='batchdata')

        assert worker.run_worker(run_id) == BUDGET_EXCEEDED

        run = run_manager.get_status(run_id)
        assert run.done == 2
        assert run.queued == 3
        assert run.in_flight == 0
        assert run.reason == BUDGET_EXCEEDED
        assert len(provider.calls) == 2
        assert len(_ledger_rows(db_session)) == 2
        assert all(i.attempt == 0 for i in _items(db_session, run_id).values())

    def test_rate_limit_waits_and_finishes(self, make_worker, make_config, run_manager,
                                           make_leads, db_session, clock):
        start = clock()
        provider = FakeProvider()
        worker = make_worker(provider, config=make_config(capacity=1, refill_rate=1.0))
        run_id = run_manager.create_run(make_leads(3), provider='batchdata')

        assert worker.run_worker(run_id) is None

        items = _items(db_session, run_id)
        assert {i.status for i in items.values()} == {'done'}
        assert all(i.attempt == 0 for i in items.values())
        assert len(provider.calls) == 3
        assert clock() - start >= 2.0
        run = run_manager.get_status(run_id)
        assert run.finished_at is not None
        assert run.reason is None

    def test_open_circuit_denies_without_calling(self, make_worker, make_config, run_manager,
                                                 make_leads, db_session):
        provider = FakeProvider()
        worker = make_worker(provider, config=make_config(min_samples=2, error_threshold=0.5))
        controller = worker.guardrails.get('batchdata')
        for _ in range(2):
            controller.record_outcome(False, 0, controller.admit())

        run_id = run_manager.create_run(make_leads(1), provider='batchdata')
        outcome = worker.process_item(run_manager.next_queued_item(run_id))

        assert outcome.kind == 'denied'
        assert outcome.reason == CIRCUIT_OPEN
        assert outcome.retry_after > 0
        assert provider.calls == []
        assert _items(db_session, run_id)['L0'].status == 'queued'

    def test_circuit_recovers_after_cooldown(self, make_worker, make_config, run_manager,
                                             make_leads, db_session):
        provider = FakeProvider()
        worker = make_worker(provider, config=make_config(min_samples=2, error_threshold=0.5,
                                                          cooldown_seconds=60))
        controller = worker.guardrails.get('batchdata')
        for _ in range(2):
            controller.record_outcome(False, 0, controller.admit())

        run_id = run_manager.create_run(make_leads(3), provider='batchdata')
        assert worker.run_worker(run_id) is None
        assert {i.status for i in _items(db_session, run_id).values()} == {'done'}
        assert controller.state.breaker.state == 'CLOSED'


# ---------------------------------------------------------------------------
# Contact tables
# ---------------------------------------------------------------------------

class TestContactSink:

    def _sink(self, engine):
        with engine.begin() as conn:
            conn.execute(text("CREATE TABLE phone_numbers (id INTEGER PRIMARY KEY, lead_id TEXT, "
                              "number TEXT, source TEXT)"))
            conn.execute(text("CREATE TABLE email_addresses (id INTEGER PRIMARY KEY, lead_id TEXT, "
                              "address TEXT)"))
        return ContactSink(probe_contact_schema(engine))

    def test_contacts_written_with_settlement(self, make_worker, run_manager, make_leads,
                                              db_engine, db_session):
        worker = make_worker(FakeProvider(no_email_leads={'L1'}), contact_sink=self._sink(db_engine))
        run_id = run_manager.create_run(make_leads(2), provider='batchdata')
        worker.run_worker(run_id)

        phones = db_session.execute(text("SELECT lead_id, number, source FROM phone_numbers "
                                         "ORDER BY lead_id")).all()
        assert phones == [('L0', '512-555-L0', 'batchdata'), ('L1', '512-555-L1', 'batchdata')]
        emails = db_session.execute(text("SELECT lead_id FROM email_addresses")).scalars().all()
        assert emails == ['L0']

    def test_cache_hit_writes_contacts_once(self, make_worker, run_manager, make_leads,
                                            db_engine, db_session):
        worker = make_worker(contact_sink=self._sink(db_engine))
        worker.run_worker(run_manager.create_run(make_leads(1), provider='batchdata'))
        worker.run_worker(run_manager.create_run(make_leads(1), provider='batchdata'))
        count = db_session.execute(text("SELECT COUNT(*) FROM phone_numbers")).scalar_one()
        assert count == 1


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class TestConcurrency:

    def test_thread_pool_processes_each_item_once(self, make_worker, run_manager, make_leads,
                                                  db_session):
        provider = FakeProvider()
        worker = make_worker(provider)
        run_id = run_manager.create_run(make_leads(30), provider='batchdata')

        assert worker.run_workers(run_id, concurrency=4) is None

        assert sorted(provider.calls) == sorted(f'L{i}' for i in range(30))
        run = run_manager.get_status(run_id)
        assert run.done == 30
        assert run.queued == run.in_flight == run.failed == 0
        assert len(_ledger_rows(db_session)) == 30

    def test_budget_stop_halts_all_workers(self, make_worker, make_config, run_manager,
                                           make_leads, db_session):
        provider = FakeProvider()
        worker = make_worker(provider, config=make_config(cost_cents=12, daily_budget_cents=60))
        run_id = run_manager.create_run(make_leads(20), provider='batchdata')

        assert worker.run_workers(run_id, concurrency=3) == BUDGET_EXCEEDED

        run = run_manager.get_status(run_id)
        assert run.done == 5
        assert run.in_flight == 0
        assert run.queued == 15
        assert len(provider.calls) == 5
