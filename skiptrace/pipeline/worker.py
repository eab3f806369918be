"""
Skip-trace worker — claims RunItems and drives each one through
cache → guardrails → ledger → provider → settlement.

One item, start to finish:
  1. L1/L2 cache hit              → done (served_from='cache'), nothing billed
  2. guardrails.admit() denied    → back to queued with the denial reason
  3. ledger.record_attempt()
       Conflict on a success row  → reuse its cached contacts (served_from='ledger')
       Conflict on failed/stale   → reclaim the slot and call
       Conflict on a live pending → back to queued, retried shortly
  4. provider.lookup()
       ProviderError              → ledger failed, attempt+1
       success                    → ledger success + L2 upsert + contacts, one transaction

Any other exception fails the item with the cause in last_error, so an item
never stays in_flight because of a bug.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from skiptrace.config import SKIP_TRACE_CONCURRENCY, SKIP_TRACE_STALE_SECONDS
from skiptrace.database import get_session
from skiptrace.errors import BUDGET_EXCEEDED, CONFLICT, ProviderError
from skiptrace.pipeline.run_manager import RunManager, ItemOutcome, ClaimedItem
from skiptrace.services.cache import SkipTraceCache
from skiptrace.services.guardrails import GuardrailsRegistry
from skiptrace.services.ledger import ProviderCallLedger, CallAttempt, Conflict
from skiptrace.services.normalization import payload_hash
from skiptrace.services.providers import Provider

logger = logging.getLogger('pipeline.worker')

# Cap on a single wait for tokens / breaker cooldown before re-checking
MAX_WAIT_SECONDS = 30.0
BUSY_SLOT_RETRY_SECONDS = 1.0


class SkipTraceWorker:

    def __init__(self, run_manager: RunManager, cache: SkipTraceCache, ledger: ProviderCallLedger,
                 guardrails: GuardrailsRegistry, provider: Provider, contact_sink=None,
                 session_factory=None, stale_seconds: int = SKIP_TRACE_STALE_SECONDS,
                 sleep=time.sleep, max_wait: float = MAX_WAIT_SECONDS):
        self.run_manager = run_manager
        self.cache = cache
        self.ledger = ledger
        self.guardrails = guardrails
        self.provider = provider
        self.contact_sink = contact_sink
        self._session_factory = session_factory or get_session
        self.stale_seconds = stale_seconds
        self._sleep = sleep
        self.max_wait = max_wait

    # ── One item ──────────────────────────────────────────────────────

    def process_item(self, item: ClaimedItem) -> ItemOutcome:
        """Resolve one claimed item and record its outcome with the Run Manager."""
        extra = {'run_id': item.run_id, 'item_id': item.id, 'lead_id': item.lead_id,
                 'provider': self.provider.name}
        try:
            outcome = self._resolve(item)
        except Exception as e:
            logger.error("Unhandled error on item %s: %s", item.id, e, exc_info=True, extra=extra)
            outcome = ItemOutcome.failure(f'{type(e).__name__}: {e}')

        self.run_manager.complete_item(item.id, outcome)
        if outcome.kind == 'provider_error':
            logger.warning("Provider error on item %s (attempt %d): %s",
                           item.id, item.attempt + 1, outcome.error, extra=extra)
        return outcome

    def _resolve(self, item: ClaimedItem) -> ItemOutcome:
        provider = self.provider.name
        key = item.idem_key

        cached = self.cache.lookup(provider, key)
        if cached is not None:
            self._emit_contacts(item, cached.contacts)
            return ItemOutcome.done('cache')

        admission = self.guardrails.admit(provider)
        if not admission.allowed:
            return ItemOutcome.denied(admission.reason, admission.retry_after)

        call = CallAttempt(
            provider=provider,
            idempotency_key=key,
            payload_hash=payload_hash(self.provider.request_payload(item.lead)),
            run_id=item.run_id,
            lead_id=item.lead_id,
        )
        reservation = self.ledger.record_attempt(call)
        if isinstance(reservation, Conflict):
            existing = reservation.existing
            if existing.succeeded:
                self.guardrails.release(admission)
                return self._reuse_ledger_success(item, provider, key)
            if not self.ledger.reclaim(existing, call, self.stale_seconds):
                self.guardrails.release(admission)
                logger.info("Ledger slot for item %s busy elsewhere, requeueing", item.id,
                            extra={'run_id': item.run_id, 'item_id': item.id})
                return ItemOutcome.requeue(BUSY_SLOT_RETRY_SECONDS)
            call_id = existing.id
        else:
            call_id = reservation.call_id

        started = time.monotonic()
        try:
            response = self.provider.lookup(item.lead)
        except ProviderError as e:
            self._settle_failure(call_id, e, started, admission)
            return ItemOutcome.provider_error(str(e))
        except Exception as e:
            self._settle_failure(call_id, e, started, admission)
            raise
        response_ms = int((time.monotonic() - started) * 1000)
        self.guardrails.record_outcome(provider, True, response.cost_cents, admission)

        session = self._session_factory()
        try:
            self.ledger.settle_success(
                session, call_id,
                status_code=response.status_code,
                cost_cents=response.cost_cents,
                response_ms=response_ms,
                response_hash=payload_hash(response.body),
                simulated=response.simulated,
            )
            stored = self.cache.store(session, provider, key, call.payload_hash,
                                      response.body, response.contacts)
            if self.contact_sink is not None:
                self.contact_sink.write(session, item.lead_id, response.contacts, provider)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        self.cache.remember(provider, key, stored)
        self.run_manager.record_spend(item.run_id, response.cost_cents)
        return ItemOutcome.done('provider')

    def _reuse_ledger_success(self, item: ClaimedItem, provider: str, key: str) -> ItemOutcome:
        result = self.cache.read_any(provider, key)
        if result is None:
            return ItemOutcome.failure(f'{CONFLICT}: ledger success for key without a stored result')
        self.cache.remember(provider, key, result)
        self._emit_contacts(item, result.contacts)
        return ItemOutcome.done('ledger')

    def _settle_failure(self, call_id: int, error: Exception, started: float, admission) -> None:
        response_ms = int((time.monotonic() - started) * 1000)
        session = self._session_factory()
        try:
            self.ledger.settle_failure(
                session, call_id,
                status_code=getattr(error, 'status_code', None),
                error_text=str(error),
                response_ms=response_ms,
                simulated=self.provider.simulated,
            )
            session.commit()
        finally:
            session.close()
        self.guardrails.record_outcome(self.provider.name, False, 0, admission)

    def _emit_contacts(self, item: ClaimedItem, contacts) -> None:
        if self.contact_sink is None:
            return
        session = self._session_factory()
        try:
            self.contact_sink.write(session, item.lead_id, contacts, self.provider.name)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ── Loops ─────────────────────────────────────────────────────────

    def run_worker(self, run_id: str, stop: Optional[threading.Event] = None) -> Optional[str]:
        """
        Claim and process items until the run has nothing queued, is paused,
        or the daily budget is spent. Returns 'budget_exceeded' when stopped
        by the budget, else None.
        """
        stop = stop or threading.Event()
        processed = 0
        while not stop.is_set():
            item = self.run_manager.next_queued_item(run_id)
            if item is None:
                break
            outcome = self.process_item(item)
            processed += 1
            if outcome.kind != 'denied':
                continue
            if outcome.reason == BUDGET_EXCEEDED:
                logger.warning("Daily budget exhausted, stopping run %s", run_id, extra={'run_id': run_id})
                stop.set()
                return BUDGET_EXCEEDED
            # rate_limited / circuit_open / busy slot: wait it out, then claim again
            self._sleep(min(max(outcome.retry_after, 0.05), self.max_wait))

        logger.info("Worker finished on run %s after %d items", run_id, processed, extra={'run_id': run_id})
        return BUDGET_EXCEEDED if stop.is_set() and self._budget_stopped(run_id) else None

    def run_workers(self, run_id: str, concurrency: int = SKIP_TRACE_CONCURRENCY) -> Optional[str]:
        """Run `concurrency` workers against one run in a thread pool."""
        stop = threading.Event()
        concurrency = max(1, concurrency)
        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix='skiptrace') as pool:
            futures = [pool.submit(self.run_worker, run_id, stop) for _ in range(concurrency)]
            results = [f.result() for f in futures]

        if BUDGET_EXCEEDED in results:
            return BUDGET_EXCEEDED
        return None

    def _budget_stopped(self, run_id: str) -> bool:
        return self.run_manager.get_status(run_id).reason == BUDGET_EXCEEDED
