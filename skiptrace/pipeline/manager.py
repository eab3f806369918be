"""
Pipeline Manager — wires the engine together and runs it in the background.

launch_run() creates a run and enqueues process_run() on RQ; process_run()
builds a Runtime (ledger, cache, guardrails, provider, worker) and drains the
run with a thread pool. The CLI calls process_run() directly, in-process.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from skiptrace.config import SKIP_TRACE_CONCURRENCY, SKIP_TRACE_JOB_TIMEOUT
from skiptrace.errors import RunNotFoundError
from skiptrace.pipeline.cost_config import guardrails_config, get_daily_budget_usd
from skiptrace.pipeline.run_manager import RunManager
from skiptrace.pipeline.worker import SkipTraceWorker
from skiptrace.services.cache import SkipTraceCache
from skiptrace.services.guardrails import GuardrailsRegistry
from skiptrace.services.lead_store import ContactSink
from skiptrace.services.ledger import ProviderCallLedger
from skiptrace.services.providers import Provider, build_provider
from skiptrace.services.schema_probe import probe_contact_schema

logger = logging.getLogger('pipeline.manager')


# ── Lazy RQ queue (avoids import-time Redis connection in tests/CLI) ──────────

_queue = None

def _get_queue():
    global _queue
    if _queue is None:
        from skiptrace.extensions import redis_client
        from rq import Queue
        _queue = Queue('skiptrace', connection=redis_client)
    return _queue


@dataclass
class Runtime:
    run_manager: RunManager
    ledger: ProviderCallLedger
    cache: SkipTraceCache
    guardrails: GuardrailsRegistry
    provider: Provider
    worker: SkipTraceWorker


def build_guardrails(ledger: ProviderCallLedger, redis_client=None) -> GuardrailsRegistry:
    """One registry per process; seeded from the ledger, publishing to Redis."""
    return GuardrailsRegistry(guardrails_config, ledger=ledger, redis_client=redis_client)


def build_runtime(provider_name: Optional[str] = None, session_factory=None, bind=None,
                  redis_client=None, guardrails: Optional[GuardrailsRegistry] = None) -> Runtime:
    """Assemble every engine component against one database."""
    if bind is None:
        from skiptrace.database import engine as bind
    run_manager = RunManager(session_factory)
    ledger = ProviderCallLedger(session_factory)
    cache = SkipTraceCache(session_factory)
    guardrails = guardrails or build_guardrails(ledger, redis_client)
    provider = build_provider(provider_name)
    worker = SkipTraceWorker(
        run_manager=run_manager,
        cache=cache,
        ledger=ledger,
        guardrails=guardrails,
        provider=provider,
        contact_sink=ContactSink(probe_contact_schema(bind)),
        session_factory=session_factory,
    )
    return Runtime(run_manager, ledger, cache, guardrails, provider, worker)


# ── Public API ────────────────────────────────────────────────────────────────

def create_run(leads: List[Dict[str, Any]], source_label: str = '', provider_name: Optional[str] = None,
               session_factory=None) -> str:
    """Validate leads and persist a run for whichever provider adapter is configured."""
    provider = build_provider(provider_name)
    budget = get_daily_budget_usd(provider.name)
    return RunManager(session_factory).create_run(
        leads,
        source_label=source_label,
        provider=provider.name,
        budget_cap_cents=None if budget is None else int(round(budget * 100)),
    )


def enqueue_run(run_id: str, concurrency: int = SKIP_TRACE_CONCURRENCY):
    """Schedule process_run on the RQ worker."""
    job = _get_queue().enqueue(process_run, run_id, concurrency, job_timeout=SKIP_TRACE_JOB_TIMEOUT)
    logger.info("Enqueued run %s (job %s)", run_id, job.id, extra={'run_id': run_id})
    return job


def launch_run(leads: List[Dict[str, Any]], source_label: str = '',
               provider_name: Optional[str] = None, session_factory=None) -> str:
    """Create a run and hand it to the background worker."""
    run_id = create_run(leads, source_label, provider_name, session_factory)
    enqueue_run(run_id)
    return run_id


def resume_run(run_id: str, reason: Optional[str] = None, enqueue: bool = True,
               session_factory=None) -> None:
    """Clear soft_paused and, by default, put the run back on the queue."""
    RunManager(session_factory).resume(run_id, reason)
    if enqueue:
        enqueue_run(run_id)


# ── Runner (enqueued via RQ, or called by the CLI) ────────────────────────────

def process_run(run_id: str, concurrency: int = SKIP_TRACE_CONCURRENCY,
                runtime: Optional[Runtime] = None) -> Optional[str]:
    """
    Drain a run: claim items until none are queued, the run is paused, or the
    daily budget is gone. Safe to call again on a partially processed run.
    """
    run_manager = runtime.run_manager if runtime else RunManager()
    try:
        run = run_manager.get_status(run_id)
    except RunNotFoundError:
        logger.error("Run %s not found", run_id)
        return None

    if runtime is None:
        from skiptrace.extensions import redis_client
        runtime = build_runtime(run.provider, redis_client=redis_client)

    if runtime.provider.name != run.provider:
        msg = f'provider {run.provider} unavailable (configured adapter is {runtime.provider.name})'
        logger.error("Cannot process run %s: %s", run_id, msg, extra={'run_id': run_id})
        run_manager.set_reason(run_id, msg)
        return None

    logger.info("Processing run %s (provider=%s, concurrency=%d)", run_id, run.provider, concurrency,
                extra={'run_id': run_id, 'provider': run.provider})
    try:
        stopped = runtime.worker.run_workers(run_id, concurrency)
    except Exception as e:
        logger.error("Run %s failed: %s", run_id, e, exc_info=True, extra={'run_id': run_id})
        raise

    totals = run_manager.get_status(run_id).totals()
    logger.info("Run %s pass complete: %s%s", run_id, totals,
                f' (stopped: {stopped})' if stopped else '', extra={'run_id': run_id})
    return stopped
