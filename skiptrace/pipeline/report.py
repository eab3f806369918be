"""
Run report — rebuilt from persisted rows only, so it is valid mid-run, after
a crash, or long after the run finished, and the same rows always give the
same report.

The hit-rate query plan is fixed when the generator is built: contact tables
that can be joined on lead id are used directly; otherwise the stored L2
contacts for each item's idempotency key are counted instead.
"""
import json
import logging
import os
from typing import Any, Dict, Optional

from sqlalchemy import select, func, exists, and_, table, column

from skiptrace.config import RUN_REPORTS_DIR
from skiptrace.database import get_session, as_utc
from skiptrace.errors import RunNotFoundError
from skiptrace.models.cache_entry import CacheEntry
from skiptrace.models.provider_call import ProviderCall
from skiptrace.models.run import SkiptraceRun
from skiptrace.models.run_item import RunItem
from skiptrace.services.ledger import SUCCESS, FAILED
from skiptrace.services.schema_probe import ContactSchema, ContactTable, probe_contact_schema

logger = logging.getLogger('pipeline.report')

CACHE_SOURCES = ('cache', 'ledger')
ERROR_LIMIT = 10
SAMPLE_SIZE = 3


def _pct(part: int, whole: int) -> float:
    return round(100.0 * part / whole, 1) if whole else 0.0


class ReportGenerator:

    def __init__(self, session_factory=None, bind=None, schema: Optional[ContactSchema] = None):
        self._session_factory = session_factory or get_session
        if schema is None:
            if bind is None:
                from skiptrace.database import engine as bind
            schema = probe_contact_schema(bind)
        self.schema = schema
        self._phone_exists = self._exists_clause(schema.phones)
        self._email_exists = self._exists_clause(schema.emails)

    @staticmethod
    def _exists_clause(spec: Optional[ContactTable]):
        if spec is None:
            return None
        tbl = table(spec.name, column(spec.lead_column))
        return exists().where(tbl.c[spec.lead_column] == RunItem.lead_id)

    # ── Public API ────────────────────────────────────────────────────

    def generate(self, run_id: str) -> Dict[str, Any]:
        session = self._session_factory()
        try:
            run = session.get(SkiptraceRun, run_id)
            if run is None:
                raise RunNotFoundError(run_id)

            calls, cost_cents = session.execute(
                select(func.count(ProviderCall.id), func.coalesce(func.sum(ProviderCall.cost_cents), 0))
                .where(ProviderCall.run_id == run_id, ProviderCall.outcome.in_((SUCCESS, FAILED)))
            ).one()

            done_items = self._count(session, run_id, RunItem.status == 'done')
            failed_items = self._count(session, run_id, RunItem.status == 'failed')
            cache_hits = self._count(session, run_id, RunItem.status == 'done',
                                     RunItem.served_from.in_(CACHE_SOURCES))

            phone_hits, email_hits = self._contact_hits(session, run, done_items)

            errors = [
                {'reason': reason, 'count': count}
                for reason, count in session.execute(
                    select(func.coalesce(RunItem.last_error, ''), func.count(RunItem.id))
                    .where(RunItem.run_id == run_id, RunItem.status == 'failed')
                    .group_by(func.coalesce(RunItem.last_error, ''))
                )
            ]
            errors.sort(key=lambda e: (-e['count'], e['reason']))

            enriched = session.execute(
                select(RunItem.lead_id).where(RunItem.run_id == run_id, RunItem.status == 'done')
                .order_by(RunItem.id).limit(SAMPLE_SIZE)
            ).scalars().all()
            failed_samples = session.execute(
                select(RunItem.lead_id, RunItem.last_error)
                .where(RunItem.run_id == run_id, RunItem.status == 'failed')
                .order_by(RunItem.id).limit(SAMPLE_SIZE)
            ).all()

            started = as_utc(run.started_at)
            finished = as_utc(run.finished_at)
            lookups = int(calls or 0) + cache_hits

            return {
                'run_id': run.run_id,
                'source_label': run.source_label or '',
                'provider': run.provider,
                'started_at': started.isoformat() if started else None,
                'finished_at': finished.isoformat() if finished else None,
                'duration_s': round((finished - started).total_seconds()) if started and finished else None,
                'soft_paused': bool(run.soft_paused),
                'reason': run.reason,
                'totals': {
                    'total': run.total or 0,
                    'queued': run.queued or 0,
                    'in_flight': run.in_flight or 0,
                    'done': done_items,
                    'failed': failed_items,
                    'provider_calls': int(calls or 0),
                    'cache_hits': cache_hits,
                    'cost_usd': round(int(cost_cents or 0) / 100, 2),
                },
                'hit_rate': {
                    'phone_any_pct': _pct(phone_hits, done_items),
                    'email_any_pct': _pct(email_hits, done_items),
                },
                'cache_hit_ratio': round(cache_hits / lookups, 2) if lookups else 0.0,
                'budgets': {
                    'cap_usd': None if run.budget_cap_cents is None else round(run.budget_cap_cents / 100, 2),
                    'spent_usd': round((run.budget_spent_cents or 0) / 100, 2),
                    'soft_paused': bool(run.soft_paused),
                },
                'errors': errors[:ERROR_LIMIT],
                'rejected': list(run.rejected or []),
                'samples': {
                    'enriched': [{'lead_id': lead_id} for lead_id in enriched],
                    'failed': [{'lead_id': lead_id, 'last_error': err} for lead_id, err in failed_samples],
                },
            }
        finally:
            session.close()

    # ── Private helpers ───────────────────────────────────────────────

    @staticmethod
    def _count(session, run_id, *criteria) -> int:
        return session.execute(
            select(func.count(RunItem.id)).where(RunItem.run_id == run_id, *criteria)
        ).scalar_one()

    def _contact_hits(self, session, run: SkiptraceRun, done_items: int):
        if not done_items:
            return 0, 0
        done = and_(RunItem.run_id == run.run_id, RunItem.status == 'done')

        phone_hits = email_hits = None
        if self._phone_exists is not None:
            phone_hits = session.execute(
                select(func.count(RunItem.id)).where(done, self._phone_exists)
            ).scalar_one()
        if self._email_exists is not None:
            email_hits = session.execute(
                select(func.count(RunItem.id)).where(done, self._email_exists)
            ).scalar_one()

        if phone_hits is None or email_hits is None:
            cached_phones, cached_emails = self._cached_contact_hits(session, run, done)
            phone_hits = cached_phones if phone_hits is None else phone_hits
            email_hits = cached_emails if email_hits is None else email_hits
        return phone_hits, email_hits

    @staticmethod
    def _cached_contact_hits(session, run: SkiptraceRun, done):
        """Fallback: count done items whose stored L2 result has phones/emails."""
        rows = session.execute(
            select(CacheEntry.parsed_contacts_json)
            .join(RunItem, and_(CacheEntry.idempotency_key == RunItem.idem_key,
                                CacheEntry.provider == run.provider))
            .where(done)
        ).scalars()
        phones = emails = 0
        for raw in rows:
            try:
                contacts = json.loads(raw or '{}')
            except ValueError:
                continue
            phones += 1 if contacts.get('phones') else 0
            emails += 1 if contacts.get('emails') else 0
        return phones, emails


def write_report(report: Dict[str, Any], output_dir: str = RUN_REPORTS_DIR) -> str:
    """Write <output_dir>/<run_id>/report.json and return its path."""
    run_dir = os.path.join(output_dir, report['run_id'])
    os.makedirs(run_dir, exist_ok=True)
    path = os.path.join(run_dir, 'report.json')
    with open(path, 'w') as f:
        json.dump(report, f, indent=2)
    logger.info("Report written to %s", path, extra={'run_id': report['run_id']})
    return path
