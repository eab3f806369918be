"""
Run Manager — owns SkiptraceRun and RunItem rows.

Item lifecycle:
  queued → in_flight → done
                     → queued   (guardrail denial, or provider error below the attempt ceiling)
                     → failed   (attempt ceiling reached, or an unhandled error)

Every transition is a conditional UPDATE on the item's current status plus
counter arithmetic on the run, committed together, so
queued + in_flight + done + failed == total after every commit and two
workers can never claim the same item.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, case, null

from skiptrace.config import SKIP_TRACE_MAX_ATTEMPTS, SKIP_TRACE_STALE_SECONDS, SKIP_TRACE_PRIMARY_PROVIDER
from skiptrace.database import get_session, utcnow
from skiptrace.errors import ValidationError, RunNotFoundError, DENIAL_REASONS, RATE_LIMITED, CIRCUIT_OPEN
from skiptrace.models.run import SkiptraceRun
from skiptrace.models.run_item import RunItem
from skiptrace.services.normalization import (
    LeadAttrs, validate_leads, normalize_address, normalize_person, idempotency_key,
)

logger = logging.getLogger('pipeline.run_manager')

QUEUED = 'queued'
IN_FLIGHT = 'in_flight'
DONE = 'done'
FAILED = 'failed'

STALE_CLAIM_ERROR = 'stale claim reclaimed'

# Denials that a later success proves are over
TRANSIENT_REASONS = (RATE_LIMITED, CIRCUIT_OPEN)


def _clear_reason(reasons):
    """SQL expression: NULL when the run's reason is one of reasons, else unchanged."""
    return case((SkiptraceRun.reason.in_(reasons), null()), else_=SkiptraceRun.reason)


@dataclass(frozen=True)
class ItemOutcome:
    """What happened to a claimed item. Build with the classmethods."""
    kind: str
    served_from: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    retry_after: float = 0.0

    @classmethod
    def done(cls, served_from: str) -> 'ItemOutcome':
        return cls(kind='done', served_from=served_from)

    @classmethod
    def denied(cls, reason: str, retry_after: float = 0.0) -> 'ItemOutcome':
        return cls(kind='denied', reason=reason, retry_after=retry_after)

    @classmethod
    def requeue(cls, retry_after: float = 0.0) -> 'ItemOutcome':
        """Back to queued without blaming guardrails (slot busy elsewhere)."""
        return cls(kind='denied', retry_after=retry_after)

    @classmethod
    def provider_error(cls, error: str) -> 'ItemOutcome':
        return cls(kind='provider_error', error=error)

    @classmethod
    def failure(cls, error: str) -> 'ItemOutcome':
        return cls(kind='error', error=error)


@dataclass(frozen=True)
class ClaimedItem:
    """Detached view of a RunItem a worker now owns."""
    id: int
    run_id: str
    lead_id: str
    attempt: int
    idem_key: str
    normalized_address: str
    normalized_person: str
    lead: LeadAttrs


def _lead_to_json(lead: LeadAttrs) -> Dict[str, str]:
    return {
        'lead_id': lead.lead_id, 'address': lead.address, 'city': lead.city,
        'state': lead.state, 'zip': lead.zip, 'first_name': lead.first_name,
        'last_name': lead.last_name, 'owner_name': lead.owner_name,
    }


class RunManager:

    def __init__(self, session_factory=None, max_attempts: int = SKIP_TRACE_MAX_ATTEMPTS,
                 stale_seconds: int = SKIP_TRACE_STALE_SECONDS, clock=utcnow):
        self._session_factory = session_factory or get_session
        self.max_attempts = max_attempts
        self.stale_seconds = stale_seconds
        self._clock = clock

    # ── Runs ──────────────────────────────────────────────────────────

    def create_run(self, leads: List[Dict[str, Any]], source_label: str = '',
                   provider: Optional[str] = None, budget_cap_cents: Optional[int] = None) -> str:
        """
        Persist a run and one queued RunItem per valid lead, in one transaction.

        Invalid leads are kept on run.rejected. Raises ValidationError when no
        lead is valid (no run is created).
        """
        provider = (provider or SKIP_TRACE_PRIMARY_PROVIDER).lower()
        valid, rejected = validate_leads(leads)
        if not valid:
            raise ValidationError(f"No valid leads in batch ({len(rejected)} rejected)", rejected=rejected)

        run_id = str(uuid.uuid4())
        now = self._clock()
        session = self._session_factory()
        try:
            session.add(SkiptraceRun(
                run_id=run_id,
                source_label=source_label or '',
                provider=provider,
                total=len(valid),
                queued=len(valid),
                in_flight=0,
                done=0,
                failed=0,
                soft_paused=False,
                budget_cap_cents=budget_cap_cents,
                budget_spent_cents=0,
                rejected=rejected,
                started_at=now,
            ))
            for lead in valid:
                addr = normalize_address(lead.address, lead.city, lead.state, lead.zip)
                person = normalize_person(lead.person)
                session.add(RunItem(
                    run_id=run_id,
                    lead_id=lead.lead_id,
                    status=QUEUED,
                    attempt=0,
                    idem_key=idempotency_key(provider, addr, person),
                    normalized_address=addr,
                    normalized_person=person,
                    lead_attrs=_lead_to_json(lead),
                    updated_at=now,
                ))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info("Created run %s: %d items (%d rejected) provider=%s",
                    run_id, len(valid), len(rejected), provider, extra={'run_id': run_id})
        return run_id

    def get_status(self, run_id: str) -> SkiptraceRun:
        session = self._session_factory()
        try:
            run = session.get(SkiptraceRun, run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            return run
        finally:
            session.close()

    def list_runs(self, limit: int = 20) -> List[SkiptraceRun]:
        session = self._session_factory()
        try:
            return list(session.execute(
                select(SkiptraceRun).order_by(SkiptraceRun.started_at.desc()).limit(limit)
            ).scalars())
        finally:
            session.close()

    def pause(self, run_id: str, reason: Optional[str] = None) -> None:
        """Stop future claims. In-flight items still finish."""
        self._update_run(run_id, soft_paused=True, reason=reason or 'paused')
        logger.info("Run %s paused (%s)", run_id, reason or 'paused', extra={'run_id': run_id})

    def resume(self, run_id: str, reason: Optional[str] = None) -> None:
        """Allow claims again; the backlog is whatever is still queued."""
        self._update_run(run_id, soft_paused=False, reason=reason)
        logger.info("Run %s resumed", run_id, extra={'run_id': run_id})

    def set_reason(self, run_id: str, reason: Optional[str]) -> None:
        self._update_run(run_id, reason=reason)

    def record_spend(self, run_id: str, cents: int) -> None:
        """Add billed cents to the run's persisted budget snapshot."""
        if not cents:
            return
        session = self._session_factory()
        try:
            session.execute(
                update(SkiptraceRun)
                .where(SkiptraceRun.run_id == run_id)
                .values(budget_spent_cents=SkiptraceRun.budget_spent_cents + int(cents))
            )
            session.commit()
        finally:
            session.close()

    # ── Items ─────────────────────────────────────────────────────────

    def next_queued_item(self, run_id: str) -> Optional[ClaimedItem]:
        """Atomically claim the oldest queued item, or None if paused / nothing left."""
        self.reclaim_stale(run_id)

        session = self._session_factory()
        try:
            run = session.get(SkiptraceRun, run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            if run.soft_paused:
                return None

            while True:
                candidate = session.execute(
                    select(RunItem.id)
                    .where(RunItem.run_id == run_id, RunItem.status == QUEUED)
                    .order_by(RunItem.id)
                    .limit(1)
                ).scalar_one_or_none()
                if candidate is None:
                    return None

                now = self._clock()
                claimed = session.execute(
                    update(RunItem)
                    .where(RunItem.id == candidate, RunItem.status == QUEUED)
                    .values(status=IN_FLIGHT, claimed_at=now, updated_at=now)
                )
                if claimed.rowcount != 1:
                    # Another worker got there first
                    session.rollback()
                    continue

                session.execute(
                    update(SkiptraceRun)
                    .where(SkiptraceRun.run_id == run_id)
                    .values(queued=SkiptraceRun.queued - 1, in_flight=SkiptraceRun.in_flight + 1)
                )
                session.commit()

                item = session.get(RunItem, candidate)
                return ClaimedItem(
                    id=item.id,
                    run_id=item.run_id,
                    lead_id=item.lead_id,
                    attempt=item.attempt,
                    idem_key=item.idem_key,
                    normalized_address=item.normalized_address or '',
                    normalized_person=item.normalized_person or '',
                    lead=LeadAttrs(**(item.lead_attrs or {'lead_id': item.lead_id, 'address': ''})),
                )
        finally:
            session.close()

    def complete_item(self, item_id: int, outcome: ItemOutcome) -> bool:
        """
        Apply outcome to an in_flight item. Returns False if the item was no
        longer in_flight (e.g. reclaimed as stale), in which case nothing changes.
        """
        session = self._session_factory()
        try:
            item = session.get(RunItem, item_id)
            if item is None:
                raise ValueError(f"Unknown run item {item_id}")
            run_id = item.run_id
            attempt = item.attempt
            now = self._clock()

            run_values: Dict[str, Any] = {'in_flight': SkiptraceRun.in_flight - 1}
            if outcome.kind == 'done':
                item_values = {'status': DONE, 'served_from': outcome.served_from, 'last_error': None}
                run_values['done'] = SkiptraceRun.done + 1
                run_values['reason'] = _clear_reason(TRANSIENT_REASONS)
            elif outcome.kind == 'denied':
                item_values = {'status': QUEUED, 'claimed_at': None}
                run_values['queued'] = SkiptraceRun.queued + 1
                if outcome.reason:
                    run_values['reason'] = outcome.reason
            elif outcome.kind == 'provider_error':
                attempt += 1
                item_values = {'attempt': attempt, 'last_error': outcome.error, 'claimed_at': None}
                if attempt < self.max_attempts:
                    item_values['status'] = QUEUED
                    run_values['queued'] = SkiptraceRun.queued + 1
                else:
                    item_values['status'] = FAILED
                    run_values['failed'] = SkiptraceRun.failed + 1
            elif outcome.kind == 'error':
                item_values = {'status': FAILED, 'last_error': outcome.error, 'claimed_at': None}
                run_values['failed'] = SkiptraceRun.failed + 1
            else:
                raise ValueError(f"Unknown outcome kind: {outcome.kind}")

            item_values['updated_at'] = now
            moved = session.execute(
                update(RunItem)
                .where(RunItem.id == item_id, RunItem.status == IN_FLIGHT)
                .values(**item_values)
            )
            if moved.rowcount != 1:
                session.rollback()
                logger.warning("Item %s no longer in_flight; outcome %s dropped",
                               item_id, outcome.kind, extra={'run_id': run_id, 'item_id': item_id})
                return False

            session.execute(
                update(SkiptraceRun).where(SkiptraceRun.run_id == run_id).values(**run_values)
            )
            self._mark_finished(session, run_id, now)
            session.commit()
            return True
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def reclaim_stale(self, run_id: str) -> int:
        """Return items stuck in_flight past the staleness timeout to queued."""
        cutoff = self._clock() - timedelta(seconds=self.stale_seconds)
        session = self._session_factory()
        try:
            result = session.execute(
                update(RunItem)
                .where(
                    RunItem.run_id == run_id,
                    RunItem.status == IN_FLIGHT,
                    RunItem.claimed_at < cutoff,
                )
                .values(status=QUEUED, claimed_at=None, last_error=STALE_CLAIM_ERROR,
                        updated_at=self._clock())
            )
            count = result.rowcount or 0
            if count:
                session.execute(
                    update(SkiptraceRun)
                    .where(SkiptraceRun.run_id == run_id)
                    .values(in_flight=SkiptraceRun.in_flight - count,
                            queued=SkiptraceRun.queued + count)
                )
                session.commit()
                logger.warning("Reclaimed %d stale in_flight items", count, extra={'run_id': run_id})
            else:
                session.rollback()
            return count
        finally:
            session.close()

    def item_counts(self, run_id: str) -> Dict[str, int]:
        """Recount items by status straight from RunItem rows."""
        session = self._session_factory()
        try:
            counts = {QUEUED: 0, IN_FLIGHT: 0, DONE: 0, FAILED: 0}
            for (status,) in session.execute(select(RunItem.status).where(RunItem.run_id == run_id)):
                counts[status] = counts.get(status, 0) + 1
            return counts
        finally:
            session.close()

    # ── Private helpers ───────────────────────────────────────────────

    def _update_run(self, run_id: str, **values) -> None:
        session = self._session_factory()
        try:
            result = session.execute(
                update(SkiptraceRun).where(SkiptraceRun.run_id == run_id).values(**values)
            )
            if result.rowcount != 1:
                session.rollback()
                raise RunNotFoundError(run_id)
            session.commit()
        finally:
            session.close()

    @staticmethod
    def _mark_finished(session, run_id: str, now) -> None:
        session.execute(
            update(SkiptraceRun)
            .where(
                SkiptraceRun.run_id == run_id,
                SkiptraceRun.queued == 0,
                SkiptraceRun.in_flight == 0,
                SkiptraceRun.finished_at.is_(None),
            )
            .values(finished_at=now, reason=_clear_reason(DENIAL_REASONS))
        )
