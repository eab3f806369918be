"""
Provider call ledger — durable record of every billed lookup.

The (provider, idempotency_key) unique constraint is the billing authority:
a worker reserves the slot *before* calling the provider (outcome=pending),
then settles it with the result. A second reservation for the same key gets
a Conflict carrying the existing record, and the caller reuses that outcome
instead of paying again.

A failed slot, or a pending slot whose worker went away, can be taken over
with reclaim() — a conditional UPDATE, so only one worker wins it and the
table still holds one row per key.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError

from skiptrace.database import get_session, utcnow, as_utc
from skiptrace.models.provider_call import ProviderCall

logger = logging.getLogger('services.ledger')

PENDING = 'pending'
SUCCESS = 'success'
FAILED = 'failed'


@dataclass(frozen=True)
class CallAttempt:
    """What a worker knows about a call before making it."""
    provider: str
    idempotency_key: str
    payload_hash: str
    run_id: Optional[str] = None
    lead_id: Optional[str] = None


@dataclass(frozen=True)
class LedgerRecord:
    """Detached snapshot of a provider_calls row."""
    id: int
    provider: str
    idempotency_key: str
    payload_hash: str
    outcome: str
    cost_cents: int
    status_code: Optional[int]
    error_text: Optional[str]
    response_ms: Optional[int]
    simulated: bool
    run_id: Optional[str]
    lead_id: Optional[str]
    updated_at: Optional[datetime]

    @classmethod
    def from_row(cls, row: ProviderCall) -> 'LedgerRecord':
        return cls(
            id=row.id,
            provider=row.provider,
            idempotency_key=row.idempotency_key,
            payload_hash=row.payload_hash,
            outcome=row.outcome,
            cost_cents=row.cost_cents or 0,
            status_code=row.status_code,
            error_text=row.error_text,
            response_ms=row.response_ms,
            simulated=bool(row.simulated),
            run_id=row.run_id,
            lead_id=row.lead_id,
            updated_at=as_utc(row.updated_at),
        )

    @property
    def succeeded(self) -> bool:
        return self.outcome == SUCCESS


@dataclass(frozen=True)
class Inserted:
    call_id: int


@dataclass(frozen=True)
class Conflict:
    existing: LedgerRecord


class ProviderCallLedger:

    def __init__(self, session_factory=None, clock=utcnow):
        self._session_factory = session_factory or get_session
        self._clock = clock

    # ── Reservation ───────────────────────────────────────────────────

    def record_attempt(self, call: CallAttempt) -> Union[Inserted, Conflict]:
        """Reserve the (provider, key) slot. Never creates a second row."""
        session = self._session_factory()
        try:
            row = ProviderCall(
                provider=call.provider,
                idempotency_key=call.idempotency_key,
                payload_hash=call.payload_hash,
                outcome=PENDING,
                run_id=call.run_id,
                lead_id=call.lead_id,
                updated_at=self._clock(),
            )
            session.add(row)
            try:
                session.commit()
                return Inserted(call_id=row.id)
            except IntegrityError:
                # Unique constraint on (provider, idempotency_key); fetch the owner
                session.rollback()

            existing = session.execute(
                select(ProviderCall).where(
                    ProviderCall.provider == call.provider,
                    ProviderCall.idempotency_key == call.idempotency_key,
                )
            ).scalar_one_or_none()
            if existing is None:
                raise RuntimeError(
                    f"ledger insert conflicted but no row found for {call.provider}/{call.idempotency_key[:12]}"
                )
            logger.info("Ledger conflict %s/%s (outcome=%s)",
                        call.provider, call.idempotency_key[:12], existing.outcome)
            return Conflict(existing=LedgerRecord.from_row(existing))
        finally:
            session.close()

    def reclaim(self, record: LedgerRecord, call: CallAttempt, stale_seconds: int) -> bool:
        """
        Take over a failed slot, or a pending slot untouched for stale_seconds.

        Returns True when this caller now owns the slot (outcome=pending).
        """
        now = self._clock()
        claimable = (ProviderCall.outcome == FAILED) | (
            (ProviderCall.outcome == PENDING)
            & (ProviderCall.updated_at < now - timedelta(seconds=stale_seconds))
        )
        session = self._session_factory()
        try:
            result = session.execute(
                update(ProviderCall)
                .where(ProviderCall.id == record.id, claimable)
                .values(
                    outcome=PENDING,
                    payload_hash=call.payload_hash,
                    run_id=call.run_id,
                    lead_id=call.lead_id,
                    status_code=None,
                    cost_cents=0,
                    error_text=None,
                    updated_at=now,
                )
            )
            session.commit()
            won = result.rowcount == 1
            if won:
                logger.info("Ledger slot %s/%s reclaimed from outcome=%s",
                            record.provider, record.idempotency_key[:12], record.outcome)
            return won
        finally:
            session.close()

    # ── Settlement (inside the caller's transaction) ──────────────────

    def settle_success(self, session, call_id: int, *, status_code: int, cost_cents: int,
                       response_ms: int, response_hash: str, simulated: bool = False) -> None:
        session.execute(
            update(ProviderCall)
            .where(ProviderCall.id == call_id, ProviderCall.outcome == PENDING)
            .values(
                outcome=SUCCESS,
                status_code=status_code,
                cost_cents=int(cost_cents or 0),
                response_ms=response_ms,
                response_hash=response_hash,
                error_text=None,
                simulated=simulated,
                updated_at=self._clock(),
            )
        )

    def settle_failure(self, session, call_id: int, *, status_code: Optional[int],
                       error_text: str, response_ms: Optional[int] = None,
                       cost_cents: int = 0, simulated: bool = False) -> None:
        session.execute(
            update(ProviderCall)
            .where(ProviderCall.id == call_id, ProviderCall.outcome == PENDING)
            .values(
                outcome=FAILED,
                status_code=status_code,
                cost_cents=int(cost_cents or 0),
                response_ms=response_ms,
                error_text=(error_text or '')[:500],
                simulated=simulated,
                updated_at=self._clock(),
            )
        )

    # ── Reads ─────────────────────────────────────────────────────────

    def get(self, provider: str, key: str) -> Optional[LedgerRecord]:
        session = self._session_factory()
        try:
            row = session.execute(
                select(ProviderCall).where(
                    ProviderCall.provider == provider,
                    ProviderCall.idempotency_key == key,
                )
            ).scalar_one_or_none()
            return LedgerRecord.from_row(row) if row else None
        finally:
            session.close()

    def spent_today(self, provider: str, now: Optional[datetime] = None) -> int:
        """Cents billed for provider since 00:00 UTC — seeds the daily budget."""
        now = now or self._clock()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        session = self._session_factory()
        try:
            total = session.execute(
                select(func.coalesce(func.sum(ProviderCall.cost_cents), 0)).where(
                    ProviderCall.provider == provider,
                    ProviderCall.updated_at >= day_start,
                    ProviderCall.updated_at < day_start + timedelta(days=1),
                )
            ).scalar_one()
            return int(total or 0)
        finally:
            session.close()
