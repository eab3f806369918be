"""
SkiptraceRun — one batch submission of leads, with its live counters.

Counters are only ever changed by the Run Manager, in the same transaction as
the RunItem transition they account for, so
queued + in_flight + done + failed == total holds after every commit.
"""
from sqlalchemy import Column, Text, Integer, Boolean, DateTime, JSON
from sqlalchemy.sql import func

from skiptrace.database import Base


class SkiptraceRun(Base):
    __tablename__ = 'skiptrace_runs'

    run_id = Column(Text, primary_key=True)
    source_label = Column(Text, default='')
    provider = Column(Text, nullable=False)
    total = Column(Integer, nullable=False, default=0)
    queued = Column(Integer, nullable=False, default=0)
    in_flight = Column(Integer, nullable=False, default=0)
    done = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    soft_paused = Column(Boolean, nullable=False, default=False)
    reason = Column(Text, nullable=True)
    budget_cap_cents = Column(Integer, nullable=True)   # None = uncapped
    budget_spent_cents = Column(Integer, nullable=False, default=0)
    rejected = Column(JSON, default=list)               # [{lead_id, reason}]
    started_at = Column(DateTime(timezone=True), server_default=func.now())
    finished_at = Column(DateTime(timezone=True), nullable=True)

    def totals(self):
        return {
            'total': self.total or 0,
            'queued': self.queued or 0,
            'in_flight': self.in_flight or 0,
            'done': self.done or 0,
            'failed': self.failed or 0,
        }

    def to_dict(self):
        return {
            'run_id': self.run_id,
            'source_label': self.source_label or '',
            'provider': self.provider,
            'soft_paused': bool(self.soft_paused),
            'reason': self.reason,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'totals': self.totals(),
        }
