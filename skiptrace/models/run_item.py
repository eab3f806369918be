"""
RunItem — one row per lead per run (the unit of work a worker claims).
"""
from sqlalchemy import Column, Integer, Text, DateTime, ForeignKey, UniqueConstraint, Index, JSON
from sqlalchemy.sql import func

from skiptrace.database import Base


class RunItem(Base):
    __tablename__ = 'skiptrace_run_items'
    __table_args__ = (
        UniqueConstraint('run_id', 'lead_id', name='uq_run_item_run_lead'),
        Index('ix_run_items_run_status', 'run_id', 'status'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Text, ForeignKey('skiptrace_runs.run_id'), nullable=False)
    lead_id = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default='queued')  # queued/in_flight/done/failed
    attempt = Column(Integer, nullable=False, default=0)
    idem_key = Column(Text, nullable=False)                  # fixed at creation
    normalized_address = Column(Text, nullable=True)
    normalized_person = Column(Text, nullable=True)
    lead_attrs = Column(JSON, nullable=True)                 # raw identity fields sent to the provider
    last_error = Column(Text, nullable=True)
    served_from = Column(Text, nullable=True)                # provider/cache/ledger once done
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def to_dict(self):
        return {
            'id': self.id,
            'run_id': self.run_id,
            'lead_id': self.lead_id,
            'status': self.status,
            'attempt': self.attempt,
            'idem_key': self.idem_key,
            'normalized_address': self.normalized_address,
            'normalized_person': self.normalized_person,
            'last_error': self.last_error,
            'served_from': self.served_from,
        }
