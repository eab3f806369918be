"""
ProviderCall — the billing ledger, at most one row per (provider, idempotency_key).
"""
from sqlalchemy import Column, Integer, Text, Boolean, DateTime, UniqueConstraint, Index
from sqlalchemy.sql import func

from skiptrace.database import Base


class ProviderCall(Base):
    __tablename__ = 'provider_calls'
    __table_args__ = (
        UniqueConstraint('provider', 'idempotency_key', name='ux_provider_idem'),
        Index('ix_provider_calls_run', 'run_id'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(Text, nullable=False)
    idempotency_key = Column(Text, nullable=False)
    payload_hash = Column(Text, nullable=False)      # sha256 of the request payload
    response_hash = Column(Text, nullable=True)      # sha256 of the response body
    outcome = Column(Text, nullable=False, default='pending')  # pending/success/failed
    cost_cents = Column(Integer, nullable=False, default=0)
    response_ms = Column(Integer, nullable=True)
    status_code = Column(Integer, nullable=True)
    error_text = Column(Text, nullable=True)
    simulated = Column(Boolean, nullable=False, default=False)
    run_id = Column(Text, nullable=True)
    lead_id = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
