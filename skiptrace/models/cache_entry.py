"""
CacheEntry — L2 skip-trace result cache.

Rows past ttl_expires_at are stale but kept (audit trail); the next success
for the same key overwrites them in place.
"""
from sqlalchemy import Column, Integer, Text, DateTime, UniqueConstraint
from sqlalchemy.sql import func

from skiptrace.database import Base


class CacheEntry(Base):
    __tablename__ = 'skiptrace_cache'
    __table_args__ = (
        UniqueConstraint('provider', 'idempotency_key', name='ux_cache_key'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(Text, nullable=False)
    idempotency_key = Column(Text, nullable=False)
    payload_hash = Column(Text, nullable=False)
    response_json = Column(Text, nullable=False)
    parsed_contacts_json = Column(Text, nullable=False)
    ttl_expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_seen = Column(DateTime(timezone=True), nullable=True)
