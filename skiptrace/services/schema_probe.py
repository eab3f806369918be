"""
Contact-table capability detection.

The lead store's phone_numbers / email_addresses tables are not ours and
their columns drift between deployments. probe_contact_schema() inspects
them once and returns a fixed ContactSchema; the report and the contact
sink build their queries from it instead of re-checking per query.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from sqlalchemy import inspect

logger = logging.getLogger('services.schema_probe')

PHONE_TABLE = 'phone_numbers'
EMAIL_TABLE = 'email_addresses'

_LEAD_COLUMNS = ('lead_id', 'leadId', 'lead')
_PHONE_VALUE_COLUMNS = ('number', 'phone_number', 'phone')
_EMAIL_VALUE_COLUMNS = ('address', 'email_address', 'email')
_TYPE_COLUMNS = ('type', 'line_type', 'phone_type', 'email_type')
_PRIMARY_COLUMNS = ('is_primary', 'isPrimary', 'primary')
_DNC_COLUMNS = ('is_dnc', 'is_do_not_call', 'isDoNotCall', 'dnc')
_CONFIDENCE_COLUMNS = ('confidence', 'score')
_SOURCE_COLUMNS = ('source', 'provider')


def _first(columns: Sequence[str], candidates: Sequence[str]) -> Optional[str]:
    for c in candidates:
        if c in columns:
            return c
    return None


@dataclass(frozen=True)
class ContactTable:
    """Resolved column names for one contact table (None = column absent)."""
    name: str
    lead_column: str
    value_column: Optional[str] = None
    type_column: Optional[str] = None
    primary_column: Optional[str] = None
    dnc_column: Optional[str] = None
    confidence_column: Optional[str] = None
    source_column: Optional[str] = None

    @property
    def writable(self) -> bool:
        return self.value_column is not None


@dataclass(frozen=True)
class ContactSchema:
    phones: Optional[ContactTable] = None
    emails: Optional[ContactTable] = None

    @property
    def plan(self) -> str:
        """Short label for logs: which contact tables can be joined on lead_id."""
        parts = [t.name for t in (self.phones, self.emails) if t is not None]
        return '+'.join(parts) if parts else 'cache-only'


def _probe_table(inspector, table: str, value_candidates) -> Optional[ContactTable]:
    if not inspector.has_table(table):
        return None
    columns = [c['name'] for c in inspector.get_columns(table)]
    lead_col = _first(columns, _LEAD_COLUMNS)
    if lead_col is None:
        logger.warning("Contact table %s has no lead id column (columns=%s); ignoring it", table, columns)
        return None
    return ContactTable(
        name=table,
        lead_column=lead_col,
        value_column=_first(columns, value_candidates),
        type_column=_first(columns, _TYPE_COLUMNS),
        primary_column=_first(columns, _PRIMARY_COLUMNS),
        dnc_column=_first(columns, _DNC_COLUMNS),
        confidence_column=_first(columns, _CONFIDENCE_COLUMNS),
        source_column=_first(columns, _SOURCE_COLUMNS),
    )


def probe_contact_schema(bind) -> ContactSchema:
    """Inspect the contact tables on bind (an Engine or Connection)."""
    inspector = inspect(bind)
    schema = ContactSchema(
        phones=_probe_table(inspector, PHONE_TABLE, _PHONE_VALUE_COLUMNS),
        emails=_probe_table(inspector, EMAIL_TABLE, _EMAIL_VALUE_COLUMNS),
    )
    logger.info("Contact schema plan: %s", schema.plan)
    return schema
