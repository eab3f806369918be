"""
Contact sink — writes resolved phones/emails back to the lead store tables.

Uses the ContactSchema probed at startup, so only columns that actually exist
are written. Rows already present for (lead, value) are skipped, which keeps
re-served cache/ledger results from duplicating contacts.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import table, column, select, insert

from skiptrace.services.schema_probe import ContactSchema, ContactTable

logger = logging.getLogger('services.lead_store')


class ContactSink:

    def __init__(self, schema: ContactSchema):
        self.schema = schema

    def write(self, session, lead_id: str, contacts: Dict[str, List[Dict[str, Any]]],
              provider: str) -> int:
        """Insert new contacts for lead_id inside the caller's transaction. Returns rows written."""
        written = 0
        written += self._write_table(session, self.schema.phones, lead_id,
                                     contacts.get('phones') or [], 'number', provider)
        written += self._write_table(session, self.schema.emails, lead_id,
                                     contacts.get('emails') or [], 'address', provider)
        if written:
            logger.debug("Wrote %d contact rows for lead %s", written, lead_id,
                         extra={'lead_id': lead_id, 'provider': provider})
        return written

    def _write_table(self, session, spec: Optional[ContactTable], lead_id: str,
                     entries: List[Dict[str, Any]], value_key: str, provider: str) -> int:
        if spec is None or not spec.writable or not entries:
            return 0

        optional = {
            spec.type_column: lambda e: e.get('type'),
            spec.primary_column: lambda e: bool(e.get('isPrimary')),
            spec.dnc_column: lambda e: bool(e.get('isDoNotCall')),
            spec.confidence_column: lambda e: e.get('confidence'),
            spec.source_column: lambda e: provider,
        }
        optional.pop(None, None)

        cols = [spec.lead_column, spec.value_column] + list(optional)
        tbl = table(spec.name, *[column(c) for c in cols])

        existing = set(session.execute(
            select(tbl.c[spec.value_column]).where(tbl.c[spec.lead_column] == lead_id)
        ).scalars())

        rows = []
        for entry in entries:
            value = entry.get(value_key)
            if not value or value in existing:
                continue
            existing.add(value)
            row = {spec.lead_column: lead_id, spec.value_column: value}
            for col, getter in optional.items():
                row[col] = getter(entry)
            rows.append(row)

        if rows:
            session.execute(insert(tbl), rows)
        return len(rows)
