"""
Lead identity normalization + idempotency keys.

The idempotency key is a SHA-256 over (provider, normalized address,
normalized person). It ignores lead_id and run_id on purpose so the same
person at the same address dedups across runs and across lead records.
"""
import hashlib
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple


_UNIT_PREFIXES = (
    'APT', 'APARTMENT', 'SUITE', 'STE', 'UNIT', 'BLDG', 'BUILDING',
    'FLOOR', 'FL', 'LOT', 'SPACE', 'SPC',
)

_STREET_SUFFIXES = {
    'AVENUE': 'AVE',
    'BOULEVARD': 'BLVD',
    'CIRCLE': 'CIR',
    'COURT': 'CT',
    'DRIVE': 'DR',
    'HIGHWAY': 'HWY',
    'LANE': 'LN',
    'PARKWAY': 'PKWY',
    'PLACE': 'PL',
    'ROAD': 'RD',
    'SQUARE': 'SQ',
    'STREET': 'ST',
    'TERRACE': 'TER',
    'TRAIL': 'TRL',
}

_DIRECTIONALS = {
    'NORTH': 'N',
    'NORTHEAST': 'NE',
    'EAST': 'E',
    'SOUTHEAST': 'SE',
    'SOUTH': 'S',
    'SOUTHWEST': 'SW',
    'WEST': 'W',
    'NORTHWEST': 'NW',
}

_UNIT_PREFIX_RE = re.compile(r'^(%s)\s+[0-9A-Z]+\s+' % '|'.join(_UNIT_PREFIXES))
_PUNCT_RE = re.compile(r'[.,#]')
_NAME_PUNCT_RE = re.compile(r"[^A-Z0-9' -]")
_SPACES_RE = re.compile(r'\s+')


@dataclass(frozen=True)
class LeadAttrs:
    """The identity attributes a provider lookup is keyed on."""
    lead_id: str
    address: str
    city: str = ''
    state: str = ''
    zip: str = ''
    first_name: str = ''
    last_name: str = ''
    owner_name: str = ''

    @property
    def person(self) -> str:
        if self.owner_name:
            return self.owner_name
        return f'{self.first_name} {self.last_name}'.strip()


def normalize_address(line1: str, city: str = '', state: str = '', zip_code: str = '') -> str:
    """Upper-case, strip unit prefixes and punctuation, abbreviate suffixes and directionals."""
    line1 = (line1 or '').upper().strip()
    city = (city or '').upper().strip()
    state = (state or '').upper().strip()
    zip_code = (zip_code or '').strip()[:5]

    line1 = _UNIT_PREFIX_RE.sub('', line1)
    line1 = _PUNCT_RE.sub(' ', line1)

    words = []
    for word in _SPACES_RE.split(line1.strip()):
        if not word:
            continue
        word = _STREET_SUFFIXES.get(word, word)
        word = _DIRECTIONALS.get(word, word)
        words.append(word)

    parts = (' '.join(words), _PUNCT_RE.sub('', city).strip(), state, zip_code)
    return ' '.join(p for p in parts if p)


def normalize_person(name: str) -> str:
    name = (name or '').upper()
    name = _NAME_PUNCT_RE.sub(' ', name)
    return _SPACES_RE.sub(' ', name).strip()


def idempotency_key(provider: str, normalized_address: str, normalized_person: str) -> str:
    payload = '|'.join((provider.lower(), normalized_address, normalized_person))
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


def payload_hash(payload: Dict[str, Any]) -> str:
    """Stable hash of a request/response dict for the ledger and L2."""
    body = json.dumps(payload, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(body.encode('utf-8')).hexdigest()


def lead_from_dict(raw: Dict[str, Any]) -> LeadAttrs:
    """Accept the handful of field spellings the lead store / CSV exports use."""
    def pick(*names):
        for n in names:
            val = raw.get(n)
            if val is not None and str(val).strip():
                return str(val).strip()
        return ''

    return LeadAttrs(
        lead_id=pick('lead_id', 'LeadID', 'id'),
        address=pick('address', 'Address', 'address_line1', 'street'),
        city=pick('city', 'City'),
        state=pick('state', 'State'),
        zip=pick('zip', 'zip_code', 'Zip', 'postal_code'),
        first_name=pick('first_name', 'FirstName'),
        last_name=pick('last_name', 'LastName'),
        owner_name=pick('owner_name', 'owner', 'Owner', 'name'),
    )


def validate_leads(raw_leads: List[Dict[str, Any]]) -> Tuple[List[LeadAttrs], List[Dict[str, Any]]]:
    """
    Split raw lead dicts into (valid, rejected).

    A lead is rejected when it has no lead_id, no street address, or repeats a
    lead_id already seen in the batch (one RunItem per (run_id, lead_id)).
    """
    valid: List[LeadAttrs] = []
    rejected: List[Dict[str, Any]] = []
    seen = set()

    for idx, raw in enumerate(raw_leads):
        if not isinstance(raw, dict):
            rejected.append({'lead_id': '', 'index': idx, 'reason': 'lead must be an object'})
            continue
        lead = lead_from_dict(raw)
        reason: Optional[str] = None
        if not lead.lead_id:
            reason = 'missing lead_id'
        elif not normalize_address(lead.address):
            reason = 'missing address'
        elif lead.lead_id in seen:
            reason = 'duplicate lead_id'

        if reason:
            rejected.append({'lead_id': lead.lead_id, 'index': idx, 'reason': reason})
            continue
        seen.add(lead.lead_id)
        valid.append(lead)

    return valid, rejected
