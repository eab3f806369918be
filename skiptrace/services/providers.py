"""
Skip-trace provider adapters.

A Provider turns one lead identity into a ProviderResponse (phones + emails),
or raises ProviderError. Which adapter a run uses is decided once, at
configuration time, by build_provider():

  - LiveBatchDataProvider   POST {BATCHDATA_API_URL}/v1/property/owner/contact
  - LiveWhitePagesProvider  GET  {WHITEPAGES_API_URL}/3.3/person
  - StubProvider            deterministic fake contacts, simulated=True

The stub goes through the same ledger/cache/report path as a live provider,
under its own provider name so simulated rows never satisfy a live key.
"""
import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from skiptrace.config import (
    SKIP_TRACE_PRIMARY_PROVIDER, PROVIDER_TIMEOUT_SECONDS,
    BATCHDATA_API_KEY, BATCHDATA_API_URL,
    WHITEPAGES_API_KEY, WHITEPAGES_API_URL,
)
from skiptrace.errors import ProviderError
from skiptrace.services.normalization import LeadAttrs

logger = logging.getLogger('services.providers')

STUB = 'stub'


@dataclass
class ProviderResponse:
    status_code: int
    phones: List[Dict[str, Any]] = field(default_factory=list)
    emails: List[Dict[str, Any]] = field(default_factory=list)
    cost_cents: int = 0
    body: Dict[str, Any] = field(default_factory=dict)
    simulated: bool = False

    @property
    def contacts(self) -> Dict[str, List[Dict[str, Any]]]:
        return {'phones': self.phones, 'emails': self.emails}


class Provider(ABC):
    """A paid lookup service."""

    name: str = ''
    simulated: bool = False

    def __init__(self, cost_cents: int = 0):
        self.cost_cents = cost_cents

    def request_payload(self, lead: LeadAttrs) -> Dict[str, str]:
        """The identity fields sent to the provider (hashed into the ledger)."""
        return {
            'name': lead.person,
            'address': lead.address,
            'city': lead.city,
            'state': lead.state,
            'zip': lead.zip,
        }

    @abstractmethod
    def lookup(self, lead: LeadAttrs) -> ProviderResponse:
        """Resolve contacts for one lead. Raises ProviderError on any failure."""


# ── BatchData ─────────────────────────────────────────────────────────────────

class LiveBatchDataProvider(Provider):

    name = 'batchdata'

    def __init__(self, api_key: str, api_url: str = BATCHDATA_API_URL, cost_cents: int = 0,
                 timeout: float = PROVIDER_TIMEOUT_SECONDS, session: Optional[requests.Session] = None):
        super().__init__(cost_cents)
        self.api_key = api_key
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout
        self.http = session or requests.Session()

    def lookup(self, lead: LeadAttrs) -> ProviderResponse:
        try:
            resp = self.http.post(
                f'{self.api_url}/v1/property/owner/contact',
                json=self.request_payload(lead),
                headers={'X-API-KEY': self.api_key, 'Content-Type': 'application/json'},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError(self.name, f'transport error: {e}') from e

        if resp.status_code != 200:
            raise ProviderError(self.name, f'API error: {resp.status_code} {resp.text[:200]}',
                                status_code=resp.status_code)
        try:
            data = resp.json() or {}
        except ValueError as e:
            raise ProviderError(self.name, f'invalid JSON response: {e}', status_code=resp.status_code) from e

        phones = [
            {
                'number': p.get('number'),
                'type': p.get('type') or 'unknown',
                'isPrimary': bool(p.get('is_primary', False)),
                'isDoNotCall': bool(p.get('is_dnc', False)),
                'confidence': p.get('confidence') or 0,
            }
            for p in data.get('phones') or [] if p.get('number')
        ]
        emails = [
            {
                'address': e.get('address'),
                'type': e.get('type') or 'unknown',
                'isPrimary': bool(e.get('is_primary', False)),
                'confidence': e.get('confidence') or 0,
            }
            for e in data.get('emails') or [] if e.get('address')
        ]

        # BatchData reports cost in dollars when it reports it at all
        cost = self.cost_cents
        if data.get('cost') is not None:
            cost = int(round(float(data['cost']) * 100))

        return ProviderResponse(status_code=resp.status_code, phones=phones, emails=emails,
                                cost_cents=cost, body=data)


# ── WhitePages ────────────────────────────────────────────────────────────────

class LiveWhitePagesProvider(Provider):

    name = 'whitepages'

    def __init__(self, api_key: str, api_url: str = WHITEPAGES_API_URL, cost_cents: int = 0,
                 timeout: float = PROVIDER_TIMEOUT_SECONDS, session: Optional[requests.Session] = None):
        super().__init__(cost_cents)
        self.api_key = api_key
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout
        self.http = session or requests.Session()

    def lookup(self, lead: LeadAttrs) -> ProviderResponse:
        params = {
            'api_key': self.api_key,
            'name': lead.person,
            'address': lead.address,
            'city': lead.city,
            'state_code': lead.state,
            'postal_code': lead.zip,
            'country_code': 'US',
        }
        try:
            resp = self.http.get(f'{self.api_url}/3.3/person', params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise ProviderError(self.name, f'transport error: {e}') from e

        if resp.status_code != 200:
            raise ProviderError(self.name, f'API error: {resp.status_code} {resp.text[:200]}',
                                status_code=resp.status_code)
        try:
            data = resp.json() or {}
        except ValueError as e:
            raise ProviderError(self.name, f'invalid JSON response: {e}', status_code=resp.status_code) from e

        results = data.get('results') or []
        person = results[0] if results else {}
        phones = [
            {
                'number': p.get('phone_number'),
                'type': p.get('line_type') or 'unknown',
                'isPrimary': False,
                'isDoNotCall': False,
                'confidence': min(99, (70 if p.get('is_valid') else 50) + (20 if p.get('is_connected') else 0)),
            }
            for p in person.get('phones') or [] if p.get('phone_number')
        ]
        emails = [
            {'address': e.get('email_address'), 'type': 'unknown', 'isPrimary': False, 'confidence': 70}
            for e in person.get('emails') or [] if e.get('email_address')
        ]
        return ProviderResponse(status_code=resp.status_code, phones=phones, emails=emails,
                                cost_cents=self.cost_cents, body=data)


# ── Stub ──────────────────────────────────────────────────────────────────────

class StubProvider(Provider):
    """Deterministic offline provider: same lead, same fake contacts."""

    simulated = True

    def __init__(self, name: str = STUB, cost_cents: int = 0):
        super().__init__(cost_cents)
        self.name = name

    def lookup(self, lead: LeadAttrs) -> ProviderResponse:
        seed = hashlib.sha256(f'{lead.person}|{lead.address}|{lead.zip}'.encode('utf-8')).hexdigest()
        digits = str(int(seed[:12], 16))[-4:]
        phones = [{
            'number': f'555-01{digits[:2]}-{digits}',
            'type': 'mobile',
            'isPrimary': True,
            'isDoNotCall': False,
            'confidence': 50,
        }]
        emails = []
        # Roughly half the stub leads get an email so hit rates aren't trivially 100%
        if int(seed[12:14], 16) % 2 == 0:
            emails.append({
                'address': f'owner.{seed[:8]}@example.com',
                'type': 'personal',
                'isPrimary': True,
                'confidence': 50,
            })
        body = {'simulated': True, 'phones': phones, 'emails': emails}
        return ProviderResponse(status_code=200, phones=phones, emails=emails,
                                cost_cents=self.cost_cents, body=body, simulated=True)


def build_provider(name: Optional[str] = None, cost_cents: Optional[int] = None) -> Provider:
    """
    Pick the adapter for a provider name.

    Falls back to StubProvider when the provider has no API key configured.
    """
    from skiptrace.pipeline.cost_config import get_cost_cents

    name = (name or SKIP_TRACE_PRIMARY_PROVIDER).lower()
    if name == STUB:
        return StubProvider(cost_cents=get_cost_cents(STUB) if cost_cents is None else cost_cents)

    price = get_cost_cents(name) if cost_cents is None else cost_cents
    if name == 'batchdata' and BATCHDATA_API_KEY:
        return LiveBatchDataProvider(BATCHDATA_API_KEY, cost_cents=price)
    if name == 'whitepages' and WHITEPAGES_API_KEY:
        return LiveWhitePagesProvider(WHITEPAGES_API_KEY, cost_cents=price)
    if name not in ('batchdata', 'whitepages'):
        raise ValueError(f"Unsupported provider: {name}. Available: batchdata, whitepages, stub")

    logger.warning("No API key configured for %s — using simulated stub provider", name)
    return StubProvider(cost_cents=get_cost_cents(STUB))
